"""
Common JAX Initialization Module.

This module initializes JAX once at import time.
All other modules should import JAX from here instead of importing jax directly
to ensure consistent initialization (platform selection and x64 precision).

Usage:
    from surfel_slam.common.jax_init import jax, jnp
"""

from __future__ import annotations

import os

# Configure JAX environment variables BEFORE importing JAX.
# CPU is the default platform; set JAX_PLATFORMS to override.
os.environ.setdefault("JAX_PLATFORMS", "cpu")
os.environ.setdefault("XLA_PYTHON_CLIENT_PREALLOCATE", "false")

import jax
import jax.numpy as jnp

# Normal equations are accumulated in float64
jax.config.update("jax_enable_x64", True)

__all__ = ["jax", "jnp"]
