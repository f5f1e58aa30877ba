"""
Surfel SLAM: point-to-plane ICP tracking with surfel map fusion.

Structure:
- common/: poses, SE(3) helpers, parameters, errors
- frontend/: camera model, frame observations, ICP
- backend/: surfel map, index map, spatial index, fusion pipeline
"""

__version__ = "0.1.0"
