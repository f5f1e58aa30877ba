from setuptools import find_packages, setup

package_name = "surfel_slam"

setup(
    name=package_name,
    version="0.1.0",
    packages=find_packages(exclude=["test", "test.*"]),
    data_files=[
        (
            "share/" + package_name + "/config",
            [
                "config/surfel_slam.yaml",
            ],
        ),
    ],
    python_requires=">=3.9",
    install_requires=["setuptools", "numpy", "scipy", "jax", "pyyaml", "pydantic>=2"],
    extras_require={"test": ["pytest"]},
    zip_safe=True,
    description="Surfel SLAM - point-to-plane ICP tracking with confidence-weighted surfel fusion",
    license="Apache-2.0",
)
