from setuptools import find_packages, setup

package_name = "treemap_slam"

setup(
    name=package_name,
    version="0.1.0",
    packages=find_packages(exclude=["test"]),
    data_files=[
        (
            "share/" + package_name + "/config",
            [
                "config/treemap_default.yaml",
            ],
        ),
    ],
    install_requires=["setuptools", "numpy", "scipy", "pydantic>=2", "pyyaml"],
    extras_require={
        "test": ["pytest"],
    },
    zip_safe=True,
    description="Treemap SLAM backend - balanced tree of Gaussian factors with Kernighan-Lin rebalancing",
    license="Apache-2.0",
    tests_require=["pytest"],
    python_requires=">=3.9",
)
