from setuptools import setup, find_packages

setup(
    name="botjobs",
    version="0.1.0",
    description="Claim-and-execute engine for queued bot jobs",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "click>=8.1.0",
        "loguru>=0.7.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "botjobs=botjobs.cli:main",
        ],
    },
    python_requires=">=3.8",
)
