# File: matpipe/setup.py
# Location: matpipe/matpipe/setup.py
"""
Setup script for matpipe.

This file configures how the package is built, installed, and what
dependencies are required.
"""

import os
from setuptools import setup, find_packages

# Load version from version.py without importing the module
version = {}
with open(os.path.join("matpipe", "version.py")) as f:
    exec(f.read(), version)

# Read the README for the long description
this_dir = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_dir, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="matpipe",
    version=version["__version__"],
    description="Build and incrementally update mutation-annotated phylogenetic trees in batches.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["matpipe", "matpipe.*"]),
    python_requires=">=3.8",
    install_requires=[
        "pandas",
        "psutil",
        "smart_open",
        "jinja2",
        "biopython",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={"console_scripts": ["matpipe=matpipe.cli:main"]},
    include_package_data=True,
    package_data={"matpipe": ["config.json", "templates/*.txt"]},
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
    ],
)
