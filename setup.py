#!/usr/bin/env python3
"""
Setup script for the Collaborative Mapping Optimization core
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text() if readme_path.exists() else ""

setup(
    name="comap-optimization",
    version="0.1.0",
    description="Bundle adjustment and pose-graph optimization for multi-agent collaborative SLAM maps",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Minhyeok Im",
    author_email="minhyeok0104@gmail.com",
    packages=find_packages(include=["comap", "comap.*"]),
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.24.0",
        "scipy>=1.10.0",
        "psutil>=5.9.0",
        "h5py>=3.8.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "black>=22.0.0",
            "flake8>=5.0.0",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering",
    ],
    keywords="slam, bundle-adjustment, pose-graph, multi-agent, optimization",
)
