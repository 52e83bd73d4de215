"""
BeliefForge — Setup Script
===========================
Installs BeliefForge as a local editable package so that all internal
imports (e.g. `from beliefforge.model.dbn import DBN`) work seamlessly
from any script or notebook.

Usage:
    cd /path/to/BeliefForge
    pip install -e .
    pip install -e ".[dev]"     # with the test tools
"""

from setuptools import setup, find_packages

setup(
    name="beliefforge",
    version="0.1.0",
    author="Aditya",
    description=(
        "BeliefForge: Layer-wise Training of Restricted Boltzmann Machines "
        "and Deep Belief Networks"
    ),
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    url="https://github.com/aditya/BeliefForge",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.1.0",
        "safetensors>=0.4.0",
        "datasets>=2.14.0",
        "numpy>=1.24.0",
        "tqdm>=4.65.0",
        "pyyaml>=6.0",
        "scikit-learn>=1.3.0",
    ],
    extras_require={
        "dev": ["pytest>=7.0"],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
)
