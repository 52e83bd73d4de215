"""
beliefforge.data — Data Pipeline
=================================
Datasets and batch generators feeding the training engine.

Components:
    - datasets.py  — load_mnist, binarize, normalize_each
    - generator.py — InMemoryGenerator, TransformedGenerator
"""

from beliefforge.data.datasets import binarize, load_mnist, normalize_each
from beliefforge.data.generator import InMemoryGenerator, TransformedGenerator
