"""
BeliefForge Datasets
=====================
Loading and preprocessing of image datasets.

RBMs are picky about their inputs:
    - Binary visible units expect values in {0, 1} (or probabilities
      in [0, 1]): use ``binarize``.
    - Gaussian visible units assume zero-mean, unit-variance data:
      use ``normalize_each``.

Usage:
    >>> images, labels = load_mnist(config.data, split="train")
    >>> images.shape    # (60000, 784), values in {0, 1}
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import torch

from beliefforge.config import DataConfig

logger = logging.getLogger(__name__)


def binarize(images: torch.Tensor, threshold: float = 30.0 / 255.0) -> torch.Tensor:
    """Set values above ``threshold`` to 1 and the rest to 0."""
    return (images > threshold).to(torch.float32)


def normalize_each(samples: torch.Tensor, eps: float = 1e-8) -> torch.Tensor:
    """
    Normalize every sample to zero mean and unit variance.

    Constant samples become all zeros.
    """
    flat = samples.reshape(len(samples), -1).to(torch.float32)
    mean = flat.mean(dim=1, keepdim=True)
    std = flat.std(dim=1, unbiased=False, keepdim=True)
    return ((flat - mean) / (std + eps)).reshape(samples.shape)


def load_mnist(
    config: DataConfig,
    split: str = "train",
) -> tuple[torch.Tensor, torch.Tensor]:
    """
    Download (once) and prepare an MNIST-like image dataset.

    Parameters
    ----------
    config : DataConfig
        Dataset name, cache directory, sample limit and preprocessing.
    split : str
        "train" or "test".

    Returns
    -------
    (torch.Tensor, torch.Tensor)
        Flattened images of shape (N, H*W) with intensities in [0, 1]
        before preprocessing, and int64 labels of shape (N,).
    """
    from datasets import load_dataset

    Path(config.data_dir).mkdir(parents=True, exist_ok=True)

    logger.info(f"Loading {config.dataset_name} ({split})...")
    dataset = load_dataset(config.dataset_name, split=split, cache_dir=config.data_dir)

    if config.max_samples is not None and config.max_samples < len(dataset):
        dataset = dataset.select(range(config.max_samples))
        logger.info(f"Limited to {config.max_samples:,} samples")

    images = np.stack(
        [np.asarray(image, dtype=np.float32).reshape(-1) for image in dataset["image"]]
    ) / 255.0
    labels = np.asarray(dataset["label"], dtype=np.int64)

    images = torch.from_numpy(images)
    if config.binarize:
        images = binarize(images, config.binarize_threshold)
    elif config.normalize:
        images = normalize_each(images)

    logger.info(
        f"Loaded {len(images):,} images of {images.shape[1]} values, "
        f"{len(np.unique(labels))} classes"
    )
    return images, torch.from_numpy(labels)
