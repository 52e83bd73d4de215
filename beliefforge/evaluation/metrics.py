"""
BeliefForge Evaluation Metrics
===============================
Quantitative metrics for trained layers and networks.

Metrics Explained:

1. CLASSIFICATION ERROR
   Fraction of samples whose predicted label differs from the true
   label. 0.0 is perfect, 0.9 is chance level on 10 classes.

2. RECONSTRUCTION ERROR
   Mean squared difference between samples and their one-step
   reconstruction through a layer (visible → hidden → visible). This is
   the same quantity the training engine reports per epoch.

3. MEMORY TRACKING / TIMING
   Peak Python-level memory and wall-clock time of a block of code.

Usage:
    >>> from beliefforge.evaluation.metrics import classification_error
    >>> error = classification_error(dbn.predict, test_images, test_labels)
    >>> print(f"Test error: {error:.2%}")
"""

from __future__ import annotations

import logging
import time
import tracemalloc
from typing import Any, Callable

import torch

logger = logging.getLogger(__name__)


@torch.no_grad()
def classification_error(
    predict: Callable[[torch.Tensor], torch.Tensor],
    inputs: torch.Tensor,
    labels: Any,
    batch_size: int = 256,
) -> float:
    """
    Compute the classification error rate of a predictor.

    Parameters
    ----------
    predict : callable
        Maps a batch of inputs to predicted labels (e.g. ``dbn.predict``
        or ``dbn.svm_predict``).
    inputs : torch.Tensor
        Samples, shape (N, ...).
    labels : tensor, array or sequence of int
        True labels, length N.
    batch_size : int
        Samples per prediction call.

    Returns
    -------
    float
        Error rate in [0, 1]. Returns 0.0 for an empty set.
    """
    labels = torch.as_tensor(labels).long().reshape(-1)
    if len(inputs) != len(labels):
        raise ValueError(
            f"inputs ({len(inputs)}) and labels ({len(labels)}) differ in length"
        )
    if len(inputs) == 0:
        logger.warning("Empty evaluation set. Returning 0 error.")
        return 0.0

    wrong = 0
    for start in range(0, len(inputs), batch_size):
        predicted = torch.as_tensor(predict(inputs[start:start + batch_size]))
        expected = labels[start:start + batch_size]
        wrong += int((predicted.cpu().long().reshape(-1) != expected).sum())

    error = wrong / len(inputs)
    logger.info(f"Classification error: {error:.4f} ({wrong:,}/{len(inputs):,} wrong)")
    return error


@torch.no_grad()
def reconstruction_error(layer: Any, inputs: torch.Tensor) -> float:
    """
    Mean squared error between ``inputs`` and their reconstruction.

    Parameters
    ----------
    layer : RBM-like
        A layer with ``reconstruct(v)``.
    inputs : torch.Tensor
        Samples, shape (N, ...).
    """
    inputs = inputs.to(layer.device)
    reconstruction = layer.reconstruct(inputs)
    return float(((inputs.reshape(reconstruction.shape) - reconstruction) ** 2).mean())


class MemoryTracker:
    """
    Context manager for tracking peak memory usage during a block of code.

    Uses Python's tracemalloc for accurate tracking of Python-level
    memory allocations. Note: this does NOT track GPU memory (use
    torch.cuda.max_memory_allocated for that).

    Usage:
        >>> with MemoryTracker("Pretraining") as tracker:
        ...     dbn.pretrain(images, epochs=10)
        >>> print(f"Peak: {tracker.peak_mb:.1f} MB")
    """

    def __init__(self, label: str = "operation"):
        self.label = label
        self.peak_mb: float = 0.0
        self.current_mb: float = 0.0
        self.duration_seconds: float = 0.0
        self._start_time: float = 0.0

    def __enter__(self):
        tracemalloc.start()
        self._start_time = time.time()
        return self

    def __exit__(self, *args):
        current, peak = tracemalloc.get_traced_memory()
        tracemalloc.stop()

        self.current_mb = current / (1024 * 1024)
        self.peak_mb = peak / (1024 * 1024)
        self.duration_seconds = time.time() - self._start_time

        logger.info(
            f"[{self.label}] Memory: peak={self.peak_mb:.1f}MB, "
            f"current={self.current_mb:.1f}MB, "
            f"time={self.duration_seconds:.2f}s"
        )

    def __repr__(self) -> str:
        return (
            f"MemoryTracker({self.label}: "
            f"peak={self.peak_mb:.1f}MB, "
            f"time={self.duration_seconds:.2f}s)"
        )


class Timer:
    """
    Simple context manager for timing operations.

    Usage:
        >>> with Timer("Fine-tuning") as t:
        ...     dbn.fine_tune(images, labels, epochs=10)
        >>> print(f"Took: {t.elapsed:.2f}s")
    """

    def __init__(self, label: str = "operation"):
        self.label = label
        self.elapsed: float = 0.0
        self._start: float = 0.0

    def __enter__(self):
        self._start = time.time()
        return self

    def __exit__(self, *args):
        self.elapsed = time.time() - self._start
        logger.debug(f"[{self.label}] Time: {self.elapsed:.2f}s")
