"""
Per-epoch training context.

The batch trainer writes ``batch_error`` and ``batch_sparsity`` after
every update; the engine folds them into the epoch accumulators and
averages them when the epoch ends.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class RBMTrainingContext:
    """
    Mutable accumulator for one epoch of layer training.

    Attributes
    ----------
    reconstruction_error : float
        Sum of batch errors during the epoch, mean after it ends.
    sparsity : float
        Sum of batch sparsities during the epoch, mean after it ends.
    free_energy : float
        Sum of per-sample free energies, mean per sample after the epoch.
    batch_error : float
        Reconstruction error of the last batch (set by the batch trainer).
    batch_sparsity : float
        Mean hidden activation of the last batch (set by the batch trainer).
    """
    reconstruction_error: float = 0.0
    sparsity: float = 0.0
    free_energy: float = 0.0
    batch_error: float = 0.0
    batch_sparsity: float = 0.0
