"""
Layer capability descriptor.

The engine never branches on a layer's type. It resolves a
``LayerCapabilities`` once at the start of a run and branches on its
flags, so a new layer kind only has to declare what it supports.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class LayerCapabilities:
    """
    Optional behaviours a layer declares to the training engine.

    Attributes
    ----------
    batch_size : int
        Samples per batch trainer update.
    has_shuffle : bool
        The data is reshuffled before every epoch.
    has_momentum : bool
        The engine applies the momentum schedule to the layer.
    init_weights : bool
        The layer is given one pass over the data before the first
        epoch to initialize itself.
    free_energy : bool
        The layer can compute ``free_energy(sample)``.
    is_verbose : bool
        The watcher is notified after every batch.
    """
    batch_size: int
    has_shuffle: bool = False
    has_momentum: bool = False
    init_weights: bool = False
    free_energy: bool = False
    is_verbose: bool = False

    @classmethod
    def from_config(cls, config: Any) -> LayerCapabilities:
        """Read the capability flags from a layer training config."""
        return cls(
            batch_size=config.batch_size,
            has_shuffle=config.shuffle,
            has_momentum=config.momentum,
            init_weights=config.init_weights,
            free_energy=config.free_energy,
            is_verbose=config.verbose,
        )

    @classmethod
    def of(cls, layer: Any) -> LayerCapabilities:
        """
        Resolve the capabilities of ``layer``.

        Layers either implement ``capabilities()`` or carry a ``config``
        with the flags of :class:`~beliefforge.config.LayerTrainingConfig`.

        Raises
        ------
        ValueError
            If the layer declares neither, or a batch size below 1.
        """
        if hasattr(layer, "capabilities"):
            capabilities = layer.capabilities()
        elif hasattr(layer, "config"):
            capabilities = cls.from_config(layer.config)
        else:
            raise ValueError(
                f"{type(layer).__name__} declares no capabilities: implement "
                f"capabilities() or provide a config"
            )

        if capabilities.batch_size < 1:
            raise ValueError(
                f"batch_size must be >= 1, got {capabilities.batch_size}"
            )
        return capabilities
