"""
Training Watchers
=================
Observers notified by the training engine at lifecycle events:

    training_begin(layer)
    batch_end(layer, context, batch, total_batches)   # verbose layers only
    epoch_end(epoch, context, layer)
    training_end(layer)

``TrainingWatcher`` implements every hook as a no-op, so a custom
watcher only overrides what it needs. ``LoggingWatcher`` is the default
used by the models: one log line per epoch, plus a progress bar over
the batches when the layer is verbose.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from tqdm.auto import tqdm

from beliefforge.training.context import RBMTrainingContext

logger = logging.getLogger(__name__)


class TrainingWatcher:
    """No-op watcher. Subclass and override the hooks of interest."""

    def training_begin(self, layer: Any) -> None:
        pass

    def batch_end(
        self,
        layer: Any,
        context: RBMTrainingContext,
        batch: int,
        total_batches: int,
    ) -> None:
        pass

    def epoch_end(self, epoch: int, context: RBMTrainingContext, layer: Any) -> None:
        pass

    def training_end(self, layer: Any) -> None:
        pass


class LoggingWatcher(TrainingWatcher):
    """
    Logs training progress through the ``logging`` module.

    Parameters
    ----------
    name : str
        Prefix of every log line (e.g. "layer_0").
    progress : bool
        Show a tqdm bar over the batches of each epoch for verbose
        layers. Disable when logging to a file.
    """

    def __init__(self, name: str = "rbm", progress: bool = True):
        self.name = name
        self.progress = progress
        self._bar: Optional[tqdm] = None
        self._start_time = 0.0

    def training_begin(self, layer: Any) -> None:
        self._start_time = time.time()
        logger.info(f"[{self.name}] Training {layer!r}")

    def batch_end(self, layer, context, batch, total_batches) -> None:
        if not self.progress:
            logger.debug(
                f"[{self.name}] batch {batch}/{total_batches} — "
                f"error={context.batch_error:.5f}, "
                f"sparsity={context.batch_sparsity:.5f}"
            )
            return

        if self._bar is None:
            self._bar = tqdm(
                total=total_batches or None,
                desc=self.name,
                unit="batch",
                leave=False,
            )
        self._bar.update(1)
        self._bar.set_postfix(
            error=f"{context.batch_error:.5f}",
            sparsity=f"{context.batch_sparsity:.4f}",
        )

    def epoch_end(self, epoch: int, context: RBMTrainingContext, layer: Any) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None

        logger.info(
            f"[{self.name}] epoch {epoch} — "
            f"reconstruction_error={context.reconstruction_error:.5f}, "
            f"free_energy={context.free_energy:.3f}, "
            f"sparsity={context.sparsity:.5f}, "
            f"elapsed={time.time() - self._start_time:.1f}s"
        )

    def training_end(self, layer: Any) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None

        logger.info(
            f"[{self.name}] Training complete in "
            f"{time.time() - self._start_time:.1f}s"
        )
