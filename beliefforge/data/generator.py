"""
BeliefForge Data Generators
============================
Pull-based batch producers for data that should not (or cannot) be
handed to the training engine as one tensor.

A generator walks over its data one batch at a time:

    generator.reset()
    while generator.has_next_batch():
        x = generator.data_batch()      # inputs of the current batch
        y = generator.label_batch()     # labels, or clean targets
        generator.next_batch()

Unlike in-memory training, the generator decides the batch boundaries:
the final batch may be shorter than ``batch_size`` and is still used.

Usage:
    # Plain in-memory generator with reshuffling every epoch:
    >>> gen = InMemoryGenerator(images, labels, batch_size=50, shuffle=True)
    >>> rbm.train(gen, max_epochs=10)

    # Denoising: inputs corrupted on the fly, clean targets as labels
    >>> gen = InMemoryGenerator(images, images, batch_size=50, noise=0.3)
    >>> RBMTrainer(denoising=True).train(rbm, gen, max_epochs=10)
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import torch

from beliefforge.training.batch_source import as_samples

logger = logging.getLogger(__name__)


class InMemoryGenerator:
    """
    Data generator over tensors held in memory.

    Parameters
    ----------
    inputs : tensor, array or sequence
        Samples, shape (N, ...).
    labels : tensor, array, sequence or None
        Labels or clean targets aligned with ``inputs``. None makes
        ``label_batch`` return the (uncorrupted) inputs.
    batch_size : int
        Samples per batch. The final batch holds the remainder.
    shuffle : bool
        Whether ``reset_shuffle`` reorders the samples (training mode
        only).
    noise : float
        In training mode, each input value is zeroed with this
        probability. Labels are never corrupted.
    seed : int or None
        Seed of the generator's own random state.
    """

    def __init__(
        self,
        inputs: Any,
        labels: Any = None,
        batch_size: int = 10,
        shuffle: bool = False,
        noise: float = 0.0,
        seed: Optional[int] = None,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if not 0.0 <= noise <= 1.0:
            raise ValueError(f"noise must be in [0, 1], got {noise}")

        self.inputs = as_samples(inputs)
        if labels is None:
            self.labels = self.inputs
        else:
            self.labels = torch.as_tensor(labels)
            if len(self.labels) != len(self.inputs):
                raise ValueError(
                    f"inputs ({len(self.inputs)}) and labels ({len(self.labels)}) "
                    f"differ in length"
                )

        self.batch_size = batch_size
        self.shuffle = shuffle
        self.noise = noise
        self.training = True

        self.rng = torch.Generator()
        if seed is None:
            self.rng.seed()
        else:
            self.rng.manual_seed(seed)

        self.order = torch.arange(len(self.inputs))
        self.cursor = 0
        self._corrupted: Optional[torch.Tensor] = None

    # ─── Mode ───────────────────────────────────────────────────────────

    def set_train(self) -> None:
        self.training = True

    def set_test(self) -> None:
        self.training = False

    # ─── Iteration ──────────────────────────────────────────────────────

    def size(self) -> int:
        return len(self.inputs)

    def batches(self) -> int:
        """Number of batches per pass, counting the partial one."""
        return -(-self.size() // self.batch_size)

    def reset(self) -> None:
        """Rewind to the first batch, keeping the current order."""
        self.cursor = 0
        self._corrupted = None

    def reset_shuffle(self) -> None:
        """Rewind and, in training mode, draw a new sample order."""
        if self.shuffle and self.training:
            self.order = torch.randperm(self.size(), generator=self.rng)
        self.reset()

    def has_next_batch(self) -> bool:
        return self.cursor < self.size()

    def next_batch(self) -> None:
        self.cursor += self.batch_size
        self._corrupted = None

    def _indices(self) -> torch.Tensor:
        return self.order[self.cursor:self.cursor + self.batch_size]

    def data_batch(self) -> torch.Tensor:
        batch = self.inputs[self._indices()]
        if not self.training or self.noise == 0.0:
            return batch
        # Same corruption for repeated reads of one batch
        if self._corrupted is None:
            keep = torch.rand(batch.shape, generator=self.rng) >= self.noise
            self._corrupted = batch * keep.to(batch.dtype)
        return self._corrupted

    def label_batch(self) -> torch.Tensor:
        return self.labels[self._indices()]

    def __len__(self) -> int:
        return self.size()

    def __repr__(self) -> str:
        return (
            f"InMemoryGenerator(size={self.size()}, batch_size={self.batch_size}, "
            f"shuffle={self.shuffle}, noise={self.noise})"
        )


class TransformedGenerator:
    """
    View of a generator whose batches pass through a function first.

    Used to feed an upper layer of a network with the activations of
    the layers below while keeping the generator's batch boundaries.

    Parameters
    ----------
    generator : DataGenerator
        The wrapped generator. Its position is shared with this view.
    transform : callable
        Applied to every ``data_batch``.
    transform_labels : bool
        Also apply ``transform`` to ``label_batch`` (for clean targets
        of denoising training). Class labels must not be transformed.
    """

    def __init__(
        self,
        generator: Any,
        transform: Callable[[torch.Tensor], torch.Tensor],
        transform_labels: bool = False,
    ):
        self.generator = generator
        self.transform = transform
        self.transform_labels = transform_labels

    def data_batch(self) -> torch.Tensor:
        return self.transform(self.generator.data_batch())

    def label_batch(self) -> torch.Tensor:
        labels = self.generator.label_batch()
        if self.transform_labels:
            return self.transform(labels)
        return labels

    def has_next_batch(self) -> bool:
        return self.generator.has_next_batch()

    def next_batch(self) -> None:
        self.generator.next_batch()

    def reset(self) -> None:
        self.generator.reset()

    def reset_shuffle(self) -> None:
        self.generator.reset_shuffle()

    def set_train(self) -> None:
        self.generator.set_train()

    def set_test(self) -> None:
        self.generator.set_test()

    def size(self) -> int:
        return self.generator.size()
