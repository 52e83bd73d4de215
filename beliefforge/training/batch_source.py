"""
Batch Sources
=============
Produce successive (inputs, expected) batches for the training engine
from one of two kinds of data:

1. RANGE — an in-memory tensor (or array, or list of samples) that the
   engine can slice at will. Batches are views of exactly ``batch_size``
   samples; a trailing partial batch is dropped.

2. GENERATOR — a stateful object with a pull-based protocol
   (``has_next_batch`` / ``data_batch`` / ``label_batch`` / ``next_batch``)
   for datasets that do not fit in memory. The generator decides where
   batches start and end, including a shorter final batch; the source
   drops nothing.

Both are iterated the same way by the engine:

    source.start_epoch(policy, rng)
    for batch in source:
        trainer.train_batch(batch.inputs, batch.expected, context)

The two remainder policies differ on purpose: callers relying on either
behaviour keep it.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, NamedTuple, Optional, Protocol, Sequence, Union

import numpy as np
import torch

from beliefforge.training.shuffle import ShufflePolicy

logger = logging.getLogger(__name__)


class Batch(NamedTuple):
    """A batch of input samples and the samples the layer should reconstruct."""
    inputs: torch.Tensor
    expected: torch.Tensor

    def __len__(self) -> int:
        return len(self.inputs)


class DataGenerator(Protocol):
    """Pull-based batch provider for datasets that do not fit in memory."""

    def has_next_batch(self) -> bool: ...

    def data_batch(self) -> torch.Tensor: ...

    def label_batch(self) -> torch.Tensor: ...

    def next_batch(self) -> None: ...

    def reset(self) -> None: ...

    def reset_shuffle(self) -> None: ...

    def set_train(self) -> None: ...

    def size(self) -> int: ...


def is_generator(data: Any) -> bool:
    """Whether ``data`` follows the :class:`DataGenerator` protocol."""
    return all(
        hasattr(data, name)
        for name in ("has_next_batch", "data_batch", "label_batch", "next_batch")
    )


def as_samples(data: Union[torch.Tensor, np.ndarray, Sequence]) -> torch.Tensor:
    """
    Convert a collection of samples into one tensor of shape (N, ...).

    Floating tensors are returned as-is (no copy); numpy arrays and
    sequences of samples are converted to float32.
    """
    if isinstance(data, torch.Tensor):
        return data if data.is_floating_point() else data.float()
    if isinstance(data, np.ndarray):
        return torch.from_numpy(data).float()
    if len(data) == 0:
        return torch.empty(0)
    return torch.stack([torch.as_tensor(sample, dtype=torch.float32) for sample in data])


class BatchSource:
    """Common interface of the two batch sources."""

    def size(self) -> int:
        raise NotImplementedError

    def start_epoch(self, policy: ShufflePolicy, rng: torch.Generator) -> None:
        raise NotImplementedError

    def init_data(self) -> Any:
        """What the layer's ``init_weights`` receives."""
        raise NotImplementedError

    def __iter__(self) -> Iterator[Batch]:
        raise NotImplementedError


class RangeSource(BatchSource):
    """
    Batches from in-memory samples.

    Parameters
    ----------
    inputs : torch.Tensor
        Input samples, shape (N, ...).
    expected : torch.Tensor or None
        Samples to reconstruct, aligned with ``inputs``. None aliases
        the inputs (plain, non-denoising training).
    batch_size : int
        Samples per batch. ``N % batch_size`` trailing samples are
        skipped every epoch.

    Shuffling never touches the caller's tensors: indexing with a
    permutation creates new ones.
    """

    def __init__(
        self,
        inputs: torch.Tensor,
        expected: Optional[torch.Tensor],
        batch_size: int,
    ):
        if expected is not None and len(expected) != len(inputs):
            raise ValueError(
                f"Inputs ({len(inputs)} samples) and expected outputs "
                f"({len(expected)} samples) must have the same length"
            )
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")

        self.inputs = inputs
        self.expected = inputs if expected is None else expected
        self.batch_size = batch_size
        self._aliased = expected is None

    def size(self) -> int:
        return len(self.inputs)

    @property
    def total_batches(self) -> int:
        return self.size() // self.batch_size

    def start_epoch(self, policy: ShufflePolicy, rng: torch.Generator) -> None:
        if self._aliased:
            self.inputs = policy.shuffle_direct(self.inputs, rng)
            self.expected = self.inputs
        else:
            self.inputs, self.expected = policy.shuffle(self.inputs, self.expected, rng)

    def init_data(self) -> torch.Tensor:
        return self.inputs

    def __iter__(self) -> Iterator[Batch]:
        end = self.total_batches * self.batch_size
        for start in range(0, end, self.batch_size):
            stop = start + self.batch_size
            yield Batch(self.inputs[start:stop], self.expected[start:stop])


class GeneratorSource(BatchSource):
    """
    Batches pulled from a :class:`DataGenerator`.

    Parameters
    ----------
    generator : DataGenerator
        The generator. Its cursor is owned by this source for the
        duration of a run.
    denoising : bool
        If True, ``label_batch()`` is the expected output; otherwise the
        expected side aliases ``data_batch()``.
    """

    def __init__(self, generator: DataGenerator, denoising: bool = False):
        self.generator = generator
        self.denoising = denoising

    def size(self) -> int:
        return self.generator.size()

    def start_epoch(self, policy: ShufflePolicy, rng: torch.Generator) -> None:
        policy.reset_generator(self.generator)
        self.generator.set_train()

    def init_data(self) -> DataGenerator:
        return self.generator

    def __iter__(self) -> Iterator[Batch]:
        generator = self.generator
        while generator.has_next_batch():
            inputs = generator.data_batch()
            expected = generator.label_batch() if self.denoising else inputs
            yield Batch(inputs, expected)
            generator.next_batch()


def make_batch_source(
    data: Any,
    expected: Any,
    batch_size: int,
    denoising: bool,
) -> BatchSource:
    """
    Wrap whatever the caller passed to ``train`` in a batch source.

    Parameters
    ----------
    data : tensor, array, sequence, DataGenerator or BatchSource
        Training inputs.
    expected : tensor, array, sequence or None
        Expected outputs, only accepted in denoising mode.
    batch_size : int
        Samples per batch for range sources.
    denoising : bool
        Whether the engine trains towards separate expected outputs.

    Raises
    ------
    ValueError
        If ``expected`` is given outside denoising mode, is missing in
        denoising mode for in-memory data, or has a different length.
    """
    if isinstance(data, BatchSource):
        return data

    if is_generator(data):
        if expected is not None:
            raise ValueError(
                "A data generator provides its own expected outputs "
                "through label_batch()"
            )
        return GeneratorSource(data, denoising=denoising)

    if expected is not None and not denoising:
        raise ValueError(
            "Expected outputs are only used by a denoising trainer. "
            "Create the trainer with denoising=True."
        )
    if denoising and expected is None:
        raise ValueError("A denoising trainer needs expected outputs")

    inputs = as_samples(data)
    return RangeSource(
        inputs,
        as_samples(expected) if expected is not None else None,
        batch_size,
    )
