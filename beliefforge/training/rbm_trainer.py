"""
BeliefForge Layer Training Engine
==================================
The generic training loop for a single RBM-like layer. Everything
around the numeric update lives here so the batch trainers can focus
on the learning rule:

    - Batch iteration over in-memory data or pull-based generators
    - Shuffling (capability-gated, pair-preserving in denoising mode)
    - One-time weight initialization from the data
    - Momentum scheduling
    - Reconstruction error, sparsity and free energy tracking
    - Watcher notifications
    - Input corruption for denoising auto-encoder style training

Control Flow:
    train(layer, data, max_epochs)
      → init (batch size, total batches, momentum, training_begin)
      → layer.init_weights(data)             once, if declared
      → batch trainer                        one per run
      → for each epoch:
            shuffle / reset the source
            fresh context
            for each batch: trainer.train_batch(...), accumulate
            average, momentum schedule, epoch_end
      → training_end
      → return the last epoch's mean reconstruction error

Pretraining a DBN calls ``train`` once per layer, each time with the
activations of the layer below as data.

Usage:
    >>> trainer = RBMTrainer(watcher=LoggingWatcher("layer_0"), seed=42)
    >>> error = trainer.train(rbm, images, max_epochs=20)

    # Denoising: learn to reconstruct clean samples from noisy ones
    >>> trainer = RBMTrainer(denoising=True)
    >>> error = trainer.train_denoising(rbm, noisy, clean, max_epochs=50)
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Optional

import torch

from beliefforge.evaluation.metrics import Timer
from beliefforge.training.batch_source import (
    Batch,
    BatchSource,
    RangeSource,
    as_samples,
    is_generator,
    make_batch_source,
)
from beliefforge.training.batch_trainers import (
    BatchTrainer,
    TrainerFactory,
    make_batch_trainer,
)
from beliefforge.training.capabilities import LayerCapabilities
from beliefforge.training.context import RBMTrainingContext
from beliefforge.training.shuffle import shuffle_policy_for
from beliefforge.training.watcher import TrainingWatcher

logger = logging.getLogger(__name__)


class RBMTrainer:
    """
    Drives a layer's batch trainer over epochs and batches.

    Parameters
    ----------
    watcher : TrainingWatcher or None
        Notified of training events. None disables notifications and
        free energy tracking.

    denoising : bool
        Train towards separate expected outputs (``train_denoising``)
        instead of reconstructing the input itself. Shuffling then keeps
        every (input, expected) pair together.

    seed : int or None
        Seed of the engine's random state (shuffling, corruption and the
        batch trainer's sampling). None draws a non-deterministic seed.

    rng : torch.Generator or None
        Use this random state instead of creating one from ``seed``.

    trainer_factory : callable or None
        ``factory(layer, rng) -> BatchTrainer``. Defaults to the
        algorithm named by ``layer.config.trainer``.

    silent : bool
        Do not warn when the sample count is not a multiple of the
        batch size.

    Attributes
    ----------
    history : list[RBMTrainingContext]
        Averaged context of every epoch of the last run.
    """

    def __init__(
        self,
        watcher: Optional[TrainingWatcher] = None,
        denoising: bool = False,
        seed: Optional[int] = None,
        rng: Optional[torch.Generator] = None,
        trainer_factory: Optional[TrainerFactory] = None,
        silent: bool = False,
    ):
        if rng is None:
            rng = torch.Generator()
            if seed is None:
                rng.seed()
            else:
                rng.manual_seed(seed)

        self.watcher = watcher
        self.denoising = denoising
        self.rng = rng
        self.trainer_factory = trainer_factory or make_batch_trainer
        self.silent = silent

        self.batch_size = 0
        self.total_batches = 0
        self.last_error = 0.0
        self.batches = 0
        self.samples = 0
        self.history: list[RBMTrainingContext] = []

    # ─── Entry Points ───────────────────────────────────────────────────

    def train(
        self,
        layer: Any,
        data: Any,
        max_epochs: int,
        expected: Any = None,
    ) -> float:
        """
        Train ``layer`` for ``max_epochs`` epochs.

        Parameters
        ----------
        layer : RBM-like
            The layer to train. Mutated in place.
        data : tensor, array, sequence of samples, DataGenerator or BatchSource
            Training inputs. In-memory data is cut into full batches
            (trailing samples are skipped); a generator decides its own
            batch boundaries.
        max_epochs : int
            Number of passes over the data. 0 trains nothing.
        expected : tensor, array or sequence, optional
            Expected outputs aligned with ``data``. Denoising mode only.

        Returns
        -------
        float
            Mean reconstruction error of the last epoch (0.0 if no
            epoch ran).

        Raises
        ------
        ValueError
            If ``expected`` does not fit the denoising mode or the
            length of ``data``.
        """
        with Timer("rbm_trainer:train"):
            capabilities = LayerCapabilities.of(layer)
            policy = shuffle_policy_for(capabilities, self.denoising)
            source = make_batch_source(
                data, expected, capabilities.batch_size, self.denoising
            )

            self._init_training(layer, source, capabilities)

            # Some layers initialize themselves from the training data
            if max_epochs > 0 and capabilities.init_weights:
                layer.init_weights(source.init_data())

            trainer = self._make_trainer(layer)

            for epoch in range(max_epochs):
                source.start_epoch(policy, self.rng)

                context = RBMTrainingContext()
                self._init_epoch()

                for batch in source:
                    self._train_batch(batch, trainer, context, layer, capabilities)

                self._finalize_epoch(epoch, context, layer, capabilities)

            return self._finalize_training(layer)

    def train_denoising(
        self,
        layer: Any,
        noisy: Any,
        clean: Any,
        max_epochs: int,
    ) -> float:
        """
        Train ``layer`` to reconstruct ``clean`` from ``noisy``.

        Raises
        ------
        ValueError
            If the engine was not created with ``denoising=True``, or
            the two sets differ in length.
        """
        if not self.denoising:
            raise ValueError(
                "train_denoising needs an engine created with denoising=True"
            )
        return self.train(layer, noisy, max_epochs, expected=clean)

    def train_denoising_auto(
        self,
        layer: Any,
        data: Any,
        max_epochs: int,
        noise: float,
    ) -> float:
        """
        Denoising training with corruption generated on the fly.

        Every epoch, a fresh corrupted copy of the (shuffled) clean data
        is made by zeroing each value independently with probability
        ``noise``; the layer learns to reconstruct the clean data from it.

        Parameters
        ----------
        layer : RBM-like
            The layer to train.
        data : tensor, array or sequence of samples
            Clean training data. Never modified.
        max_epochs : int
            Number of epochs.
        noise : float
            Probability of zeroing each value, in [0, 1].

        Returns
        -------
        float
            Mean reconstruction error of the last epoch.

        Raises
        ------
        ValueError
            If the engine itself is in denoising mode (the two kinds of
            corruption would conflict), ``noise`` is out of range
            or ``data`` is a data generator.
        """
        if self.denoising:
            raise ValueError(
                "train_denoising_auto corrupts its own inputs and cannot be "
                "used on an engine created with denoising=True"
            )
        if not 0.0 <= noise <= 1.0:
            raise ValueError(f"noise must be in [0, 1], got {noise}")
        if is_generator(data):
            raise ValueError(
                "train_denoising_auto needs in-memory samples, got a data generator"
            )

        with Timer("rbm_trainer:train:auto"):
            capabilities = LayerCapabilities.of(layer)
            policy = shuffle_policy_for(capabilities, denoising=False)

            clean = as_samples(data).clone()
            source = RangeSource(clean, None, capabilities.batch_size)

            self._init_training(layer, source, capabilities)

            if max_epochs > 0 and capabilities.init_weights:
                layer.init_weights(clean)

            trainer = self._make_trainer(layer)

            for epoch in range(max_epochs):
                clean = policy.shuffle_direct(clean, self.rng)

                keep = torch.rand(clean.shape, generator=self.rng) >= noise
                corrupted = clean * keep.to(device=clean.device, dtype=clean.dtype)

                context = RBMTrainingContext()
                self._init_epoch()

                for batch in RangeSource(corrupted, clean, capabilities.batch_size):
                    self._train_batch(batch, trainer, context, layer, capabilities)

                self._finalize_epoch(epoch, context, layer, capabilities)

            return self._finalize_training(layer)

    # ─── Run Lifecycle ──────────────────────────────────────────────────

    def _init_training(
        self,
        layer: Any,
        source: BatchSource,
        capabilities: LayerCapabilities,
    ) -> None:
        if capabilities.has_momentum:
            layer.momentum = layer.initial_momentum

        if self.watcher is not None:
            self.watcher.training_begin(layer)

        self.batch_size = capabilities.batch_size

        size = source.size()
        if size % self.batch_size != 0 and not self.silent:
            logger.warning(
                f"The number of samples ({size}) should be divisible by the "
                f"batch size ({self.batch_size}). This may cause "
                f"discrepancies in the results."
            )

        # Only used for progress reporting
        self.total_batches = size // self.batch_size

        self.last_error = 0.0
        self.history = []

    def _make_trainer(self, layer: Any) -> BatchTrainer:
        seed = int(torch.randint(0, 2**62, (1,), generator=self.rng))
        device = getattr(layer, "device", torch.device("cpu"))
        trainer_rng = torch.Generator(device=device)
        trainer_rng.manual_seed(seed)
        return self.trainer_factory(layer, trainer_rng)

    def _finalize_training(self, layer: Any) -> float:
        if self.watcher is not None:
            self.watcher.training_end(layer)

        return self.last_error

    # ─── Epoch Lifecycle ────────────────────────────────────────────────

    def _init_epoch(self) -> None:
        self.batches = 0
        self.samples = 0

    def _train_batch(
        self,
        batch: Batch,
        trainer: BatchTrainer,
        context: RBMTrainingContext,
        layer: Any,
        capabilities: LayerCapabilities,
    ) -> None:
        self.batches += 1
        self.samples += len(batch)

        trainer.train_batch(batch.inputs, batch.expected, context)

        context.reconstruction_error += context.batch_error
        context.sparsity += context.batch_sparsity

        if self.watcher is not None and capabilities.free_energy:
            with torch.no_grad():
                for sample in batch.inputs:
                    context.free_energy += float(layer.free_energy(sample))

        if self.watcher is not None and capabilities.is_verbose:
            self.watcher.batch_end(layer, context, self.batches, self.total_batches)

    def _finalize_epoch(
        self,
        epoch: int,
        context: RBMTrainingContext,
        layer: Any,
        capabilities: LayerCapabilities,
    ) -> None:
        # Average all the gathered information
        if self.batches > 0:
            context.reconstruction_error /= self.batches
            context.sparsity /= self.batches
        if self.samples > 0:
            context.free_energy /= self.samples

        # After some time increase the momentum
        if capabilities.has_momentum and epoch == layer.final_momentum_epoch:
            layer.momentum = layer.final_momentum

        if self.watcher is not None:
            self.watcher.epoch_end(epoch, context, layer)

        self.last_error = context.reconstruction_error
        self.history.append(copy.copy(context))

    def __repr__(self) -> str:
        return (
            f"RBMTrainer(denoising={self.denoising}, "
            f"batch_size={self.batch_size}, last_error={self.last_error:.5f})"
        )
