"""
Batch Trainers
==============
The per-batch learning algorithms plugged into the training engine.

A batch trainer is created once per training run and owns whatever
state the algorithm needs between batches (momentum increments,
persistent Gibbs chains). The engine only calls:

    trainer.train_batch(inputs, expected, context)

which updates the layer's parameters in place and reports
``context.batch_error`` and ``context.batch_sparsity``.

Algorithms:

1. CD-k — Contrastive Divergence
   Positive statistics from the data, negative statistics after k
   Gibbs steps started at the data.

2. PCD-k — Persistent Contrastive Divergence
   Same update, but the negative chain continues from where the
   previous batch left it instead of restarting at the data.

Both work on any layer exposing ``sample_hidden_from``,
``visible_probabilities``, ``gradients`` and ``mean_hidden_activation``
(dense and convolutional RBMs alike). In
denoising mode the positive visible statistics come from the clean
expected batch while the hidden ones are inferred from the corrupted
input.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import torch

from beliefforge.training.capabilities import LayerCapabilities
from beliefforge.training.context import RBMTrainingContext

logger = logging.getLogger(__name__)


class BatchTrainer:
    """
    Base class of the pluggable per-batch learning algorithms.

    Parameters
    ----------
    layer : RBM-like
        The layer whose parameters are updated.
    rng : torch.Generator or None
        Random state for Gibbs sampling.
    """

    def __init__(self, layer: Any, rng: Optional[torch.Generator] = None):
        self.layer = layer
        self.rng = rng

    def train_batch(
        self,
        inputs: torch.Tensor,
        expected: torch.Tensor,
        context: RBMTrainingContext,
    ) -> None:
        raise NotImplementedError


class ContrastiveDivergenceTrainer(BatchTrainer):
    """CD-k with momentum, weight decay and a sparsity penalty."""

    def __init__(self, layer: Any, rng: Optional[torch.Generator] = None):
        super().__init__(layer, rng)
        config = layer.config
        self.k = config.k
        self.learning_rate = config.learning_rate
        self.use_momentum = LayerCapabilities.of(layer).has_momentum

        # One increment buffer per parameter, allocated once per run
        self.increments = {
            name: torch.zeros_like(param)
            for name, param in layer.named_parameters()
        }

    @torch.no_grad()
    def train_batch(self, inputs, expected, context) -> None:
        layer = self.layer

        h_pos, h_sample = layer.sample_hidden_from(inputs, self.rng)

        v_neg, h_neg, reconstruction = self.negative_phase(h_sample)

        grads = layer.gradients(expected, h_pos, v_neg, h_neg)
        self.apply_gradients(grads, h_pos)

        target = expected.reshape(reconstruction.shape).to(reconstruction.device)
        context.batch_error = float(((target - reconstruction) ** 2).mean())
        context.batch_sparsity = float(h_pos.mean())

    def negative_phase(
        self, h_sample: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Run k Gibbs steps from the data-driven hidden sample.

        Returns
        -------
        (v_neg, h_neg, reconstruction)
            Negative visible and hidden statistics, and the one-step
            reconstruction of the batch used to measure the error.
        """
        layer = self.layer
        h = h_sample
        reconstruction = None
        for _ in range(self.k):
            v_neg = layer.visible_probabilities(h)
            if reconstruction is None:
                reconstruction = v_neg
            h_neg, h = layer.sample_hidden_from(v_neg, self.rng)
        return v_neg, h_neg, reconstruction

    def apply_gradients(self, grads: dict, h_pos: torch.Tensor) -> None:
        layer = self.layer
        config = layer.config
        params = dict(layer.named_parameters())

        for name, grad in grads.items():
            param = params[name]

            if name == "weight" and config.weight_decay == "l2":
                grad = grad - config.weight_cost * param
            elif name == "weight" and config.weight_decay == "l1":
                grad = grad - config.weight_cost * torch.sign(param)

            if name == "hidden_bias" and config.sparsity:
                activation = layer.mean_hidden_activation(h_pos)
                grad = grad - config.sparsity_cost * (activation - config.sparsity_target)

            step = self.learning_rate * grad
            if self.use_momentum:
                increment = self.increments[name]
                increment.mul_(layer.momentum).add_(step)
                param.add_(increment)
            else:
                param.add_(step)


class PersistentCDTrainer(ContrastiveDivergenceTrainer):
    """PCD-k: the negative chain persists across batches."""

    def __init__(self, layer: Any, rng: Optional[torch.Generator] = None):
        super().__init__(layer, rng)
        self.chain: Optional[torch.Tensor] = None

    def negative_phase(self, h_sample):
        layer = self.layer

        n = h_sample.shape[0]
        if self.chain is None or self.chain.shape[0] < n:
            h = h_sample
        else:
            # A shorter final batch continues the head of the chain
            h = self.chain[:n]

        for _ in range(self.k):
            v_neg = layer.visible_probabilities(h)
            h_neg, h = layer.sample_hidden_from(v_neg, self.rng)

        if self.chain is None or self.chain.shape[0] <= n:
            self.chain = h
        else:
            self.chain[:n] = h

        reconstruction = layer.visible_probabilities(h_sample)
        return v_neg, h_neg, reconstruction


BATCH_TRAINERS: dict[str, type[BatchTrainer]] = {
    "cd": ContrastiveDivergenceTrainer,
    "pcd": PersistentCDTrainer,
}

TrainerFactory = Callable[[Any, Optional[torch.Generator]], BatchTrainer]


def make_batch_trainer(layer: Any, rng: Optional[torch.Generator] = None) -> BatchTrainer:
    """
    Create the batch trainer selected by ``layer.config.trainer``.

    Raises
    ------
    ValueError
        If the algorithm tag is unknown.
    """
    name = layer.config.trainer
    if name not in BATCH_TRAINERS:
        raise ValueError(
            f"Unknown trainer: '{name}'. Choose from: {', '.join(BATCH_TRAINERS)}"
        )
    return BATCH_TRAINERS[name](layer, rng)
