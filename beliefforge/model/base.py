"""
Shared behaviour of RBM-like layers.

``RBMLayer`` holds everything that does not depend on how the visible
and hidden units are connected: momentum state, capability
declaration, unit sampling, data-driven bias initialization and the
convenience training entry points. ``RBM`` (dense) and ``ConvRBM``
(convolutional) only provide the connectivity.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, Optional

import torch
import torch.nn as nn

from beliefforge.training.batch_source import as_samples, is_generator
from beliefforge.training.capabilities import LayerCapabilities
from beliefforge.training.rbm_trainer import RBMTrainer
from beliefforge.training.watcher import LoggingWatcher, TrainingWatcher

logger = logging.getLogger(__name__)

_DEFAULT_WATCHER = object()


class RBMLayer(nn.Module):
    """
    Base class of the RBM layers.

    Subclasses define the parameters ``weight``, ``visible_bias`` and
    ``hidden_bias`` and implement ``_as_batch``, ``pre_activation``,
    ``visible_probabilities``, ``gradients``, ``mean_hidden_activation``,
    ``energy`` and ``free_energy``.

    Parameters
    ----------
    config : RBMConfig or ConvRBMConfig
        Layer configuration. Validated on construction.

    Attributes
    ----------
    momentum : float
        Current momentum, scheduled by the training engine.
    initial_momentum, final_momentum : float
        Momentum before and after the switch.
    final_momentum_epoch : int
        Epoch at whose end the momentum switches.
    """

    # Dimensions averaged over when computing per-visible-unit statistics
    _visible_reduce_dims: tuple = (0,)

    def __init__(self, config):
        super().__init__()
        config.validate()
        self.config = config

        self.initial_momentum = config.initial_momentum
        self.final_momentum = config.final_momentum
        self.final_momentum_epoch = config.final_momentum_epoch
        self.momentum = config.initial_momentum

    @property
    def device(self) -> torch.device:
        return self.weight.device

    def capabilities(self) -> LayerCapabilities:
        return LayerCapabilities.from_config(self.config)

    # ─── Units ──────────────────────────────────────────────────────────

    def hidden_probabilities(self, v: torch.Tensor) -> torch.Tensor:
        """Mean activation of the hidden units given visible samples."""
        return self._hidden_activation(self.pre_activation(v))

    def _hidden_activation(self, x: torch.Tensor) -> torch.Tensor:
        if self.config.hidden_unit == "relu":
            return torch.relu(x)
        if self.config.hidden_unit == "softmax":
            return torch.softmax(x, dim=-1)
        return torch.sigmoid(x)

    def sample_hidden_from(
        self, v: torch.Tensor, rng: Optional[torch.Generator] = None
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """
        Hidden mean activations and a hidden sample given visible states.

        Returns
        -------
        (probabilities, sample)
        """
        x = self.pre_activation(v)
        probabilities = self._hidden_activation(x)
        return probabilities, self.sample_hidden(probabilities, rng, pre_activation=x)

    def sample_hidden(
        self,
        probabilities: torch.Tensor,
        rng: Optional[torch.Generator] = None,
        pre_activation: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """
        Draw hidden states from their mean activations.

        ReLU units are sampled from their unclipped input, so they need
        ``pre_activation`` (``vW + c``).

        Raises
        ------
        ValueError
            If the hidden units are ReLU and ``pre_activation`` is missing.
        """
        unit = self.config.hidden_unit
        if unit == "relu":
            if pre_activation is None:
                raise ValueError(
                    "Sampling relu hidden units needs the pre-activation. "
                    "Use sample_hidden_from(v) instead."
                )
            # Noisy rectified linear unit: max(0, x + N(0, sigmoid(x)))
            x = pre_activation
            noise = torch.randn(
                x.shape, generator=rng, device=x.device, dtype=x.dtype,
            )
            return torch.relu(x + noise * torch.sigmoid(x).sqrt())
        if unit == "softmax":
            index = torch.multinomial(probabilities, 1, generator=rng)
            return torch.zeros_like(probabilities).scatter_(-1, index, 1.0)
        return torch.bernoulli(probabilities, generator=rng)

    def sample_visible(
        self, probabilities: torch.Tensor, rng: Optional[torch.Generator] = None
    ) -> torch.Tensor:
        """Draw visible states from their mean activations."""
        if self.config.visible_unit == "gaussian":
            noise = torch.randn(
                probabilities.shape, generator=rng,
                device=probabilities.device, dtype=probabilities.dtype,
            )
            return probabilities + noise
        return torch.bernoulli(probabilities, generator=rng)

    def _visible_activation(self, x: torch.Tensor) -> torch.Tensor:
        if self.config.visible_unit == "gaussian":
            return x
        return torch.sigmoid(x)

    def reconstruct(self, v: torch.Tensor) -> torch.Tensor:
        """One mean-field pass visible → hidden → visible."""
        return self.visible_probabilities(self.hidden_probabilities(v))

    def activation_probabilities(self, v: torch.Tensor) -> torch.Tensor:
        """Output of this layer as seen by the layer above."""
        return self.hidden_probabilities(v)

    def forward(self, v: torch.Tensor) -> torch.Tensor:
        return self.activation_probabilities(v)

    # ─── Initialization ─────────────────────────────────────────────────

    @torch.no_grad()
    def init_weights(self, data: Any) -> None:
        """
        Initialize the visible biases from the training data.

        Binary units get ``log(p / (1 - p))`` where ``p`` is the fraction
        of samples in which the unit is on; gaussian units get the data
        mean. Accepts in-memory samples or a data generator (which is
        rewound before and after the pass).
        """
        total = None
        count = 0
        for batch in self._init_batches(data):
            v = self._as_batch(batch)
            batch_sum = v.sum(dim=self._visible_reduce_dims)
            total = batch_sum if total is None else total + batch_sum
            count += v.numel() // self.visible_bias.numel()

        if total is None or count == 0:
            logger.warning("init_weights received no data. Biases left unchanged.")
            return

        means = total / count
        if self.config.visible_unit == "gaussian":
            bias = means
        else:
            p = means.clamp(1e-3, 1.0 - 1e-3)
            bias = torch.log(p / (1.0 - p))

        self.visible_bias.copy_(bias)
        logger.debug(f"Visible biases initialized from {count:,} samples")

    @staticmethod
    def _init_batches(data: Any) -> Iterator[torch.Tensor]:
        if is_generator(data):
            data.reset()
            while data.has_next_batch():
                yield data.data_batch()
                data.next_batch()
            data.reset()
        else:
            yield as_samples(data)

    # ─── Training ───────────────────────────────────────────────────────

    def _engine(self, watcher, denoising: bool, seed: Optional[int], silent: bool) -> RBMTrainer:
        if watcher is _DEFAULT_WATCHER:
            watcher = LoggingWatcher(type(self).__name__)
        return RBMTrainer(watcher=watcher, denoising=denoising, seed=seed, silent=silent)

    def train(
        self,
        data: Any = True,
        max_epochs: Optional[int] = None,
        watcher: Optional[TrainingWatcher] = _DEFAULT_WATCHER,
        seed: Optional[int] = None,
        silent: bool = False,
    ):
        """
        Train this layer on ``data`` for ``max_epochs`` epochs.

        Returns the last epoch's mean reconstruction error. Called as
        ``layer.train()`` / ``layer.train(False)`` it behaves like
        ``nn.Module.train`` and switches the training mode flag.
        """
        if isinstance(data, bool):
            return super().train(data)
        if max_epochs is None:
            raise ValueError("max_epochs is required when training on data")
        return self._engine(watcher, False, seed, silent).train(self, data, max_epochs)

    def train_denoising(
        self,
        noisy: Any,
        clean: Any,
        max_epochs: int,
        watcher: Optional[TrainingWatcher] = _DEFAULT_WATCHER,
        seed: Optional[int] = None,
        silent: bool = False,
    ) -> float:
        """Train this layer to reconstruct ``clean`` from ``noisy``."""
        engine = self._engine(watcher, True, seed, silent)
        return engine.train_denoising(self, noisy, clean, max_epochs)

    def train_denoising_auto(
        self,
        data: Any,
        max_epochs: int,
        noise: float,
        watcher: Optional[TrainingWatcher] = _DEFAULT_WATCHER,
        seed: Optional[int] = None,
        silent: bool = False,
    ) -> float:
        """Denoising training with inputs zeroed with probability ``noise``."""
        engine = self._engine(watcher, False, seed, silent)
        return engine.train_denoising_auto(self, data, max_epochs, noise)

    @property
    def n_params(self) -> int:
        """Total number of parameters in this layer."""
        return sum(p.numel() for p in self.parameters())
