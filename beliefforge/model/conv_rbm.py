"""
BeliefForge Convolutional RBM
==============================
An RBM whose hidden units are organized in feature maps that share one
filter each, so the same detector is applied at every image position.

    visible (C × H × W) ──conv2d(W: K × C × kh × kw)── hidden (K × H' × W')
    H' = H - kh + 1,   W' = W - kw + 1

    p(h | v) = act(conv2d(v, W) + c)
    p(v | h) = act(conv_transpose2d(h, W) + b)

Biases are shared: one per visible channel and one per hidden map.

When ``pool > 1``, the activations handed to the next layer are
max-pooled by that factor, which gives a smaller and slightly
translation-invariant representation.
"""

from __future__ import annotations

import logging
from typing import Optional

import torch
import torch.nn as nn
import torch.nn.functional as F
from torch.nn.grad import conv2d_weight

from beliefforge.config import ConvRBMConfig
from beliefforge.model.base import RBMLayer

logger = logging.getLogger(__name__)


class ConvRBM(RBMLayer):
    """
    Convolutional Restricted Boltzmann Machine.

    Parameters
    ----------
    config : ConvRBMConfig
        Layer configuration.
    seed : int or None
        Seed for the initial filters.
    """

    _visible_reduce_dims = (0, 2, 3)

    def __init__(self, config: ConvRBMConfig, seed: Optional[int] = None):
        super().__init__(config)

        generator = None
        if seed is not None:
            generator = torch.Generator().manual_seed(seed)

        self.visible_shape = (config.channels, config.visible_height, config.visible_width)

        self.weight = nn.Parameter(
            torch.randn(
                config.filters, config.channels,
                config.kernel_height, config.kernel_width,
                generator=generator,
            ) * 0.01
        )
        self.visible_bias = nn.Parameter(torch.zeros(config.channels))
        self.hidden_bias = nn.Parameter(torch.zeros(config.filters))

        logger.debug(
            f"ConvRBM initialized: {self.visible_shape} -> "
            f"({config.filters}, {config.hidden_height}, {config.hidden_width})"
        )

    def _as_batch(self, v: torch.Tensor) -> torch.Tensor:
        return v.reshape(-1, *self.visible_shape).to(
            device=self.weight.device, dtype=self.weight.dtype
        )

    # ─── Conditionals ───────────────────────────────────────────────────

    def pre_activation(self, v: torch.Tensor) -> torch.Tensor:
        """Hidden map inputs, shape (N, filters, H', W')."""
        return F.conv2d(self._as_batch(v), self.weight) + self.hidden_bias.view(1, -1, 1, 1)

    def visible_probabilities(self, h: torch.Tensor) -> torch.Tensor:
        """Mean activation of the visible units, shape (N, C, H, W)."""
        x = F.conv_transpose2d(h, self.weight) + self.visible_bias.view(1, -1, 1, 1)
        return self._visible_activation(x)

    def activation_probabilities(self, v: torch.Tensor) -> torch.Tensor:
        """Hidden maps, max-pooled when ``pool > 1``."""
        h = self.hidden_probabilities(v)
        if self.config.pool > 1:
            h = F.max_pool2d(h, self.config.pool)
        return h

    # ─── Learning Statistics ────────────────────────────────────────────

    def gradients(
        self,
        v_pos: torch.Tensor,
        h_pos: torch.Tensor,
        v_neg: torch.Tensor,
        h_neg: torch.Tensor,
    ) -> dict[str, torch.Tensor]:
        """
        Contrastive divergence gradient estimate.

        The filter statistics are correlations between visible images and
        hidden maps, normalized by the batch size and the number of
        positions each filter is applied at.
        """
        v_pos = self._as_batch(v_pos)
        n = v_pos.shape[0]
        positions = h_pos.shape[-2] * h_pos.shape[-1]

        positive = conv2d_weight(v_pos, self.weight.shape, h_pos)
        negative = conv2d_weight(v_neg, self.weight.shape, h_neg)

        return {
            "weight": (positive - negative) / (n * positions),
            "visible_bias": (v_pos - v_neg).mean(dim=(0, 2, 3)),
            "hidden_bias": (h_pos - h_neg).mean(dim=(0, 2, 3)),
        }

    def mean_hidden_activation(self, h: torch.Tensor) -> torch.Tensor:
        return h.mean(dim=(0, 2, 3))

    # ─── Energies ───────────────────────────────────────────────────────

    def _visible_term(self, v: torch.Tensor) -> torch.Tensor:
        b = self.visible_bias.view(1, -1, 1, 1)
        if self.config.visible_unit == "gaussian":
            return 0.5 * ((v - b) ** 2).sum(dim=(1, 2, 3))
        return -(v * b).sum(dim=(1, 2, 3))

    def energy(self, v: torch.Tensor, h: torch.Tensor) -> torch.Tensor:
        """Energy of joint configurations, shape (N,)."""
        v = self._as_batch(v)
        h = h.to(v)
        interaction = (F.conv2d(v, self.weight) * h).sum(dim=(1, 2, 3))
        hidden_term = (h * self.hidden_bias.view(1, -1, 1, 1)).sum(dim=(1, 2, 3))
        return self._visible_term(v) - hidden_term - interaction

    def free_energy(self, v: torch.Tensor) -> torch.Tensor:
        """Free energy of visible samples, shape (N,)."""
        v = self._as_batch(v)
        x = F.conv2d(v, self.weight) + self.hidden_bias.view(1, -1, 1, 1)
        return self._visible_term(v) - F.softplus(x).sum(dim=(1, 2, 3))

    def __repr__(self) -> str:
        c = self.config
        return (
            f"ConvRBM({c.channels}x{c.visible_height}x{c.visible_width} -> "
            f"{c.filters}x{c.hidden_height}x{c.hidden_width}, pool={c.pool})"
        )
