"""
BeliefForge Restricted Boltzmann Machine
=========================================
A dense RBM: every visible unit connects to every hidden unit, and
there are no connections within a layer.

    visible v (num_visible) ──W (num_visible × num_hidden)── hidden h

Energy Function:
    binary visible:    E(v, h) = -b·v - c·h - vᵀWh
    gaussian visible:  E(v, h) = ½‖v - b‖² - c·h - vᵀWh

Because the layers are conditionally independent, both conditionals
factorize and one Gibbs step is two matrix products:

    p(h | v) = act(vW + c)      act = sigmoid, rectifier or softmax
    p(v | h) = act(hWᵀ + b)     act = sigmoid or identity

Analogy:
    Think of the hidden units as feature detectors that vote on what
    they see in the input. Training tunes the detectors until their
    votes are enough to redraw the input.

Usage:
    >>> rbm = RBM(RBMConfig(num_visible=784, num_hidden=100), seed=42)
    >>> error = rbm.train(images, max_epochs=20)
    >>> features = rbm.activation_probabilities(images)   # (N, 100)
"""

from __future__ import annotations

import logging
from typing import Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from beliefforge.config import RBMConfig
from beliefforge.model.base import RBMLayer

logger = logging.getLogger(__name__)


class RBM(RBMLayer):
    """
    Dense Restricted Boltzmann Machine.

    Parameters
    ----------
    config : RBMConfig
        Layer configuration.
    seed : int or None
        Seed for the initial weights. None uses the global torch RNG.

    Attributes
    ----------
    weight : nn.Parameter
        Connection weights, shape (num_visible, num_hidden), drawn from
        N(0, 0.01²).
    visible_bias, hidden_bias : nn.Parameter
        Biases, initialized to zero.
    """

    def __init__(self, config: RBMConfig, seed: Optional[int] = None):
        super().__init__(config)

        generator = None
        if seed is not None:
            generator = torch.Generator().manual_seed(seed)

        self.num_visible = config.num_visible
        self.num_hidden = config.num_hidden

        self.weight = nn.Parameter(
            torch.randn(config.num_visible, config.num_hidden, generator=generator) * 0.01
        )
        self.visible_bias = nn.Parameter(torch.zeros(config.num_visible))
        self.hidden_bias = nn.Parameter(torch.zeros(config.num_hidden))

        logger.debug(f"RBM initialized: {self.num_visible} -> {self.num_hidden}")

    def _as_batch(self, v: torch.Tensor) -> torch.Tensor:
        # A single sample (of any shape) becomes a batch of one
        return v.reshape(-1, self.num_visible).to(
            device=self.weight.device, dtype=self.weight.dtype
        )

    # ─── Conditionals ───────────────────────────────────────────────────

    def pre_activation(self, v: torch.Tensor) -> torch.Tensor:
        """Hidden unit inputs ``vW + c``, shape (N, num_hidden)."""
        return self._as_batch(v) @ self.weight + self.hidden_bias

    def visible_probabilities(self, h: torch.Tensor) -> torch.Tensor:
        """Mean activation of the visible units, shape (N, num_visible)."""
        return self._visible_activation(h @ self.weight.t() + self.visible_bias)

    def logits(self, v: torch.Tensor) -> torch.Tensor:
        """Un-normalized class scores, for a softmax output layer."""
        return self.pre_activation(v)

    # ─── Learning Statistics ────────────────────────────────────────────

    def gradients(
        self,
        v_pos: torch.Tensor,
        h_pos: torch.Tensor,
        v_neg: torch.Tensor,
        h_neg: torch.Tensor,
    ) -> dict[str, torch.Tensor]:
        """
        Contrastive divergence gradient estimate, averaged over the batch.

        Returns
        -------
        dict
            Ascent directions keyed by parameter name.
        """
        v_pos = self._as_batch(v_pos)
        n = v_pos.shape[0]
        return {
            "weight": (v_pos.t() @ h_pos - v_neg.t() @ h_neg) / n,
            "visible_bias": (v_pos - v_neg).mean(dim=0),
            "hidden_bias": (h_pos - h_neg).mean(dim=0),
        }

    def mean_hidden_activation(self, h: torch.Tensor) -> torch.Tensor:
        return h.mean(dim=0)

    # ─── Energies ───────────────────────────────────────────────────────

    def _visible_term(self, v: torch.Tensor) -> torch.Tensor:
        if self.config.visible_unit == "gaussian":
            return 0.5 * ((v - self.visible_bias) ** 2).sum(dim=-1)
        return -(v @ self.visible_bias)

    def energy(self, v: torch.Tensor, h: torch.Tensor) -> torch.Tensor:
        """Energy of joint configurations, shape (N,)."""
        v = self._as_batch(v)
        h = h.reshape(-1, self.num_hidden).to(v)
        interaction = ((v @ self.weight) * h).sum(dim=-1)
        return self._visible_term(v) - h @ self.hidden_bias - interaction

    def free_energy(self, v: torch.Tensor) -> torch.Tensor:
        """
        Free energy ``F(v) = -log Σ_h exp(-E(v, h))``, shape (N,).

        A single sample yields a one-element tensor.
        """
        v = self._as_batch(v)
        x = v @ self.weight + self.hidden_bias
        if self.config.hidden_unit == "softmax":
            # Exactly one hidden unit is on
            hidden_term = torch.logsumexp(x, dim=-1)
        else:
            hidden_term = F.softplus(x).sum(dim=-1)
        return self._visible_term(v) - hidden_term

    def __repr__(self) -> str:
        return (
            f"RBM({self.num_visible} -> {self.num_hidden}, "
            f"visible={self.config.visible_unit}, hidden={self.config.hidden_unit})"
        )
