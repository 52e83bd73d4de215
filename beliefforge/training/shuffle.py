"""
Shuffle policies applied before every epoch.

Which policy applies is decided once per run from the layer's
``has_shuffle`` capability and the engine's denoising mode:

    no shuffle capability   → NoShuffle      (fixed pass order)
    denoising               → PairedShuffle  (input[i] and expected[i] move together)
    otherwise               → DirectShuffle  (single sequence)

Permutations are drawn from the ``torch.Generator`` the engine passes
in, so a seeded engine shuffles reproducibly.
"""

from __future__ import annotations

import torch

from beliefforge.training.capabilities import LayerCapabilities


class ShufflePolicy:
    """Base policy: never reorders anything."""

    shuffles = False

    def shuffle(
        self,
        inputs: torch.Tensor,
        expected: torch.Tensor,
        rng: torch.Generator,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Return the (inputs, expected) pair in the order for the next epoch."""
        return inputs, expected

    def shuffle_direct(self, inputs: torch.Tensor, rng: torch.Generator) -> torch.Tensor:
        """Return ``inputs`` in the order for the next epoch."""
        return inputs

    def reset_generator(self, generator) -> None:
        """Rewind a data generator for the next epoch."""
        generator.reset()


class NoShuffle(ShufflePolicy):
    pass


class DirectShuffle(ShufflePolicy):
    """Shuffles a single sequence; the expected side aliases the input."""

    shuffles = True

    def shuffle(self, inputs, expected, rng):
        shuffled = self.shuffle_direct(inputs, rng)
        return shuffled, shuffled

    def shuffle_direct(self, inputs, rng):
        perm = torch.randperm(len(inputs), generator=rng).to(inputs.device)
        return inputs[perm]

    def reset_generator(self, generator) -> None:
        generator.reset_shuffle()


class PairedShuffle(DirectShuffle):
    """Applies one permutation to both inputs and expected outputs."""

    def shuffle(self, inputs, expected, rng):
        perm = torch.randperm(len(inputs), generator=rng)
        return inputs[perm.to(inputs.device)], expected[perm.to(expected.device)]


def shuffle_policy_for(capabilities: LayerCapabilities, denoising: bool) -> ShufflePolicy:
    """Pick the shuffle policy for a run."""
    if not capabilities.has_shuffle:
        return NoShuffle()
    if denoising:
        return PairedShuffle()
    return DirectShuffle()
