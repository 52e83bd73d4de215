#!/usr/bin/env python3
"""
Tests for the layer training engine (RBMTrainer) and its collaborators.

The engine is exercised with a stub layer and a recording batch trainer
so every assertion is about the engine's own behaviour: batching,
shuffling, momentum scheduling, averaging and watcher notifications.

Run:
    python -m pytest tests/test_rbm_trainer.py -v
"""

import logging
import sys
from pathlib import Path

import pytest
import torch

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


# =============================================================================
# Helpers
# =============================================================================

class StubLayer:
    """Minimal layer: a config with capability flags and a weight to watch."""

    def __init__(self, **flags):
        from beliefforge.config import RBMConfig
        self.config = RBMConfig(num_visible=4, num_hidden=2, **flags)
        self.initial_momentum = self.config.initial_momentum
        self.final_momentum = self.config.final_momentum
        self.final_momentum_epoch = self.config.final_momentum_epoch
        self.momentum = 0.0
        self.weight = torch.ones(4, 2)
        self.init_calls = []

    def free_energy(self, sample):
        return torch.tensor(1.0)

    def init_weights(self, data):
        self.init_calls.append(data)


class RecordingTrainer:
    """Batch trainer that records its calls and reports fixed values."""

    def __init__(self, layer, error=1.0, sparsity=0.5):
        self.layer = layer
        self.error = error
        self.sparsity = sparsity
        self.calls = []

    def train_batch(self, inputs, expected, context):
        self.calls.append((inputs.clone(), expected.clone(), self.layer.momentum))
        context.batch_error = self.error(len(self.calls)) if callable(self.error) else self.error
        context.batch_sparsity = self.sparsity


class RecordingWatcher:
    def __init__(self):
        self.events = []

    def training_begin(self, layer):
        self.events.append(("training_begin",))

    def batch_end(self, layer, context, batch, total_batches):
        self.events.append(("batch_end", batch, total_batches))

    def epoch_end(self, epoch, context, layer):
        self.events.append(("epoch_end", epoch, context.reconstruction_error))

    def training_end(self, layer):
        self.events.append(("training_end",))

    def names(self):
        return [event[0] for event in self.events]


def make_engine(layer, **kwargs):
    """Engine whose batch trainer is a RecordingTrainer; returns both."""
    from beliefforge.training.rbm_trainer import RBMTrainer

    error = kwargs.pop("error", 1.0)
    recorder = RecordingTrainer(layer, error=error)
    engine = RBMTrainer(trainer_factory=lambda l, rng: recorder, **kwargs)
    return engine, recorder


def samples(n=100, dim=4):
    return torch.arange(n * dim, dtype=torch.float32).reshape(n, dim)


def divisibility_warnings(caplog):
    return [r for r in caplog.records if "divisible by the batch size" in r.getMessage()]


# =============================================================================
# Ordering and Shuffling
# =============================================================================

class TestShuffling:
    """Tests for batch order with and without the shuffle capability."""

    def test_no_shuffle_keeps_order_across_runs(self):
        """Without the shuffle capability every run sees the data in order."""
        data = samples()
        orders = []
        for seed in (1, 2):
            layer = StubLayer(batch_size=10, shuffle=False)
            engine, recorder = make_engine(layer, seed=seed)
            engine.train(layer, data, max_epochs=2)
            orders.append(torch.cat([inputs for inputs, _, _ in recorder.calls]))

        assert torch.equal(orders[0], orders[1])
        assert torch.equal(orders[0][:100], data)

    def test_shuffle_reorders_without_touching_caller_data(self):
        """Shuffling permutes the batches but never the caller's tensor."""
        data = samples()
        original = data.clone()
        layer = StubLayer(batch_size=10, shuffle=True)
        engine, recorder = make_engine(layer, seed=0)
        engine.train(layer, data, max_epochs=1)

        seen = torch.cat([inputs for inputs, _, _ in recorder.calls])
        assert torch.equal(data, original)
        assert not torch.equal(seen, data)
        # Same samples, different order
        assert torch.equal(seen[seen[:, 0].argsort()], data)

    def test_plain_training_expected_aliases_inputs(self):
        layer = StubLayer(batch_size=10, shuffle=True)
        engine, recorder = make_engine(layer, seed=3)
        engine.train(layer, samples(), max_epochs=2)
        for inputs, expected, _ in recorder.calls:
            assert torch.equal(inputs, expected)

    def test_denoising_shuffle_preserves_pairs(self):
        """Every input stays paired with its own expected output."""
        noisy = samples()
        clean = noisy * 10 + 1
        layer = StubLayer(batch_size=10, shuffle=True)
        engine, recorder = make_engine(layer, denoising=True, seed=5)
        engine.train_denoising(layer, noisy, clean, max_epochs=3)

        assert len(recorder.calls) == 30
        for inputs, expected, _ in recorder.calls:
            assert torch.equal(expected, inputs * 10 + 1)

        first_epoch = torch.cat([inputs for inputs, _, _ in recorder.calls[:10]])
        assert not torch.equal(first_epoch, noisy)

    def test_same_seed_same_order(self):
        orders = []
        for _ in range(2):
            layer = StubLayer(batch_size=10, shuffle=True)
            engine, recorder = make_engine(layer, seed=11)
            engine.train(layer, samples(), max_epochs=2)
            orders.append(torch.cat([inputs for inputs, _, _ in recorder.calls]))
        assert torch.equal(orders[0], orders[1])


# =============================================================================
# Run Lifecycle
# =============================================================================

class TestLifecycle:
    """Tests for epochs, batches and watcher notifications."""

    def test_zero_epochs_trains_nothing(self):
        """0 epochs: returns 0.0, no updates, no init, only begin/end events."""
        layer = StubLayer(batch_size=10, init_weights=True, momentum=True)
        weight = layer.weight.clone()
        watcher = RecordingWatcher()
        engine, recorder = make_engine(layer, watcher=watcher)

        assert engine.train(layer, samples(), max_epochs=0) == 0.0
        assert recorder.calls == []
        assert layer.init_calls == []
        assert watcher.names() == ["training_begin", "training_end"]
        assert torch.equal(layer.weight, weight)
        assert engine.history == []

    def test_end_to_end_call_counts(self):
        """100 samples, batch size 10, 5 epochs: 50 updates, 5 epoch ends."""
        layer = StubLayer(batch_size=10)
        watcher = RecordingWatcher()
        engine, recorder = make_engine(layer, watcher=watcher, seed=0)

        engine.train(layer, samples(100), max_epochs=5)

        assert len(recorder.calls) == 5 * (100 // 10)
        epochs = [event[1] for event in watcher.events if event[0] == "epoch_end"]
        assert epochs == [0, 1, 2, 3, 4]
        assert watcher.names()[0] == "training_begin"
        assert watcher.names()[-1] == "training_end"

    def test_remainder_dropped_and_warned_once(self, caplog):
        """105 samples with batch size 10: 10 full batches per epoch, one warning."""
        layer = StubLayer(batch_size=10)
        engine, recorder = make_engine(layer, seed=0)

        with caplog.at_level(logging.WARNING):
            engine.train(layer, samples(105), max_epochs=3)

        assert len(recorder.calls) == 3 * 10
        assert all(len(inputs) == 10 for inputs, _, _ in recorder.calls)
        assert len(divisibility_warnings(caplog)) == 1
        assert engine.total_batches == 10

    def test_silent_suppresses_warning(self, caplog):
        layer = StubLayer(batch_size=10)
        engine, _ = make_engine(layer, seed=0, silent=True)
        with caplog.at_level(logging.WARNING):
            engine.train(layer, samples(105), max_epochs=1)
        assert divisibility_warnings(caplog) == []

    def test_batch_end_only_for_verbose_layers(self):
        for verbose, expected_count in ((False, 0), (True, 20)):
            layer = StubLayer(batch_size=10, verbose=verbose)
            watcher = RecordingWatcher()
            engine, _ = make_engine(layer, watcher=watcher, seed=0)
            engine.train(layer, samples(), max_epochs=2)
            batch_events = [e for e in watcher.events if e[0] == "batch_end"]
            assert len(batch_events) == expected_count

        # Batch indices restart every epoch and carry the total
        assert batch_events[0][1:] == (1, 10)
        assert batch_events[10][1:] == (1, 10)

    def test_init_weights_called_once_with_data(self):
        layer = StubLayer(batch_size=10, init_weights=True)
        engine, _ = make_engine(layer, seed=0)
        data = samples()
        engine.train(layer, data, max_epochs=3)
        assert len(layer.init_calls) == 1
        assert torch.equal(layer.init_calls[0], data)

    def test_init_weights_skipped_without_capability(self):
        layer = StubLayer(batch_size=10, init_weights=False)
        engine, _ = make_engine(layer, seed=0)
        engine.train(layer, samples(), max_epochs=1)
        assert layer.init_calls == []


# =============================================================================
# Epoch Statistics
# =============================================================================

class TestStatistics:
    """Tests for the per-epoch averages."""

    def test_constant_batch_values_average_to_themselves(self):
        layer = StubLayer(batch_size=7)
        engine, _ = make_engine(layer, seed=0, silent=True)
        error = engine.train(layer, samples(100), max_epochs=3)

        assert error == pytest.approx(1.0)
        assert len(engine.history) == 3
        for context in engine.history:
            assert context.reconstruction_error == pytest.approx(1.0)
            assert context.sparsity == pytest.approx(0.5)

    def test_error_is_mean_of_batch_errors(self):
        """Batch errors 1..10 in the first epoch average to 5.5."""
        layer = StubLayer(batch_size=10)
        engine, _ = make_engine(layer, seed=0, error=lambda call: float(call))
        engine.train(layer, samples(100), max_epochs=2)

        assert engine.history[0].reconstruction_error == pytest.approx(5.5)
        assert engine.history[1].reconstruction_error == pytest.approx(15.5)
        assert engine.last_error == pytest.approx(15.5)

    def test_free_energy_tracked_only_with_watcher(self):
        layer = StubLayer(batch_size=10, free_energy=True)

        engine, _ = make_engine(layer, watcher=RecordingWatcher(), seed=0)
        engine.train(layer, samples(), max_epochs=1)
        assert engine.history[0].free_energy == pytest.approx(1.0)
        assert engine.samples == 100

        engine, _ = make_engine(layer, seed=0)
        engine.train(layer, samples(), max_epochs=1)
        assert engine.history[0].free_energy == 0.0

    def test_free_energy_skipped_without_capability(self):
        layer = StubLayer(batch_size=10, free_energy=False)
        engine, _ = make_engine(layer, watcher=RecordingWatcher(), seed=0)
        engine.train(layer, samples(), max_epochs=1)
        assert engine.history[0].free_energy == 0.0


# =============================================================================
# Momentum Schedule
# =============================================================================

class TestMomentum:
    """Tests for the momentum switch."""

    def test_switches_after_final_momentum_epoch(self):
        layer = StubLayer(batch_size=10, momentum=True, final_momentum_epoch=2)
        layer.momentum = 0.123
        engine, recorder = make_engine(layer, seed=0)
        engine.train(layer, samples(), max_epochs=5)

        per_epoch = [recorder.calls[i * 10][2] for i in range(5)]
        initial, final = layer.initial_momentum, layer.final_momentum
        assert per_epoch == [initial, initial, initial, final, final]
        assert layer.momentum == final

    def test_never_switches_early(self):
        layer = StubLayer(batch_size=10, momentum=True, final_momentum_epoch=6)
        engine, recorder = make_engine(layer, seed=0)
        engine.train(layer, samples(), max_epochs=5)
        assert {call[2] for call in recorder.calls} == {layer.initial_momentum}
        assert layer.momentum == layer.initial_momentum

    def test_untouched_without_capability(self):
        layer = StubLayer(batch_size=10, momentum=False, final_momentum_epoch=0)
        layer.momentum = 0.123
        engine, _ = make_engine(layer, seed=0)
        engine.train(layer, samples(), max_epochs=3)
        assert layer.momentum == 0.123


# =============================================================================
# Generators and Denoising
# =============================================================================

class TestSources:
    """Tests for generator input and the denoising entry points."""

    def test_generator_keeps_partial_batch(self, caplog):
        from beliefforge.data.generator import InMemoryGenerator

        layer = StubLayer(batch_size=10)
        engine, recorder = make_engine(layer, seed=0)
        generator = InMemoryGenerator(samples(105), batch_size=10, seed=0)

        with caplog.at_level(logging.WARNING):
            engine.train(layer, generator, max_epochs=2)

        assert len(recorder.calls) == 2 * 11
        assert len(recorder.calls[10][0]) == 5
        assert engine.samples == 105
        assert len(divisibility_warnings(caplog)) == 1

    def test_generator_denoising_uses_label_batch(self):
        from beliefforge.data.generator import InMemoryGenerator

        noisy = samples(40)
        layer = StubLayer(batch_size=10, shuffle=True)
        engine, recorder = make_engine(layer, denoising=True, seed=0)
        generator = InMemoryGenerator(noisy, noisy * 2, batch_size=10, shuffle=True, seed=1)
        engine.train(layer, generator, max_epochs=2)

        assert len(recorder.calls) == 8
        for inputs, expected, _ in recorder.calls:
            assert torch.equal(expected, inputs * 2)

    def test_expected_requires_denoising_engine(self):
        layer = StubLayer(batch_size=10)
        engine, _ = make_engine(layer)
        with pytest.raises(ValueError, match="denoising"):
            engine.train(layer, samples(), max_epochs=1, expected=samples())
        with pytest.raises(ValueError, match="denoising"):
            engine.train_denoising(layer, samples(), samples(), max_epochs=1)

    def test_denoising_length_mismatch(self):
        layer = StubLayer(batch_size=10)
        engine, _ = make_engine(layer, denoising=True)
        with pytest.raises(ValueError, match="same length"):
            engine.train_denoising(layer, samples(100), samples(90), max_epochs=1)

    def test_auto_denoising_rejects_denoising_engine(self):
        layer = StubLayer(batch_size=10)
        engine, _ = make_engine(layer, denoising=True)
        with pytest.raises(ValueError, match="denoising=True"):
            engine.train_denoising_auto(layer, samples(), max_epochs=1, noise=0.5)

    def test_auto_denoising_rejects_bad_noise(self):
        layer = StubLayer(batch_size=10)
        engine, _ = make_engine(layer)
        with pytest.raises(ValueError, match="noise"):
            engine.train_denoising_auto(layer, samples(), max_epochs=1, noise=1.5)

    def test_auto_denoising_rejects_generator(self):
        from beliefforge.data.generator import InMemoryGenerator

        layer = StubLayer(batch_size=10)
        engine, recorder = make_engine(layer)
        generator = InMemoryGenerator(samples(), batch_size=10)
        with pytest.raises(ValueError, match="data generator"):
            engine.train_denoising_auto(layer, generator, max_epochs=1, noise=0.5)
        assert recorder.calls == []

    @pytest.mark.parametrize("noise", [0.0, 1.0])
    def test_auto_denoising_corruption_extremes(self, noise):
        data = samples() + 1
        layer = StubLayer(batch_size=10, shuffle=True)
        engine, recorder = make_engine(layer, seed=0)
        engine.train_denoising_auto(layer, data, max_epochs=2, noise=noise)

        assert len(recorder.calls) == 20
        for inputs, expected, _ in recorder.calls:
            if noise == 0.0:
                assert torch.equal(inputs, expected)
            else:
                assert torch.count_nonzero(inputs) == 0
                assert torch.count_nonzero(expected) == expected.numel()

    def test_auto_denoising_corrupts_about_noise_fraction(self):
        data = torch.ones(200, 50)
        layer = StubLayer(batch_size=10)
        engine, recorder = make_engine(layer, seed=0)
        engine.train_denoising_auto(layer, data, max_epochs=1, noise=0.3)

        inputs = torch.cat([call[0] for call in recorder.calls])
        zeroed = 1.0 - inputs.mean().item()
        assert 0.25 < zeroed < 0.35
        assert torch.equal(data, torch.ones(200, 50))


# =============================================================================
# Capabilities and Policies
# =============================================================================

class TestCapabilities:

    def test_capabilities_from_config(self):
        from beliefforge.training.capabilities import LayerCapabilities
        layer = StubLayer(batch_size=25, shuffle=True, momentum=True, verbose=True)
        caps = LayerCapabilities.of(layer)
        assert caps.batch_size == 25
        assert caps.has_shuffle and caps.has_momentum and caps.is_verbose
        assert not caps.init_weights

    def test_layer_without_declaration_rejected(self):
        from beliefforge.training.capabilities import LayerCapabilities
        with pytest.raises(ValueError, match="declares no capabilities"):
            LayerCapabilities.of(object())

    def test_policy_selection(self):
        from beliefforge.training.capabilities import LayerCapabilities
        from beliefforge.training.shuffle import (
            DirectShuffle, NoShuffle, PairedShuffle, shuffle_policy_for,
        )
        still = LayerCapabilities(batch_size=1)
        mixed = LayerCapabilities(batch_size=1, has_shuffle=True)
        assert isinstance(shuffle_policy_for(still, denoising=True), NoShuffle)
        assert type(shuffle_policy_for(mixed, denoising=False)) is DirectShuffle
        assert isinstance(shuffle_policy_for(mixed, denoising=True), PairedShuffle)


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
