"""
BeliefForge Deep Belief Network
================================
A stack of RBM layers trained greedily, one layer at a time, then
optionally fine-tuned as a whole.

Architecture:
    input → [layer 0] → [layer 1] → ... → [layer L-1] → output

Training Phases:
    1. PRETRAINING (unsupervised)
       Layer 0 is trained on the data. Its activation probabilities
       become the training data of layer 1, and so on. Every layer
       goes through the same training engine (RBMTrainer).

    2. FINE-TUNING (supervised, optional)
       The stack is unrolled into a feed-forward classifier whose last
       layer is a softmax RBM, and trained end-to-end by backprop.

    3. SVM (optional)
       Alternatively, an SVM is fit on the final activations
       (see beliefforge.svm).

Analogy:
    Like learning to read: first letters, then words made of letters,
    then sentences made of words. Each stage only needs to understand
    the output of the stage before it.

Usage:
    >>> dbn = DBN(BeliefForgeConfig())
    >>> dbn.pretrain(images, max_epochs=20)
    >>> error = dbn.fine_tune(images, labels, epochs=10)
    >>> dbn.save("outputs/dbn.pt")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Optional

import torch
import torch.nn as nn
from torch.utils.data import DataLoader, TensorDataset

from beliefforge.config import BeliefForgeConfig, ConvRBMConfig, LayerConfig
from beliefforge.data.generator import TransformedGenerator
from beliefforge.model.base import RBMLayer
from beliefforge.model.conv_rbm import ConvRBM
from beliefforge.model.rbm import RBM
from beliefforge.training.batch_source import as_samples, is_generator
from beliefforge.training.fine_tuner import FineTuner
from beliefforge.training.rbm_trainer import RBMTrainer
from beliefforge.training.watcher import LoggingWatcher, TrainingWatcher

logger = logging.getLogger(__name__)

WatcherFactory = Callable[[str], TrainingWatcher]


def build_layer(config: LayerConfig, seed: Optional[int] = None) -> RBMLayer:
    """Instantiate the layer described by ``config``."""
    if isinstance(config, ConvRBMConfig):
        return ConvRBM(config, seed=seed)
    return RBM(config, seed=seed)


class DBN(nn.Module):
    """
    Deep Belief Network.

    Parameters
    ----------
    config : BeliefForgeConfig
        Experiment configuration. ``config.layers`` describes the stack;
        the training section supplies the seed, device and schedules.

    Attributes
    ----------
    layers : nn.ModuleList
        The RBM layers, bottom first.
    pretrain_errors : list[float]
        Final reconstruction error of every layer after ``pretrain``.
    svm_model : sklearn.svm.SVC or None
        Classifier fit by ``svm_train`` / ``svm_grid_search``.
    svm_loaded : bool
        Whether ``svm_model`` is usable.
    """

    def __init__(self, config: BeliefForgeConfig):
        super().__init__()
        config.validate()
        self.config = config
        self.seed = config.training.seed

        self.layers = nn.ModuleList([
            build_layer(layer_config, seed=self.seed + i)
            for i, layer_config in enumerate(config.layers)
        ])

        self.pretrain_errors: list[float] = []
        self.finetune_results: Optional[dict] = None

        self.svm_model = None
        self.svm_loaded = False
        self.svm_problem = None
        self.svm_best_params: Optional[dict] = None

        logger.info(f"DBN initialized: {self._describe()}, {self.n_params:,} parameters")

    @classmethod
    def from_config(cls, config: BeliefForgeConfig) -> DBN:
        return cls(config)

    @classmethod
    def from_layers(cls, layers: list, seed: int = 42) -> DBN:
        """Build a network from layer configs, defaults for everything else."""
        config = BeliefForgeConfig(layers=list(layers))
        config.training.seed = seed
        return cls(config)

    @property
    def device(self) -> torch.device:
        return self.layers[0].device

    @property
    def n_params(self) -> int:
        return sum(p.numel() for p in self.parameters())

    @property
    def output_size(self) -> int:
        return self.config.layers[-1].output_size

    def _describe(self) -> str:
        sizes = [str(self.config.layers[0].input_size)]
        sizes += [str(layer.output_size) for layer in self.config.layers]
        return " -> ".join(sizes)

    # ─── Inference ──────────────────────────────────────────────────────

    def activation_probabilities(
        self, v: torch.Tensor, up_to: Optional[int] = None
    ) -> torch.Tensor:
        """
        Propagate ``v`` through the first ``up_to`` layers (all by default).
        """
        for layer in self.layers[:up_to]:
            v = layer.activation_probabilities(v)
        return v

    @torch.no_grad()
    def features(self, samples: Any, batch_size: int = 1024) -> torch.Tensor:
        """
        Final-layer activation probabilities of ``samples``, flattened to
        shape (N, output_size).
        """
        samples = as_samples(samples)
        if len(samples) == 0:
            return torch.empty(0, self.output_size)
        outputs = [
            self.activation_probabilities(samples[start:start + batch_size])
            for start in range(0, len(samples), batch_size)
        ]
        return torch.cat(outputs).reshape(len(samples), -1)

    def forward(self, v: torch.Tensor) -> torch.Tensor:
        """Class logits from the softmax output layer, shape (N, classes)."""
        self._require_classifier()
        h = self.activation_probabilities(v, up_to=len(self.layers) - 1)
        return self.layers[-1].logits(h)

    @torch.no_grad()
    def predict(self, samples: Any, batch_size: int = 1024) -> torch.Tensor:
        """Most likely class of every sample, shape (N,)."""
        samples = as_samples(samples)
        predictions = [
            self(samples[start:start + batch_size]).argmax(dim=-1).cpu()
            for start in range(0, len(samples), batch_size)
        ]
        if not predictions:
            return torch.empty(0, dtype=torch.long)
        return torch.cat(predictions)

    def _require_classifier(self) -> None:
        last = self.layers[-1]
        if not isinstance(last, RBM) or last.config.hidden_unit != "softmax":
            raise ValueError(
                "Classification needs a dense last layer with softmax hidden "
                "units. Use svm_train for other networks."
            )

    # ─── Pretraining ────────────────────────────────────────────────────

    def _lower_transform(self, index: int) -> Callable[[torch.Tensor], torch.Tensor]:
        def transform(batch: torch.Tensor) -> torch.Tensor:
            with torch.no_grad():
                return self.activation_probabilities(batch, up_to=index)
        return transform

    @torch.no_grad()
    def _propagate(self, layer: RBMLayer, samples: torch.Tensor, batch_size: int = 1024) -> torch.Tensor:
        if len(samples) == 0:
            return samples
        outputs = [
            layer.activation_probabilities(samples[start:start + batch_size])
            for start in range(0, len(samples), batch_size)
        ]
        return torch.cat(outputs)

    def _engine(self, index: int, watcher_factory, denoising: bool, seed: Optional[int]) -> RBMTrainer:
        seed = self.seed if seed is None else seed
        watcher = watcher_factory(f"layer_{index}") if watcher_factory else None
        return RBMTrainer(
            watcher=watcher,
            denoising=denoising,
            seed=seed + index,
            silent=self.config.training.silent,
        )

    def pretrain(
        self,
        data: Any,
        max_epochs: Optional[int] = None,
        watcher_factory: Optional[WatcherFactory] = LoggingWatcher,
        seed: Optional[int] = None,
    ) -> list[float]:
        """
        Greedy layer-wise pretraining.

        Parameters
        ----------
        data : tensor, array, sequence or DataGenerator
            Training inputs of the first layer.
        max_epochs : int or None
            Epochs per layer. Defaults to ``training.epochs_pretrain``.
        watcher_factory : callable or None
            ``factory(name) -> TrainingWatcher`` called once per layer.
            None trains without notifications.
        seed : int or None
            Base seed of the per-layer engines. Defaults to
            ``training.seed``.

        Returns
        -------
        list[float]
            Final reconstruction error of every layer.
        """
        if max_epochs is None:
            max_epochs = self.config.training.epochs_pretrain

        generator = data if is_generator(data) else None
        inputs = None if generator is not None else as_samples(data)

        logger.info(
            f"Pretraining {len(self.layers)} layers for {max_epochs} epochs each"
        )

        self.pretrain_errors = []
        for index, layer in enumerate(self.layers):
            engine = self._engine(index, watcher_factory, False, seed)

            if generator is not None:
                layer_data = generator if index == 0 else TransformedGenerator(
                    generator, self._lower_transform(index)
                )
            else:
                layer_data = inputs

            error = engine.train(layer, layer_data, max_epochs)
            self.pretrain_errors.append(error)
            logger.info(f"Layer {index} pretrained: error={error:.5f}")

            # The next layer learns on this layer's activations
            if inputs is not None and index < len(self.layers) - 1:
                inputs = self._propagate(layer, inputs)

        return self.pretrain_errors

    def pretrain_denoising(
        self,
        noisy: Any,
        clean: Any = None,
        max_epochs: Optional[int] = None,
        watcher_factory: Optional[WatcherFactory] = LoggingWatcher,
        seed: Optional[int] = None,
    ) -> list[float]:
        """
        Layer-wise pretraining towards clean targets.

        Every layer learns to reconstruct the (propagated) clean data
        from the (propagated) noisy data. ``noisy`` may also be a data
        generator whose ``label_batch`` holds the clean targets, in which
        case ``clean`` must be None.

        Raises
        ------
        ValueError
            If ``clean`` is missing for in-memory data, or given together
            with a generator.
        """
        if max_epochs is None:
            max_epochs = self.config.training.epochs_pretrain

        generator = noisy if is_generator(noisy) else None
        if generator is not None and clean is not None:
            raise ValueError("A generator provides its own clean targets")
        if generator is None and clean is None:
            raise ValueError("pretrain_denoising needs clean targets")

        if generator is None:
            noisy, clean = as_samples(noisy), as_samples(clean)

        self.pretrain_errors = []
        for index, layer in enumerate(self.layers):
            engine = self._engine(index, watcher_factory, True, seed)

            if generator is not None:
                layer_data = generator if index == 0 else TransformedGenerator(
                    generator, self._lower_transform(index), transform_labels=True
                )
                error = engine.train(layer, layer_data, max_epochs)
            else:
                error = engine.train_denoising(layer, noisy, clean, max_epochs)

            self.pretrain_errors.append(error)
            logger.info(f"Layer {index} pretrained (denoising): error={error:.5f}")

            if generator is None and index < len(self.layers) - 1:
                noisy = self._propagate(layer, noisy)
                clean = self._propagate(layer, clean)

        return self.pretrain_errors

    def pretrain_denoising_auto(
        self,
        data: Any,
        noise: float,
        max_epochs: Optional[int] = None,
        watcher_factory: Optional[WatcherFactory] = LoggingWatcher,
        seed: Optional[int] = None,
    ) -> list[float]:
        """
        Layer-wise denoising pretraining with on-the-fly corruption.

        Each layer sees its clean inputs with values zeroed with
        probability ``noise``, fresh every epoch.
        """
        if max_epochs is None:
            max_epochs = self.config.training.epochs_pretrain

        inputs = as_samples(data)

        self.pretrain_errors = []
        for index, layer in enumerate(self.layers):
            engine = self._engine(index, watcher_factory, False, seed)
            error = engine.train_denoising_auto(layer, inputs, max_epochs, noise)
            self.pretrain_errors.append(error)

            if index < len(self.layers) - 1:
                inputs = self._propagate(layer, inputs)

        return self.pretrain_errors

    # ─── Fine-Tuning ────────────────────────────────────────────────────

    def fine_tune(
        self,
        inputs: Any,
        labels: Any,
        epochs: Optional[int] = None,
        val_inputs: Any = None,
        val_labels: Any = None,
    ) -> float:
        """
        Supervised fine-tuning of the whole stack by backpropagation.

        Parameters
        ----------
        inputs : tensor, array or sequence
            Training samples.
        labels : tensor, array or sequence of int
            Class of every sample.
        epochs : int or None
            Defaults to ``training.epochs_finetune``.
        val_inputs, val_labels : optional
            Validation set, evaluated after every epoch.

        Returns
        -------
        float
            Training classification error of the last epoch.

        Raises
        ------
        ValueError
            If the last layer is not a softmax classifier or the labels
            do not match the inputs.
        """
        self._require_classifier()

        if epochs is None:
            epochs = self.config.training.epochs_finetune

        train_set = self._labelled_dataset(inputs, labels)
        loader = DataLoader(
            train_set,
            batch_size=self.config.training.finetune_batch_size,
            shuffle=True,
            num_workers=self.config.training.num_workers,
            generator=torch.Generator().manual_seed(self.seed),
        )

        val_loader = None
        if val_inputs is not None:
            val_loader = DataLoader(
                self._labelled_dataset(val_inputs, val_labels),
                batch_size=self.config.training.finetune_batch_size,
            )

        tuner = FineTuner(self, self.config, loader, val_loader)
        self.finetune_results = tuner.train(epochs)

        error = self.finetune_results["final_train_error"]
        return 0.0 if error is None else error

    @staticmethod
    def _labelled_dataset(inputs: Any, labels: Any) -> TensorDataset:
        inputs = as_samples(inputs)
        labels = torch.as_tensor(labels).long().reshape(-1)
        if len(inputs) != len(labels):
            raise ValueError(
                f"inputs ({len(inputs)}) and labels ({len(labels)}) differ in length"
            )
        return TensorDataset(inputs, labels)

    # ─── SVM ────────────────────────────────────────────────────────────

    def svm_train(self, samples: Any, labels: Any, parameters: Optional[dict] = None) -> bool:
        from beliefforge.svm import svm_parameters, svm_train

        return svm_train(self, samples, labels, parameters or svm_parameters(self.config.svm))

    def svm_grid_search(self, samples: Any, labels: Any) -> bool:
        from beliefforge.svm import RBFGrid, svm_grid_search

        return svm_grid_search(
            self, samples, labels,
            n_fold=self.config.svm.grid_folds,
            grid=RBFGrid.from_config(self.config.svm),
        )

    def svm_predict(self, samples: Any):
        from beliefforge.svm import svm_predict

        return svm_predict(self, samples)

    # ─── Persistence ────────────────────────────────────────────────────

    def save(self, path: str | Path) -> None:
        """
        Save configuration, weights, momentum state and SVM model.

        Creates parent directories if they don't exist.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        torch.save(
            {
                "config": self.config.to_dict(),
                "model_state_dict": self.state_dict(),
                "momentum": [layer.momentum for layer in self.layers],
                "pretrain_errors": self.pretrain_errors,
                "svm_loaded": self.svm_loaded,
                "svm_model": self.svm_model if self.svm_loaded else None,
            },
            path,
        )
        logger.info(f"DBN saved to {path}")

    @classmethod
    def load(cls, path: str | Path, map_location: str = "cpu") -> DBN:
        """
        Restore a network written by :meth:`save`.

        Raises
        ------
        FileNotFoundError
            If the checkpoint does not exist.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Checkpoint not found: {path}")

        # The checkpoint holds a pickled SVM, not only tensors
        checkpoint = torch.load(path, map_location=map_location, weights_only=False)

        dbn = cls(BeliefForgeConfig.from_dict(checkpoint["config"]))
        dbn.load_state_dict(checkpoint["model_state_dict"])
        for layer, momentum in zip(dbn.layers, checkpoint.get("momentum", [])):
            layer.momentum = momentum
        dbn.pretrain_errors = list(checkpoint.get("pretrain_errors", []))

        dbn.svm_loaded = bool(checkpoint.get("svm_loaded", False))
        dbn.svm_model = checkpoint.get("svm_model") if dbn.svm_loaded else None

        logger.info(f"DBN loaded from {path} (svm={'yes' if dbn.svm_loaded else 'no'})")
        return dbn

    def save_weights(self, path: str | Path) -> None:
        """Save only the tensors, in safetensors format."""
        from safetensors.torch import save_file

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        state_dict = {k: v.detach().cpu().contiguous() for k, v in self.state_dict().items()}
        save_file(state_dict, str(path))
        logger.info(f"Weights saved to {path}")

    def load_weights(self, path: str | Path) -> None:
        """Load tensors written by :meth:`save_weights`."""
        from safetensors.torch import load_file

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Weights not found: {path}")
        self.load_state_dict(load_file(str(path), device=str(self.device)))

    def __repr__(self) -> str:
        return f"DBN({self._describe()}, layers={list(self.layers)})"
