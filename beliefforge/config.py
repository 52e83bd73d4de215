"""
BeliefForge Configuration System
=================================
Centralized configuration for all BeliefForge components using Python
dataclasses. Every hyperparameter, path, and setting lives here.

A network is described as a list of layer configurations (one per RBM
in the stack) plus the settings shared by the whole experiment:
training schedule, SVM classifier and data source.

Usage:
    # Load from YAML file:
    >>> config = BeliefForgeConfig.from_yaml("configs/default.yaml")

    # Create programmatically:
    >>> config = BeliefForgeConfig(
    ...     layers=[RBMConfig(num_visible=784, num_hidden=100),
    ...             RBMConfig(num_visible=100, num_hidden=10)],
    ...     training=TrainingConfig(epochs_pretrain=20),
    ... )

    # Save to YAML:
    >>> config.to_yaml("configs/my_experiment.yaml")

    # Access nested values:
    >>> config.layers[0].num_hidden    # 100
    >>> config.training.seed           # 42
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Literal, Optional, Union

import torch
import yaml

logger = logging.getLogger(__name__)

VISIBLE_UNITS = ("binary", "gaussian")
HIDDEN_UNITS = ("binary", "relu", "softmax")
WEIGHT_DECAYS = ("none", "l1", "l2")
FINETUNE_OPTIMIZERS = ("sgd", "cg")


# =============================================================================
# Layer Configuration
# =============================================================================

@dataclass
class LayerTrainingConfig:
    """
    Training hyperparameters shared by every RBM-like layer.

    These fields double as the layer's capability declaration: the
    training engine reads ``batch_size``, ``momentum``, ``shuffle``,
    ``init_weights``, ``free_energy`` and ``verbose`` once per run to
    decide which optional steps apply.

    Parameters
    ----------
    learning_rate : float
        Step size of the contrastive divergence update.

    batch_size : int
        Number of samples per batch trainer update. Fixed for a run.

    momentum : bool
        Whether updates blend in the previous increment. When enabled,
        the momentum starts at ``initial_momentum`` and switches to
        ``final_momentum`` at the end of epoch ``final_momentum_epoch``.

    weight_decay : str
        Regularization on the weights: "none", "l1" or "l2".

    weight_cost : float
        Coefficient of the weight decay penalty.

    sparsity : bool
        Whether to push the mean hidden activation towards
        ``sparsity_target`` through the hidden biases.

    shuffle : bool
        Whether the training data is reshuffled before every epoch.

    init_weights : bool
        Whether the layer initializes its visible biases from the
        training data before the first epoch.

    verbose : bool
        Whether the watcher is notified after every batch.

    free_energy : bool
        Whether the mean free energy is tracked while a watcher is
        attached. Costs one extra pass per sample.

    trainer : str
        Batch learning algorithm: "cd" (contrastive divergence) or
        "pcd" (persistent contrastive divergence).

    k : int
        Number of Gibbs steps in the negative phase.
    """
    learning_rate: float = 0.1
    batch_size: int = 10
    momentum: bool = False
    initial_momentum: float = 0.5
    final_momentum: float = 0.9
    final_momentum_epoch: int = 6
    weight_decay: Literal["none", "l1", "l2"] = "none"
    weight_cost: float = 0.0002
    sparsity: bool = False
    sparsity_target: float = 0.01
    sparsity_cost: float = 1.0
    shuffle: bool = False
    init_weights: bool = False
    verbose: bool = False
    free_energy: bool = True
    trainer: Literal["cd", "pcd"] = "cd"
    k: int = 1

    def validate(self) -> None:
        """Validate training parameters."""
        if self.learning_rate <= 0:
            raise ValueError(
                f"learning_rate must be positive, got {self.learning_rate}"
            )
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if not 0.0 <= self.initial_momentum < 1.0:
            raise ValueError(
                f"initial_momentum must be in [0, 1), got {self.initial_momentum}"
            )
        if not 0.0 <= self.final_momentum < 1.0:
            raise ValueError(
                f"final_momentum must be in [0, 1), got {self.final_momentum}"
            )
        if self.final_momentum_epoch < 0:
            raise ValueError(
                f"final_momentum_epoch must be >= 0, got {self.final_momentum_epoch}"
            )
        if self.weight_decay not in WEIGHT_DECAYS:
            raise ValueError(
                f"Unknown weight_decay: '{self.weight_decay}'. "
                f"Choose from: {', '.join(WEIGHT_DECAYS)}"
            )
        if self.weight_cost < 0:
            raise ValueError(f"weight_cost must be >= 0, got {self.weight_cost}")
        if not 0.0 < self.sparsity_target < 1.0:
            raise ValueError(
                f"sparsity_target must be in (0, 1), got {self.sparsity_target}"
            )
        from beliefforge.training.batch_trainers import BATCH_TRAINERS

        if self.trainer not in BATCH_TRAINERS:
            raise ValueError(
                f"Unknown trainer: '{self.trainer}'. "
                f"Choose from: {', '.join(BATCH_TRAINERS)}"
            )
        if self.k < 1:
            raise ValueError(f"k must be >= 1, got {self.k}")


@dataclass
class RBMConfig(LayerTrainingConfig):
    """
    A dense Restricted Boltzmann Machine layer.

    Parameters
    ----------
    num_visible : int
        Number of visible units (input dimensionality). Inputs with
        more than one feature dimension are flattened.

    num_hidden : int
        Number of hidden units (output dimensionality).

    visible_unit : str
        "binary" (Bernoulli) or "gaussian" (unit-variance linear units,
        for real-valued normalized inputs).

    hidden_unit : str
        "binary", "relu" (noisy rectified linear) or "softmax" (one-hot
        groups, used as the classification layer of a DBN).
    """
    num_visible: int = 784
    num_hidden: int = 100
    visible_unit: Literal["binary", "gaussian"] = "binary"
    hidden_unit: Literal["binary", "relu", "softmax"] = "binary"

    def validate(self) -> None:
        super().validate()
        if self.num_visible < 1:
            raise ValueError(f"num_visible must be >= 1, got {self.num_visible}")
        if self.num_hidden < 1:
            raise ValueError(f"num_hidden must be >= 1, got {self.num_hidden}")
        if self.visible_unit not in VISIBLE_UNITS:
            raise ValueError(
                f"Unknown visible_unit: '{self.visible_unit}'. "
                f"Choose from: {', '.join(VISIBLE_UNITS)}"
            )
        if self.hidden_unit not in HIDDEN_UNITS:
            raise ValueError(
                f"Unknown hidden_unit: '{self.hidden_unit}'. "
                f"Choose from: {', '.join(HIDDEN_UNITS)}"
            )

    @property
    def input_size(self) -> int:
        return self.num_visible

    @property
    def output_size(self) -> int:
        return self.num_hidden


@dataclass
class ConvRBMConfig(LayerTrainingConfig):
    """
    A convolutional RBM layer with filters shared across positions.

    The hidden maps are the valid convolution of the visible image with
    each filter, so ``hidden_height = visible_height - kernel_height + 1``.
    When ``pool > 1`` the activations passed to the next layer are
    max-pooled by that factor.
    """
    channels: int = 1
    visible_height: int = 28
    visible_width: int = 28
    filters: int = 20
    kernel_height: int = 17
    kernel_width: int = 17
    pool: int = 1
    visible_unit: Literal["binary", "gaussian"] = "binary"
    hidden_unit: Literal["binary", "relu"] = "binary"

    def validate(self) -> None:
        super().validate()
        for name in ("channels", "visible_height", "visible_width",
                     "filters", "kernel_height", "kernel_width", "pool"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.kernel_height > self.visible_height or self.kernel_width > self.visible_width:
            raise ValueError(
                f"Kernel ({self.kernel_height}x{self.kernel_width}) does not fit "
                f"the visible image ({self.visible_height}x{self.visible_width})"
            )
        if self.hidden_height % self.pool != 0 or self.hidden_width % self.pool != 0:
            raise ValueError(
                f"Hidden maps ({self.hidden_height}x{self.hidden_width}) must be "
                f"divisible by the pooling factor {self.pool}"
            )
        if self.visible_unit not in VISIBLE_UNITS:
            raise ValueError(
                f"Unknown visible_unit: '{self.visible_unit}'. "
                f"Choose from: {', '.join(VISIBLE_UNITS)}"
            )
        if self.hidden_unit not in ("binary", "relu"):
            raise ValueError(
                f"Unknown hidden_unit for a convolutional layer: "
                f"'{self.hidden_unit}'. Choose from: binary, relu"
            )

    @property
    def hidden_height(self) -> int:
        return self.visible_height - self.kernel_height + 1

    @property
    def hidden_width(self) -> int:
        return self.visible_width - self.kernel_width + 1

    @property
    def input_size(self) -> int:
        return self.channels * self.visible_height * self.visible_width

    @property
    def output_size(self) -> int:
        return (
            self.filters
            * (self.hidden_height // self.pool)
            * (self.hidden_width // self.pool)
        )


LayerConfig = Union[RBMConfig, ConvRBMConfig]

_LAYER_TYPES = {"rbm": RBMConfig, "conv_rbm": ConvRBMConfig}


def layer_config_from_dict(raw: dict) -> LayerConfig:
    """
    Build a layer config from a YAML entry tagged with ``type``.

    Raises
    ------
    ValueError
        If the ``type`` tag is unknown.
    """
    raw = dict(raw)
    layer_type = raw.pop("type", "rbm")
    if layer_type not in _LAYER_TYPES:
        raise ValueError(
            f"Unknown layer type: '{layer_type}'. "
            f"Choose from: {', '.join(_LAYER_TYPES)}"
        )
    return _LAYER_TYPES[layer_type](**raw)


def layer_config_to_dict(layer: LayerConfig) -> dict:
    """Inverse of :func:`layer_config_from_dict`."""
    layer_type = "conv_rbm" if isinstance(layer, ConvRBMConfig) else "rbm"
    return {"type": layer_type, **asdict(layer)}


# =============================================================================
# Training Configuration
# =============================================================================

@dataclass
class TrainingConfig:
    """
    Settings for the pretraining and fine-tuning schedule.

    Parameters
    ----------
    epochs_pretrain : int
        Number of epochs each layer is pretrained for.

    epochs_finetune : int
        Number of supervised fine-tuning epochs over the whole stack.

    finetune_learning_rate : float
        SGD learning rate for fine-tuning.

    finetune_momentum : float
        SGD momentum for fine-tuning.

    finetune_batch_size : int
        Mini-batch size for fine-tuning.

    finetune_optimizer : str
        "sgd" (SGD with momentum) or "cg" (conjugate gradient: every
        mini-batch runs ``finetune_cg_steps`` Polak-Ribiere line
        searches over all the parameters of the stack).

    finetune_cg_steps : int
        Line searches per mini-batch when ``finetune_optimizer`` is "cg".

    weight_decay : float
        L2 penalty applied by the fine-tuning optimizer.

    max_grad_norm : float
        Gradient clipping threshold during fine-tuning. 0 disables it.

    seed : int
        Random seed for reproducibility. Seeds weight initialization,
        shuffling, corruption and Gibbs sampling.

    device : str
        Device to train on. "auto" picks CUDA, then MPS, then CPU.

    silent : bool
        Suppress the batch-size divisibility warning of the engine.

    log_every : int
        Log fine-tuning progress every N optimizer steps. 0 disables.

    num_workers : int
        Data loader workers for fine-tuning.

    output_dir : str
        Directory for checkpoints and results.
    """
    epochs_pretrain: int = 20
    epochs_finetune: int = 10
    finetune_learning_rate: float = 0.1
    finetune_momentum: float = 0.9
    finetune_batch_size: int = 50
    finetune_optimizer: str = "sgd"
    finetune_cg_steps: int = 3
    weight_decay: float = 0.0
    max_grad_norm: float = 0.0
    seed: int = 42
    device: str = "auto"
    silent: bool = False
    log_every: int = 0
    num_workers: int = 0
    output_dir: str = "outputs"

    def validate(self) -> None:
        """Validate training parameters."""
        if self.epochs_pretrain < 0:
            raise ValueError(
                f"epochs_pretrain must be >= 0, got {self.epochs_pretrain}"
            )
        if self.epochs_finetune < 0:
            raise ValueError(
                f"epochs_finetune must be >= 0, got {self.epochs_finetune}"
            )
        if self.finetune_learning_rate <= 0:
            raise ValueError(
                f"finetune_learning_rate must be positive, "
                f"got {self.finetune_learning_rate}"
            )
        if not 0.0 <= self.finetune_momentum < 1.0:
            raise ValueError(
                f"finetune_momentum must be in [0, 1), got {self.finetune_momentum}"
            )
        if self.finetune_batch_size < 1:
            raise ValueError(
                f"finetune_batch_size must be >= 1, got {self.finetune_batch_size}"
            )
        if self.finetune_optimizer not in FINETUNE_OPTIMIZERS:
            raise ValueError(
                f"Unknown finetune_optimizer: '{self.finetune_optimizer}'. "
                f"Choose from: {', '.join(FINETUNE_OPTIMIZERS)}"
            )
        if self.finetune_cg_steps < 1:
            raise ValueError(
                f"finetune_cg_steps must be >= 1, got {self.finetune_cg_steps}"
            )

    def resolve_device(self) -> torch.device:
        """
        Auto-detect the best available device.

        Priority: CUDA > MPS (Apple Silicon) > CPU

        Returns
        -------
        torch.device
            The resolved device.
        """
        if self.device != "auto":
            return torch.device(self.device)

        if torch.cuda.is_available():
            logger.info("Using CUDA device (GPU detected)")
            return torch.device("cuda")
        elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            logger.info("Using MPS device (Apple Silicon detected)")
            return torch.device("mps")
        else:
            logger.info("Using CPU device")
            return torch.device("cpu")


# =============================================================================
# SVM Configuration
# =============================================================================

@dataclass
class SVMConfig:
    """
    SVM classifier trained on top of the final layer's activations.

    The defaults are a probabilistic C-SVC with an RBF kernel. The grid
    bounds are exponents of 2, searched with ``grid_folds``-fold
    cross-validation.
    """
    kernel: Literal["rbf", "linear", "poly", "sigmoid"] = "rbf"
    C: float = 2.8
    gamma: float = 0.0073
    probability: bool = True
    grid_folds: int = 5
    grid_c_first: float = -5.0
    grid_c_last: float = 15.0
    grid_c_steps: int = 6
    grid_gamma_first: float = -15.0
    grid_gamma_last: float = 3.0
    grid_gamma_steps: int = 6

    def validate(self) -> None:
        """Validate SVM parameters."""
        if self.C <= 0:
            raise ValueError(f"C must be positive, got {self.C}")
        if self.gamma <= 0:
            raise ValueError(f"gamma must be positive, got {self.gamma}")
        if self.grid_folds < 2:
            raise ValueError(f"grid_folds must be >= 2, got {self.grid_folds}")
        if self.grid_c_steps < 1 or self.grid_gamma_steps < 1:
            raise ValueError("grid steps must be >= 1")


# =============================================================================
# Data Configuration
# =============================================================================

@dataclass
class DataConfig:
    """
    Configuration for loading and preparing the dataset.

    Parameters
    ----------
    dataset_name : str
        Hugging Face dataset identifier with "image"/"label" columns.

    max_samples : int or None
        Maximum number of training samples to use. None = use all.
        Set to a small number for smoke testing.

    binarize : bool
        Threshold pixel intensities to {0, 1} (for binary visible units).

    binarize_threshold : float
        Intensity (in [0, 1]) above which a pixel is on.

    normalize : bool
        Normalize every sample to zero mean and unit variance (for
        gaussian visible units).

    data_dir : str
        Cache directory for downloaded data.
    """
    dataset_name: str = "mnist"
    max_samples: Optional[int] = None
    binarize: bool = True
    binarize_threshold: float = 30.0 / 255.0
    normalize: bool = False
    data_dir: str = "data"

    def validate(self) -> None:
        """Validate data parameters."""
        if self.binarize and self.normalize:
            raise ValueError("binarize and normalize are mutually exclusive")
        if not 0.0 <= self.binarize_threshold < 1.0:
            raise ValueError(
                f"binarize_threshold must be in [0, 1), got {self.binarize_threshold}"
            )
        if self.max_samples is not None and self.max_samples < 1:
            raise ValueError(f"max_samples must be >= 1, got {self.max_samples}")


# =============================================================================
# Master Configuration
# =============================================================================

@dataclass
class BeliefForgeConfig:
    """
    Master configuration combining the layer stack and all sub-configs.

    This is the single source of truth for an experiment. Pass this
    object to any BeliefForge component and it will extract the
    settings it needs.
    """
    layers: list = field(default_factory=lambda: [
        RBMConfig(num_visible=784, num_hidden=100, momentum=True, init_weights=True),
        RBMConfig(num_visible=100, num_hidden=200, momentum=True),
        RBMConfig(num_visible=200, num_hidden=10, momentum=True, hidden_unit="softmax"),
    ])
    training: TrainingConfig = field(default_factory=TrainingConfig)
    svm: SVMConfig = field(default_factory=SVMConfig)
    data: DataConfig = field(default_factory=DataConfig)

    def validate(self) -> None:
        """
        Validate all sub-configurations and that the layers chain.

        Raises
        ------
        ValueError
            If any parameter is invalid or consecutive layers disagree
            on their shared dimension.
        """
        if not self.layers:
            raise ValueError("A network needs at least one layer")

        for layer in self.layers:
            layer.validate()
        self.training.validate()
        self.svm.validate()
        self.data.validate()

        for i, (lower, upper) in enumerate(zip(self.layers, self.layers[1:])):
            if lower.output_size != upper.input_size:
                raise ValueError(
                    f"Layer {i} outputs {lower.output_size} values but layer "
                    f"{i + 1} expects {upper.input_size} inputs. Consecutive "
                    f"layers must agree on their shared dimension."
                )

        logger.info(
            f"Config validated: {len(self.layers)} layers, "
            f"{self.layers[0].input_size} -> {self.layers[-1].output_size}, "
            f"device={self.training.device}"
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> BeliefForgeConfig:
        """
        Load configuration from a YAML file.

        Parameters
        ----------
        path : str or Path
            Path to the YAML configuration file.

        Returns
        -------
        BeliefForgeConfig
            Loaded and validated configuration.

        Raises
        ------
        FileNotFoundError
            If the YAML file does not exist.
        yaml.YAMLError
            If the YAML file is malformed.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(
                f"Config file not found: {path}. "
                f"Create one from configs/default.yaml as a template."
            )

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        if raw is None:
            raise ValueError(f"Config file is empty: {path}")

        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw: dict) -> BeliefForgeConfig:
        """Build and validate a configuration from a nested dictionary."""
        kwargs = dict(
            training=TrainingConfig(**raw.get("training", {})),
            svm=SVMConfig(**raw.get("svm", {})),
            data=DataConfig(**raw.get("data", {})),
        )
        if "layers" in raw:
            kwargs["layers"] = [layer_config_from_dict(entry) for entry in raw["layers"]]

        config = cls(**kwargs)
        config.validate()
        return config

    def to_yaml(self, path: str | Path) -> None:
        """
        Save configuration to a YAML file.

        Creates parent directories if they don't exist.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                self.to_dict(),
                f,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )

        logger.info(f"Config saved to {path}")

    def to_dict(self) -> dict:
        """Convert to nested dictionary (layers tagged with their type)."""
        return {
            "layers": [layer_config_to_dict(layer) for layer in self.layers],
            "training": asdict(self.training),
            "svm": asdict(self.svm),
            "data": asdict(self.data),
        }

    @classmethod
    def for_smoke_test(cls) -> BeliefForgeConfig:
        """
        Create a minimal configuration for quick smoke testing.

        Uses tiny layers and few epochs so the whole pipeline completes
        in seconds on a CPU.
        """
        return cls(
            layers=[
                RBMConfig(num_visible=784, num_hidden=32, batch_size=10,
                          momentum=True, init_weights=True, shuffle=True),
                RBMConfig(num_visible=32, num_hidden=10, batch_size=10,
                          momentum=True, hidden_unit="softmax"),
            ],
            training=TrainingConfig(
                epochs_pretrain=2,
                epochs_finetune=2,
                finetune_batch_size=10,
                seed=42,
                device="cpu",
                silent=True,
            ),
            svm=SVMConfig(grid_folds=2, grid_c_steps=2, grid_gamma_steps=2),
            data=DataConfig(max_samples=200, data_dir="data_smoke"),
        )

    def __repr__(self) -> str:
        """Pretty-print the configuration."""
        sizes = " -> ".join(
            [str(self.layers[0].input_size)]
            + [str(layer.output_size) for layer in self.layers]
        ) if self.layers else "(empty)"
        lines = [
            "BeliefForgeConfig(",
            f"  Layers:   {len(self.layers)} ({sizes})",
            f"  Training: pretrain={self.training.epochs_pretrain} epochs, "
            f"finetune={self.training.epochs_finetune} epochs, "
            f"lr={self.training.finetune_learning_rate}",
            f"  SVM:      {self.svm.kernel}, C={self.svm.C}, gamma={self.svm.gamma}",
            f"  Data:     {self.data.dataset_name}, max_samples={self.data.max_samples}",
            f"  Device:   {self.training.device}",
            ")",
        ]
        return "\n".join(lines)
