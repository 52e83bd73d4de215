"""
beliefforge.training — Training Engine
=======================================
This subpackage trains RBM-like layers one at a time, and fine-tunes
whole networks.

Layer-wise pretraining, the engine and its collaborators:

    RBMTrainer (rbm_trainer.py)
      ├─ LayerCapabilities  what the layer supports (shuffle, momentum, ...)
      ├─ BatchSource        in-memory range or pull-based generator
      ├─ ShufflePolicy      none / direct / pair-preserving
      ├─ BatchTrainer       the learning rule (CD-k, PCD-k)
      ├─ RBMTrainingContext per-epoch error, sparsity and free energy
      └─ TrainingWatcher    lifecycle notifications

Supervised fine-tuning of a pretrained stack:

    FineTuner (fine_tuner.py)

Information Flow:
    images → RBMTrainer(layer 0) → activations → RBMTrainer(layer 1) → ...
           → FineTuner(whole stack, labels)
"""

from beliefforge.training.context import RBMTrainingContext
from beliefforge.training.capabilities import LayerCapabilities
from beliefforge.training.batch_source import (
    Batch,
    BatchSource,
    DataGenerator,
    GeneratorSource,
    RangeSource,
    make_batch_source,
)
from beliefforge.training.shuffle import (
    DirectShuffle,
    NoShuffle,
    PairedShuffle,
    shuffle_policy_for,
)
from beliefforge.training.watcher import LoggingWatcher, TrainingWatcher
from beliefforge.training.batch_trainers import (
    BatchTrainer,
    ContrastiveDivergenceTrainer,
    PersistentCDTrainer,
    make_batch_trainer,
)
from beliefforge.training.rbm_trainer import RBMTrainer
from beliefforge.training.fine_tuner import FineTuner
