"""
BeliefForge
===========
Layer-wise unsupervised pretraining and supervised fine-tuning of
Restricted Boltzmann Machines stacked into Deep Belief Networks.

This package provides:
    1. RBM layers (dense and convolutional) with pluggable contrastive
       divergence trainers
    2. A generic layer-wise training engine that drives any RBM-like
       layer through epochs and batches, from in-memory tensors or from
       pull-based data generators
    3. Deep Belief Networks: greedy pretraining, fine-tuning, and an
       optional SVM trained on top of the learned features

Quick Start:
    >>> from beliefforge.config import BeliefForgeConfig
    >>> from beliefforge.model.dbn import DBN
    >>> config = BeliefForgeConfig.for_smoke_test()
    >>> dbn = DBN.from_config(config)
    >>> dbn.pretrain(images, max_epochs=config.training.epochs_pretrain)

Subpackages:
    - beliefforge.training   — Training engine, batch sources, trainers, watchers
    - beliefforge.model      — RBM, convolutional RBM, and DBN
    - beliefforge.data       — Data generators and dataset utilities
    - beliefforge.evaluation — Error metrics, memory and time tracking
"""

__version__ = "0.1.0"
__author__ = "Aditya"
