"""
beliefforge.model — Layers and Networks
========================================

    RBMLayer (base.py)       shared sampling, init and training entry points
      ├─ RBM (rbm.py)        dense visible ↔ hidden connections
      └─ ConvRBM (conv_rbm.py) shared convolutional filters, optional pooling

    DBN (dbn.py)             stack of layers: pretrain, fine-tune, SVM, save/load
"""

from beliefforge.model.base import RBMLayer
from beliefforge.model.rbm import RBM
from beliefforge.model.conv_rbm import ConvRBM
from beliefforge.model.dbn import DBN, build_layer
