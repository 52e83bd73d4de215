"""
beliefforge.evaluation — Metrics
=================================
Error metrics for trained layers and networks, plus memory and time
tracking used by the scripts and the training engine.

Components:
    - metrics.py — classification_error, reconstruction_error,
                   MemoryTracker, Timer
"""

from beliefforge.evaluation.metrics import (
    classification_error,
    reconstruction_error,
    MemoryTracker,
    Timer,
)
