#!/usr/bin/env python3
"""
BeliefForge — Evaluation Script
================================
Loads a trained DBN checkpoint and reports its test classification
error (softmax output and, when the checkpoint holds one, SVM) and the
first layer's reconstruction error.

Usage:
    python scripts/evaluate.py --config configs/default.yaml
    python scripts/evaluate.py --smoke-test
"""

import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from beliefforge.config import BeliefForgeConfig
from beliefforge.data.datasets import load_mnist
from beliefforge.evaluation.metrics import classification_error, reconstruction_error
from beliefforge.model.dbn import DBN

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="BeliefForge Evaluation")
    parser.add_argument("--config", type=str, default="configs/default.yaml")
    parser.add_argument("--smoke-test", action="store_true")
    parser.add_argument("--output-dir", type=str, default=None)
    parser.add_argument("--model-path", type=str, default=None,
                        help="Path to the DBN checkpoint (overrides default)")
    args = parser.parse_args()

    if args.smoke_test:
        config = BeliefForgeConfig.for_smoke_test()
    else:
        config = BeliefForgeConfig.from_yaml(args.config)

    output_dir = Path(args.output_dir or config.training.output_dir)
    model_path = args.model_path or str(output_dir / "dbn.pt")

    logger.info(f"Loading model from {model_path}")
    dbn = DBN.load(model_path)
    dbn.eval()

    images, labels = load_mnist(config.data, split="test")

    results = {
        "test_samples": len(images),
        "reconstruction_error": reconstruction_error(dbn.layers[0], images),
    }

    last = dbn.config.layers[-1]
    if getattr(last, "hidden_unit", None) == "softmax":
        results["test_error"] = classification_error(dbn.predict, images, labels)

    if dbn.svm_loaded:
        results["svm_test_error"] = classification_error(dbn.svm_predict, images, labels)

    with open(output_dir / "eval_results.json", "w") as f:
        json.dump(results, f, indent=2)

    logger.info(f"\nEvaluation complete! Results: {results}")


if __name__ == "__main__":
    main()
