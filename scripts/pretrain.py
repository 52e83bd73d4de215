#!/usr/bin/env python3
"""
BeliefForge — Training Script
==============================
Loads MNIST, pretrains the DBN layer by layer, fine-tunes it, optionally
fits an SVM on its features, and saves the checkpoint and results.

Usage:
    python scripts/pretrain.py --config configs/default.yaml
    python scripts/pretrain.py --smoke-test
    python scripts/pretrain.py --smoke-test --svm --grid-search
"""

import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import torch

from beliefforge.config import BeliefForgeConfig
from beliefforge.data.datasets import load_mnist
from beliefforge.evaluation.metrics import MemoryTracker, classification_error
from beliefforge.model.dbn import DBN

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="BeliefForge Training",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Full training:
    python scripts/pretrain.py --config configs/default.yaml

    # Quick smoke test:
    python scripts/pretrain.py --smoke-test

    # Fine-tune with conjugate gradient:
    python scripts/pretrain.py --optimizer cg

    # Pretraining only, then an SVM on the learned features:
    python scripts/pretrain.py --skip-finetune --svm
        """,
    )
    parser.add_argument("--config", type=str, default="configs/default.yaml")
    parser.add_argument("--smoke-test", action="store_true")
    parser.add_argument("--output-dir", type=str, default=None)
    parser.add_argument(
        "--skip-finetune", action="store_true",
        help="Stop after unsupervised pretraining",
    )
    parser.add_argument(
        "--optimizer", choices=["sgd", "cg"], default=None,
        help="Fine-tuning optimizer (overrides the config)",
    )
    parser.add_argument(
        "--svm", action="store_true",
        help="Fit an SVM on the final layer's activations",
    )
    parser.add_argument(
        "--grid-search", action="store_true",
        help="Choose the SVM's C and gamma by cross-validation",
    )
    args = parser.parse_args()

    if args.smoke_test:
        config = BeliefForgeConfig.for_smoke_test()
    else:
        config = BeliefForgeConfig.from_yaml(args.config)

    if args.optimizer:
        config.training.finetune_optimizer = args.optimizer

    logger.info(f"\n{config}")

    output_dir = Path(args.output_dir or config.training.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    torch.manual_seed(config.training.seed)

    images, labels = load_mnist(config.data, split="train")

    dbn = DBN.from_config(config)
    results = {"layers": len(dbn.layers), "parameters": dbn.n_params}

    # ─── Phase 1: Pretraining ───────────────────────────────────────
    logger.info("=" * 60)
    logger.info("Phase 1: Layer-wise Pretraining")
    logger.info("=" * 60)

    with MemoryTracker("Pretraining") as mem:
        errors = dbn.pretrain(images, max_epochs=config.training.epochs_pretrain)

    results["pretrain_errors"] = errors
    results["pretrain_time_seconds"] = mem.duration_seconds

    # ─── Phase 2: Fine-tuning ───────────────────────────────────────
    if not args.skip_finetune:
        logger.info("=" * 60)
        logger.info("Phase 2: Supervised Fine-tuning")
        logger.info("=" * 60)

        with MemoryTracker("Fine-tuning") as mem:
            error = dbn.fine_tune(images, labels, epochs=config.training.epochs_finetune)

        results["finetune_train_error"] = error
        results["finetune_time_seconds"] = mem.duration_seconds

    # ─── Phase 3: SVM ───────────────────────────────────────────────
    if args.svm:
        logger.info("=" * 60)
        logger.info("Phase 3: SVM on Learned Features")
        logger.info("=" * 60)

        if args.grid_search:
            ok = dbn.svm_grid_search(images, labels)
            results["svm_best_params"] = dbn.svm_best_params
        else:
            ok = dbn.svm_train(images, labels)

        if ok:
            results["svm_train_error"] = classification_error(
                dbn.svm_predict, images, labels
            )
        else:
            logger.warning("SVM training was rejected, see the warning above")

    checkpoint_path = output_dir / "dbn.pt"
    dbn.save(checkpoint_path)
    dbn.save_weights(output_dir / "dbn.safetensors")

    with open(output_dir / "train_results.json", "w") as f:
        json.dump(results, f, indent=2)

    logger.info(
        f"\nTraining complete!"
        f"\n  Pretraining errors: {', '.join(f'{e:.5f}' for e in errors)}"
        f"\n  Checkpoint: {checkpoint_path}"
    )


if __name__ == "__main__":
    main()
