"""
BeliefForge Fine-Tuner
=======================
Supervised fine-tuning of a pretrained network. After greedy layer-wise
pretraining, the whole stack is unrolled into a feed-forward classifier
and every layer is adjusted jointly by backpropagation.

What This Handles:
    - Forward pass + cross-entropy loss on the final layer's logits
    - SGD with momentum and optional L2 weight decay, or conjugate
      gradient (Polak-Ribiere directions, backtracking line search)
    - Gradient clipping (prevent exploding gradients)
    - Training and validation classification error
    - Logging (loss, error, throughput)

Usage:
    This class is normally driven by ``DBN.fine_tune``:
    >>> tuner = FineTuner(dbn, config, train_loader, val_loader)
    >>> results = tuner.train(epochs=10)
    >>> results["final_train_error"]
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import torch
import torch.nn as nn
from torch.nn.utils import parameters_to_vector, vector_to_parameters
from torch.utils.data import DataLoader

from beliefforge.config import BeliefForgeConfig

logger = logging.getLogger(__name__)


class FineTuner:
    """
    Backpropagation loop over a network returning class logits.

    Parameters
    ----------
    model : nn.Module
        Network whose ``forward`` returns logits of shape (N, classes).

    config : BeliefForgeConfig
        Full configuration object.

    train_loader : DataLoader
        Yields (inputs, labels) batches.

    val_loader : DataLoader or None
        Validation data loader. If None, validation is skipped.

    name : str
        Human-readable name for this run (for logging).
    """

    # Halvings tried by the conjugate gradient line search
    LINE_SEARCH_HALVINGS = 20

    def __init__(
        self,
        model: nn.Module,
        config: BeliefForgeConfig,
        train_loader: DataLoader,
        val_loader: Optional[DataLoader] = None,
        name: str = "fine_tune",
    ):
        self.config = config
        self.name = name
        self.device = config.training.resolve_device()

        self.model = model.to(self.device)
        self.train_loader = train_loader
        self.val_loader = val_loader

        self.criterion = nn.CrossEntropyLoss()

        trainable_params = [p for p in model.parameters() if p.requires_grad]
        if not trainable_params:
            raise ValueError(
                "No trainable parameters found. Did you freeze the network?"
            )

        self.trainable_params = trainable_params
        self.use_cg = config.training.finetune_optimizer == "cg"
        self.optimizer = None
        if not self.use_cg:
            self.optimizer = torch.optim.SGD(
                trainable_params,
                lr=config.training.finetune_learning_rate,
                momentum=config.training.finetune_momentum,
                weight_decay=config.training.weight_decay,
            )

        self.global_step = 0
        self.best_val_error = float("inf")

        logger.info(
            f"FineTuner '{name}' ({config.training.finetune_optimizer}) initialized on {self.device} "
            f"with {sum(p.numel() for p in trainable_params) / 1e6:.2f}M "
            f"trainable parameters"
        )

    def train(self, epochs: int) -> dict:
        """
        Run the fine-tuning loop for the specified number of epochs.

        Returns
        -------
        dict
            Training results containing:
            - train_losses / train_errors: per-epoch averages
            - val_errors: per-epoch validation error (if validating)
            - final_train_loss / final_train_error: last epoch's values
            - final_val_error / best_val_error: validation summary
            - total_time_seconds, total_steps
        """
        logger.info(
            f"[{self.name}] Starting fine-tuning: {epochs} epochs, "
            f"{len(self.train_loader)} steps/epoch"
        )

        start_time = time.time()

        results = {
            "train_losses": [],
            "train_errors": [],
            "val_errors": [],
            "final_train_loss": None,
            "final_train_error": None,
            "final_val_error": None,
            "best_val_error": float("inf"),
            "total_time_seconds": 0,
            "total_steps": 0,
        }

        for epoch in range(epochs):
            epoch_loss, epoch_error = self._train_epoch()
            results["train_losses"].append(epoch_loss)
            results["train_errors"].append(epoch_error)
            results["final_train_loss"] = epoch_loss
            results["final_train_error"] = epoch_error

            if self.val_loader is not None:
                val_loss, val_error = self._validate()
                results["val_errors"].append(val_error)
                results["final_val_error"] = val_error

                if val_error < results["best_val_error"]:
                    results["best_val_error"] = val_error
                    self.best_val_error = val_error
                    logger.info(
                        f"[{self.name}] New best val error: {val_error:.4f}"
                    )

            logger.info(
                f"[{self.name}] Epoch {epoch + 1}/{epochs} — "
                f"loss={epoch_loss:.4f}, error={epoch_error:.4f}"
            )

        total_time = time.time() - start_time
        results["total_time_seconds"] = total_time
        results["total_steps"] = self.global_step

        if epochs > 0:
            logger.info(
                f"[{self.name}] Fine-tuning complete in {total_time:.1f}s — "
                f"final_error={results['final_train_error']:.4f}"
            )

        return results

    def _train_epoch(self) -> tuple[float, float]:
        """
        Run one training epoch.

        Returns
        -------
        (float, float)
            Average loss and classification error over the epoch.
        """
        self.model.train()
        total_loss = 0.0
        n_batches = 0
        wrong = 0
        seen = 0

        for inputs, labels in self.train_loader:
            inputs = inputs.to(self.device)
            labels = labels.to(self.device).long()

            if self.use_cg:
                logits, loss = self._cg_step(inputs, labels)
            else:
                logits, loss = self._sgd_step(inputs, labels)
            self.global_step += 1

            total_loss += loss.item()
            n_batches += 1
            wrong += int((logits.argmax(dim=-1) != labels).sum())
            seen += len(labels)

            if (
                self.config.training.log_every > 0
                and self.global_step % self.config.training.log_every == 0
            ):
                logger.info(
                    f"[{self.name}] step={self.global_step}, "
                    f"loss={total_loss / n_batches:.4f}, "
                    f"error={wrong / max(seen, 1):.4f}"
                )

        return total_loss / max(n_batches, 1), wrong / max(seen, 1)

    def _sgd_step(
        self, inputs: torch.Tensor, labels: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """One optimizer step. Returns the logits and loss before it."""
        logits = self.model(inputs)
        loss = self.criterion(logits, labels)

        self.optimizer.zero_grad()
        loss.backward()

        if self.config.training.max_grad_norm > 0:
            torch.nn.utils.clip_grad_norm_(
                self.trainable_params, self.config.training.max_grad_norm,
            )

        self.optimizer.step()
        return logits.detach(), loss.detach()

    # ─── Conjugate Gradient ─────────────────────────────────────────────

    def _objective(self, inputs: torch.Tensor, labels: torch.Tensor) -> tuple:
        """Logits, loss and flattened gradient at the current parameters."""
        logits = self.model(inputs)
        loss = self.criterion(logits, labels)
        decay = self.config.training.weight_decay
        if decay > 0:
            loss = loss + 0.5 * decay * sum((p ** 2).sum() for p in self.trainable_params)
        # Visible biases do not reach the logits and get a zero gradient
        grads = torch.autograd.grad(loss, self.trainable_params, allow_unused=True)
        flat = torch.cat([
            torch.zeros_like(p).reshape(-1) if g is None else g.reshape(-1)
            for p, g in zip(self.trainable_params, grads)
        ])
        return logits.detach(), loss.detach(), flat

    @torch.no_grad()
    def _loss_at(self, x: torch.Tensor, inputs: torch.Tensor, labels: torch.Tensor) -> float:
        vector_to_parameters(x, self.trainable_params)
        loss = self.criterion(self.model(inputs), labels)
        decay = self.config.training.weight_decay
        if decay > 0:
            loss = loss + 0.5 * decay * (x ** 2).sum()
        return float(loss)

    def _line_search(
        self,
        x: torch.Tensor,
        direction: torch.Tensor,
        loss: float,
        slope: float,
        step: float,
        inputs: torch.Tensor,
        labels: torch.Tensor,
    ) -> float:
        """
        Backtracking line search along ``direction``.

        Returns the first step, halving from ``step``, that satisfies the
        sufficient decrease condition, or 0.0 if none does.
        """
        for _ in range(self.LINE_SEARCH_HALVINGS):
            if self._loss_at(x + step * direction, inputs, labels) <= loss + 1e-4 * step * slope:
                return step
            step *= 0.5
        return 0.0

    def _cg_step(
        self, inputs: torch.Tensor, labels: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """
        Minimize the batch loss with ``finetune_cg_steps`` conjugate
        gradient line searches. Returns the logits and loss before it.

        The search direction starts at the steepest descent and is
        updated with the Polak-Ribiere coefficient, clipped at zero so
        the search restarts from steepest descent whenever the
        directions stop being conjugate.
        """
        x = parameters_to_vector(self.trainable_params).detach()
        logits, loss, grad = self._objective(inputs, labels)
        first_logits, first_loss = logits, loss

        direction = -grad
        step = None
        for _ in range(self.config.training.finetune_cg_steps):
            slope = float(grad.dot(direction))
            if slope >= 0:
                direction = -grad
                slope = float(-grad.dot(grad))
            if slope == 0:
                break

            if step is None:
                step = 1.0 / (1.0 - slope)
            step = self._line_search(
                x, direction, float(loss), slope, 2.0 * step, inputs, labels,
            )
            if step == 0.0:
                break

            x = x + step * direction
            vector_to_parameters(x, self.trainable_params)
            _, loss, new_grad = self._objective(inputs, labels)

            beta = float(new_grad.dot(new_grad - grad) / grad.dot(grad))
            direction = -new_grad + max(beta, 0.0) * direction
            grad = new_grad

        # Leave the parameters at the last accepted point
        vector_to_parameters(x, self.trainable_params)
        return first_logits, first_loss

    @torch.no_grad()
    def _validate(self) -> tuple[float, float]:
        """
        Run validation.

        Returns
        -------
        (float, float)
            Average validation loss and classification error.
        """
        self.model.eval()
        total_loss = 0.0
        n_batches = 0
        wrong = 0
        seen = 0

        for inputs, labels in self.val_loader:
            inputs = inputs.to(self.device)
            labels = labels.to(self.device).long()

            logits = self.model(inputs)
            total_loss += self.criterion(logits, labels).item()
            n_batches += 1
            wrong += int((logits.argmax(dim=-1) != labels).sum())
            seen += len(labels)

        avg_loss = total_loss / max(n_batches, 1)
        error = wrong / max(seen, 1)
        logger.info(
            f"[{self.name}] Validation — loss={avg_loss:.4f}, error={error:.4f}"
        )
        return avg_loss, error

    def __repr__(self) -> str:
        return f"FineTuner(name={self.name}, device={self.device}, step={self.global_step})"
