"""
BeliefForge SVM Classifier
===========================
Train a Support Vector Machine on the features a pretrained network
extracts, instead of (or in addition to) fine-tuning it.

How It Works:
    1. Every training sample goes through the network; the activation
       probabilities of the final layer become the SVM's feature vector.
    2. A C-SVC with an RBF kernel is fit on (features, labels).
    3. Prediction runs new samples through the same network first.

Analogy:
    The network is a translator that rewrites images in a language
    where the digits are easy to tell apart; the SVM is the reader that
    draws the boundaries between them.

Usage:
    >>> from beliefforge.svm import svm_train, svm_predict
    >>> ok = svm_train(dbn, images, labels)
    >>> predicted = svm_predict(dbn, test_images)

    # Pick C and gamma by cross-validation:
    >>> svm_grid_search(dbn, images, labels, n_fold=5)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np
import torch

from beliefforge.config import SVMConfig

logger = logging.getLogger(__name__)


def default_svm_parameters() -> dict:
    """
    Default SVM parameters: probabilistic C-SVC, RBF kernel,
    C = 2.8 and gamma = 0.0073.
    """
    return svm_parameters(SVMConfig())


def svm_parameters(config: SVMConfig) -> dict:
    """Keyword arguments of ``sklearn.svm.SVC`` for a config."""
    return {
        "kernel": config.kernel,
        "C": config.C,
        "gamma": config.gamma,
        "probability": config.probability,
    }


@dataclass
class RBFGrid:
    """
    Search space of an RBF grid search, as exponents of 2.

    ``C`` takes ``c_steps`` values evenly spaced (in log2) between
    ``2**c_first`` and ``2**c_last``; likewise for ``gamma``.
    """
    c_first: float = -5.0
    c_last: float = 15.0
    c_steps: int = 6
    gamma_first: float = -15.0
    gamma_last: float = 3.0
    gamma_steps: int = 6

    @classmethod
    def from_config(cls, config: SVMConfig) -> RBFGrid:
        return cls(
            c_first=config.grid_c_first,
            c_last=config.grid_c_last,
            c_steps=config.grid_c_steps,
            gamma_first=config.grid_gamma_first,
            gamma_last=config.grid_gamma_last,
            gamma_steps=config.grid_gamma_steps,
        )

    def param_grid(self) -> dict:
        return {
            "C": np.logspace(self.c_first, self.c_last, self.c_steps, base=2),
            "gamma": np.logspace(self.gamma_first, self.gamma_last, self.gamma_steps, base=2),
        }


@dataclass
class SVMProblem:
    """Feature vectors and labels an SVM is fit on."""
    features: np.ndarray
    labels: np.ndarray

    def __len__(self) -> int:
        return len(self.labels)


def make_problem(dbn: Any, samples: Any, labels: Any) -> SVMProblem:
    """
    Build the SVM problem from the network's final activations.

    The problem is also kept on ``dbn.svm_problem``.
    """
    features = dbn.features(samples).detach().cpu().numpy().astype(np.float64)
    labels = np.asarray(
        labels.cpu() if isinstance(labels, torch.Tensor) else labels
    ).reshape(-1)

    problem = SVMProblem(features=features, labels=labels)
    dbn.svm_problem = problem
    return problem


def check_problem(problem: SVMProblem, parameters: dict) -> Optional[str]:
    """
    Return why ``parameters`` cannot be used on ``problem``, or None.
    """
    if len(problem) == 0:
        return "the problem has no samples"
    if len(problem.features) != len(problem.labels):
        return (
            f"{len(problem.features)} samples but {len(problem.labels)} labels"
        )
    if len(np.unique(problem.labels)) < 2:
        return "the labels contain a single class"
    if parameters.get("C", 1.0) <= 0:
        return f"C must be positive, got {parameters['C']}"
    gamma = parameters.get("gamma", "scale")
    if not isinstance(gamma, str) and gamma <= 0:
        return f"gamma must be positive, got {gamma}"
    return None


def svm_train(
    dbn: Any,
    samples: Any,
    labels: Any,
    parameters: Optional[dict] = None,
) -> bool:
    """
    Fit an SVM on the network's features of ``samples``.

    Parameters
    ----------
    dbn : DBN
        Network providing ``features``. Receives ``svm_model`` and
        ``svm_loaded = True`` on success.
    samples : tensor, array or sequence
        Training inputs.
    labels : tensor, array or sequence of int
        Training labels.
    parameters : dict or None
        ``sklearn.svm.SVC`` keyword arguments. Defaults to
        :func:`default_svm_parameters`.

    Returns
    -------
    bool
        False if the parameters do not fit the problem (nothing is
        trained), True otherwise.
    """
    from sklearn.svm import SVC

    parameters = parameters or default_svm_parameters()
    problem = make_problem(dbn, samples, labels)

    reason = check_problem(problem, parameters)
    if reason is not None:
        logger.warning(f"SVM parameters rejected: {reason}")
        return False

    logger.info(
        f"Training SVM on {len(problem):,} samples x "
        f"{problem.features.shape[1]} features ({parameters})"
    )
    model = SVC(**parameters)
    model.fit(problem.features, problem.labels)

    dbn.svm_model = model
    dbn.svm_loaded = True
    return True


def svm_grid_search(
    dbn: Any,
    samples: Any,
    labels: Any,
    n_fold: int = 5,
    grid: Optional[RBFGrid] = None,
) -> bool:
    """
    Cross-validated grid search over C and gamma of an RBF SVM.

    Every grid point is scored with ``n_fold``-fold cross-validation and
    the results are logged. The best estimator, refit on all the data,
    becomes ``dbn.svm_model`` and its parameters ``dbn.svm_best_params``.

    Returns
    -------
    bool
        False if the default parameters do not fit the problem.
    """
    from sklearn.model_selection import GridSearchCV
    from sklearn.svm import SVC

    grid = grid or RBFGrid()
    parameters = default_svm_parameters()
    problem = make_problem(dbn, samples, labels)

    reason = check_problem(problem, parameters)
    if reason is not None:
        logger.warning(f"SVM grid search rejected: {reason}")
        return False

    param_grid = grid.param_grid()
    logger.info(
        f"SVM grid search: {len(param_grid['C'])} x {len(param_grid['gamma'])} "
        f"points, {n_fold}-fold cross-validation"
    )

    search = GridSearchCV(
        SVC(kernel="rbf", probability=parameters["probability"]),
        param_grid,
        cv=n_fold,
    )
    search.fit(problem.features, problem.labels)

    for params, score in zip(
        search.cv_results_["params"], search.cv_results_["mean_test_score"]
    ):
        logger.info(
            f"C={params['C']:.5g} gamma={params['gamma']:.5g} "
            f"-> accuracy={score:.4f}"
        )
    logger.info(
        f"Best: C={search.best_params_['C']:.5g} "
        f"gamma={search.best_params_['gamma']:.5g} "
        f"(accuracy={search.best_score_:.4f})"
    )

    dbn.svm_model = search.best_estimator_
    dbn.svm_best_params = {name: float(value) for name, value in search.best_params_.items()}
    dbn.svm_loaded = True
    return True


def _require_model(dbn: Any) -> Any:
    if not getattr(dbn, "svm_loaded", False) or dbn.svm_model is None:
        raise ValueError("No SVM model. Call svm_train or svm_grid_search first.")
    return dbn.svm_model


def svm_predict(dbn: Any, samples: Any) -> np.ndarray:
    """Predicted labels of ``samples``, shape (N,)."""
    model = _require_model(dbn)
    features = dbn.features(samples).detach().cpu().numpy().astype(np.float64)
    return model.predict(features)


def svm_predict_proba(dbn: Any, samples: Any) -> np.ndarray:
    """
    Class probabilities of ``samples``, shape (N, classes).

    Raises
    ------
    ValueError
        If there is no model or it was trained without probability
        estimates.
    """
    model = _require_model(dbn)
    if not getattr(model, "probability", False):
        raise ValueError("The SVM was trained without probability estimates")
    features = dbn.features(samples).detach().cpu().numpy().astype(np.float64)
    return model.predict_proba(features)
