"""
Penalized regression with cross-validated penalty selection.

The penalty strength ``lambda_`` follows the per-observation scaling of
elastic-net regression::

    1 / (2 n) * ||y - X w||^2 + lambda_ * (alpha * ||w||_1 + (1 - alpha) / 2 * ||w||_2^2)

and is selected with the one-standard-error rule over a geometric path of
candidate values. The internal folds are drawn from their own seeded
generator, independently of any outer cross-validation.
"""
from __future__ import annotations

import collections
import logging
import warnings
from typing import Any

import numpy as np
import sklearn
from joblib import Parallel, delayed
from numpy.typing import NDArray
from packaging.version import Version
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import ElasticNet, LogisticRegression, MultiTaskLasso, Ridge
from sklearn.model_selection import KFold, StratifiedKFold

from ..exceptions import ConvergenceFailure

logger = logging.getLogger(__name__)

ALPHA_GRID = tuple(np.round(np.linspace(0.0, 1.0, 11), 1))

# smallest alpha used to bound the lambda path, as pure ridge has no finite lambda_max
_MIN_PATH_ALPHA = 1e-3
_PROB_CLIP = 1e-5

# scikit-learn 1.8 derives the logistic penalty from l1_ratio alone
_LOGISTIC_PENALTY = (
    {} if Version(sklearn.__version__).release >= (1, 8) else {'penalty': 'elasticnet'}
)

PenaltySearch = collections.namedtuple(
    'PenaltySearch', ['alpha', 'lambda_', 'lambdas', 'cvm', 'cvsd']
)


def lambda_path(X, y, alpha=1.0, n_lambda=100, lambda_min_ratio=None):
    """Decreasing geometric sequence of penalties, starting where all weights vanish."""
    n_samples, n_features = X.shape
    if lambda_min_ratio is None:
        lambda_min_ratio = 1e-4 if n_samples > n_features else 1e-2

    xc = X - X.mean(axis=0)
    yc = y - y.mean(axis=0)
    gradient = xc.T @ yc
    if gradient.ndim == 2:
        gradient = np.sqrt((gradient**2).sum(axis=1))
    lambda_max = np.abs(gradient).max() / (n_samples * max(alpha, _MIN_PATH_ALPHA))
    if not np.isfinite(lambda_max) or lambda_max <= 0:
        lambda_max = 1.0
    return np.geomspace(lambda_max, lambda_max * lambda_min_ratio, n_lambda)


def make_penalized_model(family, alpha, lambda_, n_samples, max_iter=None):
    """Return an unfitted scikit-learn estimator for one (alpha, lambda_) pair."""
    if family == 'binomial':
        return LogisticRegression(
            solver='saga',
            l1_ratio=alpha,
            C=1.0 / (n_samples * lambda_),
            max_iter=max_iter or 1000,
            **_LOGISTIC_PENALTY,
        )
    if family == 'mgaussian':
        return MultiTaskLasso(alpha=lambda_, max_iter=max_iter or 1000)
    if alpha == 0:
        return Ridge(alpha=n_samples * lambda_)
    return ElasticNet(alpha=lambda_, l1_ratio=alpha, max_iter=max_iter or 1000)


def predict_penalized(model, X, family):
    if family == 'binomial':
        return model.predict_proba(X)[:, 1]
    return model.predict(X)


def deviance(family, y_true, y_pred):
    """Mean deviance of predictions on held-out rows."""
    if family == 'binomial':
        p = np.clip(y_pred, _PROB_CLIP, 1 - _PROB_CLIP)
        return -2 * np.mean(y_true * np.log(p) + (1 - y_true) * np.log(1 - p))
    resid = np.asarray(y_true - y_pred).reshape(len(y_true), -1)
    return np.mean((resid**2).sum(axis=1))


def select_lambda_1se(lambdas, cvm, cvsd):
    """Index of the largest penalty whose error is within one standard error of the minimum."""
    i_min = np.nanargmin(cvm)
    candidates = np.flatnonzero(cvm <= cvm[i_min] + cvsd[i_min])
    return candidates[np.argmax(lambdas[candidates])]


def _cv_error(family, X, y, alpha, lambda_, splits, max_iter):
    errors = np.empty(len(splits))
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', category=ConvergenceWarning)
        for i, (train, test) in enumerate(splits):
            model = make_penalized_model(family, alpha, lambda_, len(train), max_iter)
            model.fit(X[train], y[train])
            errors[i] = deviance(family, y[test], predict_penalized(model, X[test], family))
    sd = errors.std(ddof=1) / np.sqrt(len(errors)) if len(errors) > 1 else 0.0
    return errors.mean(), sd


def cv_penalty(
    X: NDArray[Any],
    y: NDArray[Any],
    family: str,
    alphas=(1.0,),
    n_folds: int = 10,
    n_lambda: int = 100,
    lambda_min_ratio: float | None = None,
    random_state: int | None = None,
    n_jobs: int | None = None,
    max_iter: int | None = None,
) -> PenaltySearch:
    """Select the mixing parameter and penalty by k-fold cross-validation.

    For each alpha, the penalty is chosen with the one-standard-error rule;
    the alpha with the lowest minimum cross-validated deviance wins. Candidate
    evaluations run in a joblib pool of `n_jobs` workers.
    """
    n_folds = min(n_folds, len(X))
    if family == 'binomial':
        folds = StratifiedKFold(n_splits=n_folds, shuffle=True, random_state=random_state)
    else:
        folds = KFold(n_splits=n_folds, shuffle=True, random_state=random_state)
    splits = list(folds.split(X, y))

    paths = [lambda_path(X, y, a, n_lambda, lambda_min_ratio) for a in alphas]
    scores = Parallel(n_jobs=n_jobs)(
        delayed(_cv_error)(family, X, y, a, lam, splits, max_iter)
        for a, path in zip(alphas, paths)
        for lam in path
    )
    scores = np.asarray(scores).reshape(len(alphas), n_lambda, 2)
    cvm, cvsd = scores[..., 0], scores[..., 1]

    best = int(np.nanargmin(np.nanmin(cvm, axis=1)))
    i_1se = select_lambda_1se(paths[best], cvm[best], cvsd[best])
    logger.debug(
        'selected alpha=%s lambda=%.4g by %d-fold cross-validation', alphas[best],
        paths[best][i_1se], n_folds,
    )
    return PenaltySearch(
        alpha=alphas[best],
        lambda_=paths[best][i_1se],
        lambdas=paths[best],
        cvm=cvm[best],
        cvsd=cvsd[best],
    )


def fit_penalized(X, y, family, alpha, lambda_, max_iter=None):
    """Fit the final penalized model, surfacing non-convergence."""
    model = make_penalized_model(family, alpha, lambda_, len(X), max_iter)
    with warnings.catch_warnings():
        warnings.simplefilter('error', category=ConvergenceWarning)
        try:
            model.fit(X, y)
        except ConvergenceWarning as err:
            raise ConvergenceFailure(
                f'{type(model).__name__} did not converge '
                f'(alpha={alpha}, lambda={lambda_:.4g}): {err}'
            ) from err
    return model
