from __future__ import annotations

import enum
import inspect
from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import ArrayLike, NDArray
from sklearn.base import BaseEstimator, RegressorMixin
from sklearn.utils import check_array, check_X_y

from ..exceptions import UnsupportedCombination, UnsupportedOption, UnsupportedSimulation

SINGLE = 'single'
MULTI = 'multi'
SITE_MODES = (SINGLE, MULTI)

SIMULATED_FAMILIES = ('binomial', 'Gamma')


class FittingMode(enum.Enum):
    """Ways of fitting a regression model."""

    NONE = 'none'
    STEPWISE = 'stepwise'
    L1 = 'L1'
    L2 = 'L2'
    L1L2 = 'L1L2'
    GROUP_LASSO = 'gLASSO'
    MP = 'MP'

    @classmethod
    def parse(cls, value: FittingMode | str | None) -> FittingMode:
        if value is None:
            return cls.NONE
        if isinstance(value, cls):
            return value
        if value == 'groupLasso':
            return cls.GROUP_LASSO
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f'unknown fitting {value!r}, expected one of {[m.value for m in cls]}'
            ) from None


# site modes each fitting accepts
SITE_LEGALITY = {
    FittingMode.NONE: frozenset([SINGLE]),
    FittingMode.STEPWISE: frozenset([SINGLE]),
    FittingMode.L1: frozenset([SINGLE]),
    FittingMode.L2: frozenset([SINGLE]),
    FittingMode.L1L2: frozenset([SINGLE]),
    FittingMode.GROUP_LASSO: frozenset([MULTI]),
    FittingMode.MP: frozenset([SINGLE, MULTI]),
}

if set(SITE_LEGALITY) != set(FittingMode):
    raise ImportError(
        f'SITE_LEGALITY is missing fitting modes {set(FittingMode) - set(SITE_LEGALITY)}'
    )


def check_site(site: str) -> str:
    if site not in SITE_MODES:
        raise ValueError(f'site must be one of {SITE_MODES}, got {site!r}')
    return site


def check_fitting_site(fitting: FittingMode, site: str) -> None:
    """Raise UnsupportedCombination if `fitting` cannot be used in `site` mode."""
    if check_site(site) not in SITE_LEGALITY[fitting]:
        allowed = sorted(m.value for m, sites in SITE_LEGALITY.items() if site in sites)
        raise UnsupportedCombination(
            f'fitting {fitting.value!r} is not available in {site}-site mode; '
            f'{site}-site mode accepts {allowed}'
        )


@dataclass(frozen=True)
class Info:
    """Description of a fitted experiment, travelling with its models."""

    method: str
    fitting: str | None
    simulate: bool
    family: str | None
    site: str

    @property
    def single_site(self) -> bool:
        return self.site == SINGLE


def simulate_draws(
    pred: NDArray[Any], family: str, rng: np.random.Generator, dispersion: float | None = None
) -> NDArray[Any]:
    """Draw stochastic predictions from the fitted distribution.

    Parameters
    ----------
    pred : ndarray
        Conditional means (probabilities for the binomial family).
    family : {'binomial', 'Gamma'}
        Distribution family.
    rng : numpy.random.Generator
        Random number source.
    dispersion : float, optional
        Dispersion of the fitted model, required for the Gamma family.
    """
    pred = np.asarray(pred, dtype=np.float64)
    if family == 'binomial':
        return (pred > rng.uniform(size=pred.shape)).astype(np.float64)
    if family == 'Gamma':
        if dispersion is None or not dispersion > 0:
            raise UnsupportedSimulation('Gamma simulation needs a positive dispersion estimate')
        return rng.gamma(shape=1.0 / dispersion, scale=dispersion * pred)
    raise UnsupportedSimulation(
        f'stochastic prediction is only available for families {SIMULATED_FAMILIES}, '
        f'got {family!r}'
    )


def check_simulation(simulate: bool, family: str) -> None:
    if simulate and family not in SIMULATED_FAMILIES:
        raise UnsupportedSimulation(
            f'stochastic prediction is only available for families {SIMULATED_FAMILIES}, '
            f'got {family!r}'
        )


class DownscalingBackend(RegressorMixin, BaseEstimator):
    """Base class of the downscaling methods.

    Subclasses set ``method`` and implement ``fit``/``predict``; they override
    ``check_site_mode`` and ``check_options`` when some parameter or site
    combinations are illegal.
    """

    method: str = ''

    def check_site_mode(self, site: str) -> None:
        check_site(site)

    def check_options(self) -> None:
        pass

    def info(self, site: str) -> Info:
        return Info(
            method=self.method,
            fitting=None,
            simulate=bool(getattr(self, 'simulate', False)),
            family=getattr(self, 'family', None),
            site=site,
        )

    @classmethod
    def _param_defaults(cls) -> dict[str, Any]:
        signature = inspect.signature(cls.__init__)
        return {
            name: p.default
            for name, p in signature.parameters.items()
            if name != 'self' and p.kind != p.VAR_KEYWORD
        }

    def _reject_options(self, allowed: frozenset[str], context: str) -> None:
        """Raise UnsupportedOption for parameters outside `allowed` set away from their default."""
        defaults = self._param_defaults()
        for name, value in self.get_params(deep=False).items():
            if name in allowed:
                continue
            default = defaults[name]
            if value is default or (isinstance(value, (str, bool)) and value == default):
                continue
            raise UnsupportedOption(
                f'option {name!r} is not accepted {context}; accepted options are {sorted(allowed)}'
            )

    def _check_n_features(self, X: ArrayLike, reset: bool) -> None:
        """Check and set n_features_in_ attribute.

        Parameters
        ----------
        X : array-like
            Input data
        reset : bool
            Whether to reset n_features_in_ or check consistency
        """
        n_features = X.shape[1] if hasattr(X, 'shape') and len(X.shape) > 1 else 1

        if reset:
            self.n_features_in_ = n_features
        elif hasattr(self, 'n_features_in_'):
            if self.n_features_in_ != n_features:
                raise ValueError(
                    f'X has {n_features} features, but {self.__class__.__name__} '
                    f'was fitted with {self.n_features_in_} features.'
                )

    def _validate_data(
        self, X: ArrayLike, y: ArrayLike | None = None, reset: bool = True
    ) -> NDArray[Any] | tuple[NDArray[Any], NDArray[Any]]:
        """Validate input data and set or check the `n_features_in_` attribute.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            The input samples.
        y : array-like of shape (n_samples,) or (n_samples, n_targets), default=None
            The targets. If None, only `X` is checked.
        reset : bool, default=True
            Whether to reset the `n_features_in_` attribute.

        Returns
        -------
        out : ndarray or tuple of ndarrays
            The validated input. A tuple is returned if `y` is not None. A
            single-column `y` is flattened.
        """
        if y is None:
            X = check_array(X, dtype=np.float64)
            out = X
        else:
            X, y = check_X_y(X, y, dtype=np.float64, multi_output=True, y_numeric=True)
            y = np.asarray(y, dtype=np.float64)
            if reset:
                self.n_outputs_ = 1 if y.ndim == 1 else y.shape[1]
                self._y_ndim = y.ndim
            out = X, y

        self._check_n_features(X, reset=reset)
        return out

    def _format_output(self, pred: ArrayLike) -> NDArray[Any]:
        """Shape predictions like the `y` passed to fit."""
        pred = np.asarray(pred, dtype=np.float64)
        if self._y_ndim == 1:
            return pred.reshape(-1)
        return pred.reshape(len(pred), -1)
