import logging

import numpy as np
import scipy.linalg
import statsmodels.api as sm
from sklearn.utils.validation import check_is_fitted

from ..exceptions import ConvergenceFailure, UnsupportedCombination
from .base import (
    MULTI,
    SINGLE,
    DownscalingBackend,
    FittingMode,
    Info,
    check_fitting_site,
    check_simulation,
    simulate_draws,
)
from .penalized import ALPHA_GRID, cv_penalty, fit_penalized, predict_penalized

logger = logging.getLogger(__name__)

FAMILIES = {
    'gaussian': sm.families.Gaussian,
    'binomial': sm.families.Binomial,
    'Gamma': sm.families.Gamma,
    'poisson': sm.families.Poisson,
    'inverse.gaussian': sm.families.InverseGaussian,
}

LINKS = {
    'identity': sm.families.links.Identity,
    'log': sm.families.links.Log,
    'logit': sm.families.links.Logit,
    'probit': sm.families.links.Probit,
    'cloglog': sm.families.links.CLogLog,
    'inverse': sm.families.links.InversePower,
    'sqrt': sm.families.links.Sqrt,
}

PENALIZED_FAMILIES = ('gaussian', 'binomial')
GROUP_FAMILIES = ('gaussian', 'mgaussian')

_LIKELIHOOD_OPTIONS = frozenset(
    ['fitting', 'family', 'link', 'simulate', 'random_state', 'max_iter']
)
_SEARCH_OPTIONS = frozenset(
    ['fitting', 'family', 'n_folds', 'n_lambda', 'lambda_min_ratio', 'random_state', 'search_n_jobs',
     'max_iter']
)

# options each fitting accepts
MODE_OPTIONS = {
    FittingMode.NONE: _LIKELIHOOD_OPTIONS,
    FittingMode.STEPWISE: _LIKELIHOOD_OPTIONS,
    FittingMode.L1: _SEARCH_OPTIONS | {'simulate'},
    FittingMode.L2: _SEARCH_OPTIONS | {'simulate'},
    FittingMode.L1L2: _SEARCH_OPTIONS | {'simulate', 'alphas'},
    FittingMode.GROUP_LASSO: _SEARCH_OPTIONS,
    FittingMode.MP: frozenset(['fitting', 'family', 'simulate', 'random_state']),
}

if set(MODE_OPTIONS) != set(FittingMode):
    raise ImportError(
        f'MODE_OPTIONS is missing fitting modes {set(FittingMode) - set(MODE_OPTIONS)}'
    )


def _add_intercept(X):
    return np.column_stack([X, np.ones(len(X))])


class GLMDownscaler(DownscalingBackend):
    """ Generalized linear model downscaling

    Parameters
    ----------
    fitting : {'none', 'stepwise', 'L1', 'L2', 'L1L2', 'gLASSO', 'MP'}
        How the linear model is fitted:

        * ``'none'``: maximum likelihood GLM.
        * ``'stepwise'``: forward selection from the intercept-only model,
          adding the predictor that lowers the AIC most until none does.
        * ``'L1'``, ``'L2'``, ``'L1L2'``: lasso, ridge and elastic-net
          penalties, selected by internal cross-validation with the
          one-standard-error rule. ``'L1L2'`` also searches the mixing
          parameter over `alphas`.
        * ``'gLASSO'``: group lasso fitting all sites jointly (multi-site only).
        * ``'MP'``: least squares through the Moore-Penrose pseudo-inverse;
          single or multi-site.
    family : str
        Error distribution: ``'gaussian'``, ``'binomial'``, ``'Gamma'``,
        ``'poisson'`` or ``'inverse.gaussian'``. Penalized fittings accept
        ``'gaussian'`` and ``'binomial'``; ``'gLASSO'`` is ``'mgaussian'``.
    link : str, optional
        Link function for ``'none'``/``'stepwise'`` (e.g. ``'log'``). Default is
        the family's canonical link.
    simulate : bool
        If True, predictions are random draws from the fitted distribution
        (``'binomial'`` or ``'Gamma'`` only) instead of the conditional mean.
    random_state : int, optional
        Seed of the internal cross-validation folds and of the simulation draws.
    n_folds : int, optional
        Number of internal cross-validation folds. Default is 10.
    n_lambda : int, optional
        Number of candidate penalties. Default is 100.
    lambda_min_ratio : float, optional
        Smallest candidate penalty as a fraction of the largest.
    alphas : sequence of float, optional
        Mixing parameters searched by ``'L1L2'``. Default is 0.0, 0.1, ..., 1.0.
    search_n_jobs : int, optional
        Workers used to evaluate candidate penalties.
    max_iter : int, optional
        Iteration limit of the underlying solver.

    Attributes
    ----------
    model_ : object
        Fitted statsmodels results or scikit-learn estimator.
    coef_ : ndarray
        Moore-Penrose weights, the intercept being the last row (``'MP'`` only).
    selected_ : ndarray
        Columns kept by the stepwise search (``'stepwise'`` only).
    search_ : PenaltySearch
        Result of the penalty search (penalized fittings only).
    dispersion_ : float
        Dispersion estimate of likelihood fits.
    """

    method = 'GLM'

    def __init__(
        self,
        fitting='none',
        family='gaussian',
        link=None,
        simulate=False,
        random_state=None,
        n_folds=None,
        n_lambda=None,
        lambda_min_ratio=None,
        alphas=None,
        search_n_jobs=None,
        max_iter=None,
    ):
        self.fitting = fitting
        self.family = family
        self.link = link
        self.simulate = simulate
        self.random_state = random_state
        self.n_folds = n_folds
        self.n_lambda = n_lambda
        self.lambda_min_ratio = lambda_min_ratio
        self.alphas = alphas
        self.search_n_jobs = search_n_jobs
        self.max_iter = max_iter

    @property
    def fitting_mode(self):
        return FittingMode.parse(self.fitting)

    def check_site_mode(self, site):
        check_fitting_site(self.fitting_mode, site)

    def check_options(self):
        fitting = self.fitting_mode
        self._reject_options(MODE_OPTIONS[fitting], f"with fitting {fitting.value!r}")

        if fitting in (FittingMode.NONE, FittingMode.STEPWISE):
            families = tuple(FAMILIES)
        elif fitting is FittingMode.GROUP_LASSO:
            families = GROUP_FAMILIES
        elif fitting is FittingMode.MP:
            families = ('gaussian',)
        else:
            families = PENALIZED_FAMILIES
        if self.family not in families:
            raise UnsupportedCombination(
                f'family {self.family!r} is not available with fitting {fitting.value!r}; '
                f'expected one of {families}'
            )
        if self.link is not None and self.link not in LINKS:
            raise ValueError(f'unknown link {self.link!r}, expected one of {sorted(LINKS)}')
        check_simulation(self.simulate, self.family)

    def info(self, site):
        fitting = self.fitting_mode
        family = 'mgaussian' if fitting is FittingMode.GROUP_LASSO else self.family
        return Info(
            method=self.method,
            fitting=fitting.value,
            simulate=bool(self.simulate),
            family=family,
            site=site,
        )

    def fit(self, X, y):
        """ Fit the generalized linear model

        Parameters
        ----------
        X : array-like, shape (n_samples, n_features)
            Training data
        y : array-like, shape (n_samples,) or (n_samples, n_sites)
            Target values. A 2-D `y` fits all sites jointly, which only
            ``'MP'`` and ``'gLASSO'`` support.

        Returns
        -------
        self : returns an instance of self.
        """
        self.check_options()
        X, y = self._validate_data(X, y=y)
        fitting = self.fitting_mode
        joint = y.ndim == 2 and (y.shape[1] > 1 or fitting is FittingMode.GROUP_LASSO)
        site = MULTI if joint else SINGLE
        check_fitting_site(fitting, site)
        if y.ndim == 2 and site == SINGLE:
            y = y[:, 0]

        if fitting is FittingMode.NONE:
            self.model_ = self._fit_likelihood(X, y)
            self.dispersion_ = float(self.model_.scale)
        elif fitting is FittingMode.STEPWISE:
            self.model_, self.selected_ = self._fit_stepwise(X, y)
            self.dispersion_ = float(self.model_.scale)
        elif fitting is FittingMode.MP:
            self.coef_ = scipy.linalg.pinv(_add_intercept(X)) @ y
        else:
            if fitting is FittingMode.L1:
                alphas = (1.0,)
            elif fitting is FittingMode.L2:
                alphas = (0.0,)
            elif fitting is FittingMode.L1L2:
                alphas = tuple(self.alphas) if self.alphas is not None else ALPHA_GRID
            else:
                alphas = (1.0,)
            family = self.info(site).family
            self.search_ = cv_penalty(
                X,
                y,
                family,
                alphas=alphas,
                n_folds=self.n_folds or 10,
                n_lambda=self.n_lambda or 100,
                lambda_min_ratio=self.lambda_min_ratio,
                random_state=self.random_state,
                n_jobs=self.search_n_jobs,
                max_iter=self.max_iter,
            )
            self.model_ = fit_penalized(
                X, y, family, self.search_.alpha, self.search_.lambda_, self.max_iter
            )

        self.rng_ = np.random.default_rng(self.random_state)
        return self

    def _family(self):
        family_cls = FAMILIES[self.family]
        if self.link is None:
            return family_cls()
        return family_cls(link=LINKS[self.link]())

    def _fit_likelihood(self, exog_x, y, with_intercept=True):
        exog = sm.add_constant(exog_x, has_constant='add') if with_intercept else exog_x
        try:
            results = sm.GLM(y, exog, family=self._family()).fit(maxiter=self.max_iter or 100)
        except np.linalg.LinAlgError as err:
            raise ConvergenceFailure(f'GLM fit failed: {err}') from err
        if not getattr(results, 'converged', True):
            raise ConvergenceFailure(
                f'GLM ({self.family}) did not converge in {self.max_iter or 100} iterations'
            )
        return results

    def _fit_stepwise(self, X, y):
        selected = []
        remaining = list(range(X.shape[1]))
        intercept = np.ones((len(X), 1))
        current = self._fit_likelihood(intercept, y, with_intercept=False)

        while remaining:
            candidates = []
            for j in remaining:
                exog = np.column_stack([intercept, X[:, selected + [j]]])
                try:
                    candidates.append((self._fit_likelihood(exog, y, with_intercept=False), j))
                except ConvergenceFailure as err:
                    logger.debug('skipping stepwise candidate column %d: %s', j, err)
            if not candidates:
                break
            best, best_j = min(candidates, key=lambda c: c[0].aic)
            if best.aic >= current.aic:
                break
            selected.append(best_j)
            remaining.remove(best_j)
            current = best

        logger.debug('stepwise selection kept columns %s', selected)
        return current, np.array(selected, dtype=int)

    def predict_mean(self, X):
        """Deterministic prediction: the conditional mean (probability for binomial)."""
        check_is_fitted(self)
        X = self._validate_data(X, reset=False)
        fitting = self.fitting_mode

        if fitting is FittingMode.NONE:
            pred = self.model_.predict(sm.add_constant(X, has_constant='add'))
        elif fitting is FittingMode.STEPWISE:
            exog = np.column_stack([np.ones(len(X)), X[:, self.selected_]])
            pred = self.model_.predict(exog)
        elif fitting is FittingMode.MP:
            pred = _add_intercept(X) @ self.coef_
        else:
            pred = predict_penalized(self.model_, X, self.info(SINGLE).family)
        return self._format_output(pred)

    def predict(self, X):
        """ Predict using the fitted GLM

        Parameters
        ----------
        X : array-like, shape (n_samples, n_features)
            Samples.

        Returns
        -------
        pred : ndarray, shape (n_samples,) or (n_samples, n_sites)
            Conditional means, or random draws from the fitted distribution if
            ``simulate`` is True.
        """
        pred = self.predict_mean(X)
        if self.simulate:
            pred = simulate_draws(pred, self.family, self.rng_, getattr(self, 'dispersion_', None))
        return pred
