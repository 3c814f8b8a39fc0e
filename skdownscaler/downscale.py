"""
Training and prediction of downscaling experiments.

:py:func:`train` routes a :py:class:`~skdownscaler.prepare.PreparedData` to
the method named by the user and fits one model per site (single-site mode)
or one model for all sites jointly (multi-site mode). :py:func:`predict`
projects new predictors through the transforms recorded at training time
and rebuilds predictand-shaped output.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Any

import numpy as np
import xarray as xr
from joblib import Parallel, delayed
from numpy.typing import NDArray
from sklearn.base import clone

from .exceptions import (
    ConvergenceFailure,
    DownscalingError,
    UnsupportedCombination,
    UnsupportedOption,
)
from .methods import METHODS, MULTI, SINGLE, DownscalingBackend, Info
from .methods.base import check_site
from .options import N_JOBS, RANDOM_STATE, get_option
from .prepare import NewData, PreparedData, prepare_new_data
from .utils import complete_rows, spawn_seeds

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ExperimentResult:
    """Fitted models of a downscaling experiment.

    Attributes
    ----------
    method : str
        Method name, e.g. ``'GLM'``.
    info : Info
        Fitting, family, simulation flag and site mode of the models.
    models : tuple
        One fitted model per site in single-site mode (None for sites without
        observations), a single joint model in multi-site mode.
    prepared : PreparedData
        Training matrices and the transforms used to project new predictors.
    """

    method: str
    info: Info
    models: tuple[DownscalingBackend | None, ...]
    prepared: PreparedData

    def __repr__(self):
        fitted = sum(m is not None for m in self.models)
        summary = [
            f'<skdownscaler.{self.__class__.__name__}>',
            f'  Method: {self.method} ({self.info.site}-site)',
            f'  Fitting: {self.info.fitting}, family: {self.info.family}, '
            f'simulate: {self.info.simulate}',
            f'  Fitted models: {fitted}',
            f'  Features: {self.prepared.x_global.shape[1]} global'
            + (f', {self.prepared.x_local[0].shape[1]} local' if self.prepared.x_local else ''),
        ]
        return '\n'.join(summary)


def build_backend(method: str, options: dict[str, Any]) -> DownscalingBackend:
    """Instantiate the backend of `method`, rejecting options it does not know."""
    try:
        backend_cls = METHODS[method]
    except KeyError:
        raise ValueError(f'unknown method {method!r}, expected one of {sorted(METHODS)}') from None

    valid = backend_cls._get_param_names()
    unknown = sorted(set(options) - set(valid))
    if unknown:
        raise UnsupportedOption(
            f'{unknown} are not options of method {method!r}; valid options are {valid}'
        )
    return backend_cls(**options)


def check_experiment(
    method: str,
    site: str = SINGLE,
    local: bool = False,
    predictand_pca: bool = False,
    **options: Any,
) -> DownscalingBackend:
    """Validate a method, site mode and options before any fitting.

    Returns the unfitted backend.
    """
    model = build_backend(method, options)
    check_site(site)
    if local and site == MULTI:
        raise UnsupportedCombination('local predictors are site specific and need single-site mode')
    if predictand_pca and site == SINGLE:
        raise UnsupportedCombination(
            'predictand principal components are fitted jointly and need multi-site mode'
        )
    model.check_site_mode(site)
    model.check_options()
    return model


def _fit_model(model, x, y, na_action, site=None):
    if na_action == 'none':
        rows = np.ones(len(x), dtype=bool)
    else:
        rows = complete_rows(x, y)
    if not rows.any():
        warnings.warn(f'no complete time steps to fit site {site}, skipping it')
        return None

    try:
        fitted = model.fit(x[rows], y[rows])
    except ConvergenceFailure as err:
        if site is None:
            raise
        raise ConvergenceFailure(f'site {site}: {err.msg}', site=site, fold=err.fold) from err
    except DownscalingError:
        raise
    except (ValueError, np.linalg.LinAlgError) as err:
        # solver errors on degenerate data, e.g. a binomial site with a single class
        prefix = '' if site is None else f'site {site}: '
        raise ConvergenceFailure(f'{prefix}fit failed: {err}', site=site) from err
    logger.debug('fitted %s on %d time steps (site %s)', type(model).__name__, rows.sum(), site)
    return fitted


def train(
    prepared: PreparedData,
    method: str,
    site: str = SINGLE,
    n_jobs: int | None = None,
    **options: Any,
) -> ExperimentResult:
    """Fit a downscaling method.

    Parameters
    ----------
    prepared : PreparedData
        Output of :py:func:`skdownscaler.prepare.prepare_data`.
    method : {'analogs', 'GLM', 'NN'}
        Downscaling method.
    site : {'single', 'multi'}
        Fit one model per site, or one joint model for all sites.
    n_jobs : int, optional
        Workers used to fit the sites in single-site mode.
    **options
        Parameters of the method's backend (see :py:class:`GLMDownscaler`,
        :py:class:`AnalogDownscaler`, :py:class:`NeuralNetDownscaler`).
        Unknown options raise :py:class:`UnsupportedOption`.

    Returns
    -------
    ExperimentResult
    """
    model = check_experiment(
        method,
        site,
        local=prepared.x_local is not None,
        predictand_pca=prepared.predictand_transform is not None,
        **options,
    )
    info = model.info(site)
    n_jobs = get_option(N_JOBS, n_jobs)

    seeded = 'random_state' in model.get_params()
    random_state = get_option(RANDOM_STATE, model.get_params().get('random_state'))

    if site == MULTI:
        if seeded and random_state is not None:
            model.set_params(random_state=random_state)
        models = (_fit_model(model, prepared.x_global, prepared.target(), prepared.na_action),)
    else:
        seeds = spawn_seeds(random_state if seeded else None, prepared.n_sites)
        jobs = []
        for s in np.flatnonzero(prepared.valid_sites):
            site_model = clone(model)
            if seeds[s] is not None:
                site_model.set_params(random_state=seeds[s])
            jobs.append((int(s), site_model))

        fitted = Parallel(n_jobs=n_jobs)(
            delayed(_fit_model)(m, prepared.features(s), prepared.y[:, s], prepared.na_action, s)
            for s, m in jobs
        )
        models = [None] * prepared.n_sites
        for (s, _), m in zip(jobs, fitted):
            models[s] = m
        models = tuple(models)

    return ExperimentResult(method=method, info=info, models=models, prepared=prepared)


def predict_matrix(
    result: ExperimentResult, x: NDArray[Any], x_local: tuple[NDArray[Any], ...] | None = None
) -> NDArray[Any]:
    """Predict a (time, site) matrix from prepared feature matrices."""
    prepared = result.prepared

    if result.info.site == MULTI:
        model = result.models[0]
        n_targets = prepared.target().shape[1]
        out = np.full((len(x), n_targets), np.nan)
        rows = complete_rows(x)
        if model is not None and rows.any():
            out[rows] = np.asarray(model.predict(x[rows])).reshape(rows.sum(), -1)
        return prepared.to_sites(out)

    out = np.full((len(x), prepared.n_sites), np.nan)
    for s, model in enumerate(result.models):
        if model is None:
            continue
        features = x if x_local is None else np.hstack([x, x_local[s]])
        rows = complete_rows(features)
        if rows.any():
            out[rows, s] = np.asarray(model.predict(features[rows])).reshape(-1)
    return out


def predict(
    newdata: xr.Dataset | xr.DataArray | NewData, result: ExperimentResult
) -> xr.DataArray:
    """Downscale new predictors with a fitted experiment.

    Parameters
    ----------
    newdata : xarray.Dataset, xarray.DataArray or NewData
        Predictor fields on the training grid, or the output of
        :py:func:`skdownscaler.prepare.prepare_new_data`. An extra ``member``
        dimension yields one prediction per member.
    result : ExperimentResult
        Output of :py:func:`train`.

    Returns
    -------
    xarray.DataArray
        Predictions laid out like the training predictand, on the time axis of
        `newdata`.
    """
    if not isinstance(newdata, NewData):
        newdata = prepare_new_data(newdata, result.prepared)

    values = [predict_matrix(result, x, x_local) for x, x_local in newdata.matrices()]
    values = values[0] if newdata.members is None else np.stack(values)
    return result.prepared.layout.unstack(values, newdata.time, members=newdata.members)


def predict_training(result: ExperimentResult) -> xr.DataArray:
    """Predict the training period of `result` from its own prepared matrices."""
    prepared = result.prepared
    values = predict_matrix(result, prepared.x_global, prepared.x_local)
    return prepared.layout.unstack(values, prepared.time)
