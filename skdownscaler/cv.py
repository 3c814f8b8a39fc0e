"""
Cross-validation of downscaling methods.

Each fold is held out in turn: the matrices (including any principal
component reduction) are rebuilt from the remaining time steps only, a model
is trained on them, and the held-out time steps are predicted.
"""
from __future__ import annotations

import logging
import numbers
import warnings
from typing import Any

import numpy as np
import pandas as pd
import xarray as xr
from joblib import Parallel, delayed
from numpy.typing import NDArray

from .downscale import check_experiment, predict, train
from .exceptions import (
    ConvergenceFailure,
    DownscalingError,
    IncompleteCoverage,
    MissingValues,
    raise_warn_or_log,
)
from .options import CV_ON_INCOMPLETE, N_JOBS, RANDOM_STATE, get_option
from .prepare import SiteLayout, as_dataset, check_time_axes, prepare_data
from .utils import TIME_DIM, default_none_kwargs, time_index

logger = logging.getLogger(__name__)

SAMPLINGS = ('kfold.chronological', 'kfold.random', 'leave-one-year-out', 'leave-one-out')


def _years(time):
    try:
        return np.asarray(time.year)
    except AttributeError:
        raise ValueError(
            'folds given as years need a datetime time axis, '
            f'got a {type(time).__name__}'
        ) from None


def make_folds(
    time: pd.Index,
    folds: int | list | None = 4,
    sampling: str = 'kfold.chronological',
    random_state: int | None = None,
    by: str | None = None,
) -> list[NDArray[np.intp]]:
    """Split a time axis into held-out sets.

    Parameters
    ----------
    time : pd.Index
        The time axis to split.
    folds : int or list, optional
        Number of folds, or a list with one entry per fold holding either the
        years of the fold or its integer positions along `time` (see `by`).
        Ignored for ``'leave-one-year-out'`` and ``'leave-one-out'`` sampling.
    sampling : str
        ``'kfold.chronological'`` (contiguous blocks), ``'kfold.random'``
        (shuffled then split), ``'leave-one-year-out'`` or ``'leave-one-out'``.
    random_state : int, optional
        Seed of the shuffle of ``'kfold.random'``.
    by : {'year', 'index'}, optional
        How list entries of `folds` are read. Default is ``'year'`` for
        datetime time axes and ``'index'`` otherwise.

    Returns
    -------
    list of ndarray
        Sorted integer positions of each fold's held-out time steps.

    Raises
    ------
    ValueError
        If folds overlap or reference positions outside `time`.
    """
    if sampling not in SAMPLINGS:
        raise ValueError(f'unknown sampling {sampling!r}, expected one of {SAMPLINGS}')
    n = len(time)

    if sampling == 'leave-one-out':
        test_sets = [np.array([i]) for i in range(n)]
    elif sampling == 'leave-one-year-out':
        years = _years(time)
        test_sets = [np.flatnonzero(years == year) for year in np.unique(years)]
    elif folds is None or isinstance(folds, numbers.Integral):
        k = 4 if folds is None else int(folds)
        if not 2 <= k <= n:
            raise ValueError(f'number of folds must be between 2 and {n}, got {k}')
        positions = np.arange(n)
        if sampling == 'kfold.random':
            rng = np.random.default_rng(get_option(RANDOM_STATE, random_state))
            positions = rng.permutation(n)
        test_sets = [np.sort(f) for f in np.array_split(positions, k)]
    else:
        if by is None:
            by = 'year' if hasattr(time, 'year') else 'index'
        if by == 'year':
            years = _years(time)
            test_sets = [np.flatnonzero(np.isin(years, np.atleast_1d(f))) for f in folds]
        elif by == 'index':
            test_sets = [np.unique(np.asarray(f, dtype=np.intp)) for f in folds]
        else:
            raise ValueError(f"by must be 'year' or 'index', got {by!r}")

    for i, test in enumerate(test_sets):
        if test.size == 0:
            warnings.warn(f'fold {i} holds no time steps')
        elif test.min() < 0 or test.max() >= n:
            raise ValueError(f'fold {i} references positions outside the {n} time steps')

    flat = np.concatenate(test_sets) if test_sets else np.array([], dtype=np.intp)
    if len(np.unique(flat)) != len(flat):
        raise ValueError('folds overlap: each time step must be held out at most once')
    return test_sets


def _run_fold(fold, x, y, test, layout, method, site, prepare_kwargs, options):
    train_rows = np.setdiff1d(np.arange(y.sizes[TIME_DIM]), test)
    try:
        prepared = prepare_data(
            x.isel({TIME_DIM: train_rows}), y.isel({TIME_DIM: train_rows}), **prepare_kwargs
        )
        result = train(prepared, method, site=site, n_jobs=1, **options)
        pred = predict(x.isel({TIME_DIM: test}), result)
    except (ConvergenceFailure, MissingValues) as err:
        failure = err
    except DownscalingError:
        raise
    except (ValueError, np.linalg.LinAlgError) as err:
        failure = ConvergenceFailure(f'fold {fold}: {err}')
        failure.__cause__ = err
    else:
        logger.debug(
            'fold %d: trained on %d and predicted %d time steps', fold, len(train_rows), len(test)
        )
        return layout.stack(pred)

    if isinstance(failure, ConvergenceFailure):
        failure.fold = fold
    logger.error('fold %d failed: %s', fold, failure)
    return failure


def downscale_cv(
    x: xr.Dataset | xr.DataArray,
    y: xr.DataArray,
    method: str,
    folds: int | list | None = 4,
    sampling: str = 'kfold.chronological',
    site: str = 'single',
    prepare_kwargs: dict[str, Any] | None = None,
    n_jobs: int | None = None,
    random_state: int | None = None,
    on_incomplete: str | None = None,
    by: str | None = None,
    **options: Any,
) -> xr.DataArray:
    """Cross-validated predictions of a downscaling method.

    Parameters
    ----------
    x : xarray.Dataset or xarray.DataArray
        Predictor fields.
    y : xarray.DataArray
        Predictand, on the time axis of `x`.
    method : {'analogs', 'GLM', 'NN'}
        Downscaling method.
    folds, sampling, by
        Fold definition, see :py:func:`make_folds`.
    site : {'single', 'multi'}
        Site mode passed to :py:func:`skdownscaler.downscale.train`.
    prepare_kwargs : dict, optional
        Keyword arguments to pass to :py:func:`skdownscaler.prepare.prepare_data`,
        applied to the training time steps of each fold.
    n_jobs : int, optional
        Workers used to run the folds.
    random_state : int, optional
        Seed of the fold shuffle, also given to the method when it takes one
        and none is set in `options`.
    on_incomplete : {'raise', 'warn', 'log'}, optional
        What to do when failed or missing folds leave time steps without a
        prediction. Default is the ``cv_on_incomplete`` option.
    **options
        Method options.

    Returns
    -------
    xarray.DataArray
        Predictions laid out like `y`. Each time step is predicted by the one
        fold holding it out.

    Raises
    ------
    IncompleteCoverage
        If time steps are left without a prediction and `on_incomplete` is
        ``'raise'``. The partial output is available as its ``output``
        attribute.
    """
    x = as_dataset(x)
    check_time_axes(x, y)
    prepare_kwargs = default_none_kwargs(prepare_kwargs, copy=True)
    random_state = get_option(RANDOM_STATE, random_state)
    on_incomplete = get_option(CV_ON_INCOMPLETE, on_incomplete)

    model = check_experiment(
        method,
        site,
        local=prepare_kwargs.get('local_predictors') is not None,
        predictand_pca=prepare_kwargs.get('predictand_pca') is not None,
        **options,
    )
    if (
        random_state is not None
        and 'random_state' in model.get_params()
        and options.get('random_state') is None
    ):
        options = dict(options, random_state=random_state)

    time = time_index(y)
    test_sets = make_folds(time, folds, sampling=sampling, random_state=random_state, by=by)
    layout = SiteLayout.from_predictand(y)

    results = Parallel(n_jobs=get_option(N_JOBS, n_jobs))(
        delayed(_run_fold)(i, x, y, test, layout, method, site, prepare_kwargs, options)
        for i, test in enumerate(test_sets)
    )

    values = np.full((len(time), layout.n_sites), np.nan)
    written = np.zeros(len(time), dtype=bool)
    errors = {}
    for i, (test, result) in enumerate(zip(test_sets, results)):
        if isinstance(result, Exception):
            errors[i] = result
            continue
        values[test] = result
        written[test] = True

    output = layout.unstack(values, time)
    missing = np.flatnonzero(~written)
    if missing.size:
        err = IncompleteCoverage(
            f'{missing.size} of {len(time)} time steps have no prediction '
            f'(failed folds: {sorted(errors)})',
            output=output,
            missing=missing,
            errors=errors,
        )
        raise_warn_or_log(err, on_incomplete, stacklevel=2)
    return output
