import importlib
import string

import numpy as np
import pandas as pd
import pytest
import xarray as xr
from packaging.version import Version


def _importorskip(modname, minversion=None):
    try:
        mod = importlib.import_module(modname)
        has = True
        if minversion is not None:
            if Version(mod.__version__) < Version(minversion):
                raise ImportError('Minimum version not satisfied')
    except ImportError:
        has = False
    func = pytest.mark.skipif(not has, reason=f'requires {modname}')
    return has, func


has_dask, requires_dask = _importorskip('dask')

if has_dask:
    import dask

    dask.config.set(scheduler='single-threaded')


def _times(n_times):
    return pd.date_range('1979-01-01', freq='1D', periods=n_times)


def random_grid_data(grid_shape=(4, 5), n_times=100, n_vars=1, seed=0):
    """Independent random predictor fields on a regular lat/lon grid."""
    rng = np.random.default_rng(seed)
    ds = xr.Dataset(
        coords={
            'time': _times(n_times),
            'lat': np.linspace(40.0, 50.0, grid_shape[0]),
            'lon': np.linspace(-10.0, 5.0, grid_shape[1]),
        }
    )
    for vname in string.ascii_lowercase[:n_vars]:
        ds[vname] = (('time', 'lat', 'lon'), rng.standard_normal((n_times,) + grid_shape))
    return ds


def random_station_data(n_stations=3, n_times=100, seed=1, name='pr'):
    """Station predictand with lon/lat coordinates along ``loc``."""
    rng = np.random.default_rng(seed)
    return xr.DataArray(
        rng.standard_normal((n_times, n_stations)),
        dims=('time', 'loc'),
        coords={
            'time': _times(n_times),
            'loc': [f'st{i}' for i in range(n_stations)],
            'lon': ('loc', np.linspace(-8.0, 3.0, n_stations)),
            'lat': ('loc', np.linspace(42.0, 48.0, n_stations)),
        },
        name=name,
    )


def latent_mode_data(n_times=100, n_points=20, n_vars=3, n_modes=2, noise=0.05, seed=0):
    """Predictors driven by a few latent modes and a predictand that is linear in them.

    Returns the predictor Dataset (``n_vars`` variables on ``n_points`` grid
    points) and a single-site predictand series.
    """
    rng = np.random.default_rng(seed)
    modes = rng.standard_normal((n_times, n_modes))
    ds = xr.Dataset(
        coords={
            'time': _times(n_times),
            'point': np.arange(n_points),
            'lon': ('point', np.linspace(0.0, 19.0, n_points)),
            'lat': ('point', np.zeros(n_points)),
        }
    )
    for vname in string.ascii_lowercase[:n_vars]:
        loadings = rng.standard_normal((n_modes, n_points))
        values = modes @ loadings + noise * rng.standard_normal((n_times, n_points))
        ds[vname] = (('time', 'point'), values)

    weights = rng.standard_normal(n_modes)
    y = xr.DataArray(
        modes @ weights + 2.0,
        dims=('time',),
        coords={'time': ds['time']},
        name='tas',
    )
    return ds, y


def linear_station_data(n_times=120, n_stations=3, noise=0.1, seed=2):
    """Predictors on a small grid and stations linear in the grid-mean of each variable."""
    rng = np.random.default_rng(seed)
    x = random_grid_data(grid_shape=(3, 4), n_times=n_times, n_vars=2, seed=seed)
    drivers = np.column_stack([x[v].mean(('lat', 'lon')).values for v in ('a', 'b')])
    y = random_station_data(n_stations=n_stations, n_times=n_times, seed=seed)
    coefs = rng.standard_normal((2, n_stations))
    y = y.copy(data=drivers @ coefs + 1.0 + noise * rng.standard_normal((n_times, n_stations)))
    return x, y
