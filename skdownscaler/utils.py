from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd
import xarray as xr
from numpy.typing import ArrayLike, NDArray

TIME_DIM = 'time'
MEMBER_DIM = 'member'
SITE_DIM = 'site'

COORD_NAMES = (('lon', 'lat'), ('longitude', 'latitude'), ('x', 'y'))


def default_none_kwargs(kwargs: dict[str, Any] | None, copy: bool = False) -> dict[str, Any]:
    if kwargs is not None:
        if copy:
            return kwargs.copy()
        else:
            return kwargs
    else:
        return {}


def ensure_samples_targets(obj: ArrayLike) -> NDArray[Any]:
    """helper function to ensure targets are a (n_samples, n_targets) array"""
    arr = np.asarray(obj, dtype=np.float64)
    if arr.ndim == 1:
        return arr.reshape(-1, 1)
    if arr.ndim == 2:
        return arr
    raise ValueError(f'Found array with {arr.ndim} dimensions. Expected 1 or 2.')


def readonly(arr: ArrayLike) -> NDArray[Any]:
    """Return a private, read-only float copy of `arr`."""
    out = np.array(arr, dtype=np.float64, copy=True)
    out.setflags(write=False)
    return out


def complete_rows(*arrays: NDArray[Any]) -> NDArray[np.bool_]:
    """Boolean mask of rows without missing values in any of `arrays`."""
    mask = np.ones(len(arrays[0]), dtype=bool)
    for arr in arrays:
        mask &= np.isfinite(np.asarray(arr).reshape(len(arr), -1)).all(axis=1)
    return mask


def time_index(obj: xr.DataArray | xr.Dataset) -> pd.Index:
    """Return the time index of `obj`, or a RangeIndex if it has no time coordinate."""
    if TIME_DIM not in obj.dims:
        raise ValueError(f'{type(obj).__name__} must have a "{TIME_DIM}" dimension')
    try:
        return obj.indexes[TIME_DIM]
    except KeyError:
        return pd.RangeIndex(obj.sizes[TIME_DIM], name=TIME_DIM)


def spawn_seeds(random_state: int | None, n: int) -> list[int | None]:
    """Derive `n` independent integer seeds from `random_state`."""
    if random_state is None:
        return [None] * n
    return [int(s) for s in np.random.SeedSequence(random_state).generate_state(n)]


def lonlat(obj: xr.DataArray) -> NDArray[Any]:
    """Return an (n, 2) array of horizontal coordinates of `obj`'s single dimension."""
    for xname, yname in COORD_NAMES:
        if xname in obj.coords and yname in obj.coords:
            return np.column_stack(
                [np.broadcast_to(obj[xname].values, obj.shape).ravel(),
                 np.broadcast_to(obj[yname].values, obj.shape).ravel()]
            )
    raise ValueError(
        f'could not find horizontal coordinates, expected one of {COORD_NAMES} '
        f'in {list(obj.coords)}'
    )
