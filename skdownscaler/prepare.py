"""
Matrix builder

Turns predictor fields (``xarray.Dataset``) and predictand fields
(``xarray.DataArray``) into the flat numeric matrices consumed by the
downscaling methods, and records every transform needed to map new predictor
fields into the same feature space.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
import xarray as xr
from numpy.typing import ArrayLike, NDArray
from sklearn.decomposition import PCA
from sklearn.neighbors import KDTree

from .exceptions import MissingValues, ShapeMismatch, UnsupportedOption
from .options import NA_ACTION, NA_ACTIONS, get_option
from .utils import (
    MEMBER_DIM,
    SITE_DIM,
    TIME_DIM,
    complete_rows,
    default_none_kwargs,
    lonlat,
    readonly,
    time_index,
)

logger = logging.getLogger(__name__)

COMBINED = 'COMBINED'

_PCA_KEYS = frozenset(['v_exp', 'n_eofs', 'which_combine'])
_LOCAL_KEYS = frozenset(['vars', 'n'])


def n_components_for_variance(ratios: ArrayLike, v_exp: float) -> int:
    """Smallest number of leading components whose cumulative explained variance reaches `v_exp`."""
    cumulative = np.cumsum(ratios)
    return int(min(np.searchsorted(cumulative, v_exp) + 1, len(cumulative)))


@dataclass(frozen=True, eq=False)
class PCATransform:
    """Principal component projection of one variable, or of several combined.

    Columns are standardised (centered and scaled to unit variance) before projection.
    """

    variables: tuple[str, ...]
    center: NDArray[Any]
    scale: NDArray[Any]
    components: NDArray[Any]
    explained_variance_ratio: NDArray[Any]

    @property
    def n_components(self) -> int:
        return self.components.shape[0]

    @property
    def name(self) -> str:
        return self.variables[0] if len(self.variables) == 1 else COMBINED

    @classmethod
    def fit(
        cls,
        matrix: NDArray[Any],
        variables: tuple[str, ...],
        v_exp: float | None = None,
        n_eofs: int | None = None,
    ) -> PCATransform:
        rows = complete_rows(matrix)
        if rows.sum() < 2:
            raise MissingValues(
                f'principal components of {variables} need at least 2 complete time steps, '
                f'found {rows.sum()}'
            )
        data = matrix[rows]
        center = data.mean(axis=0)
        scale = data.std(axis=0, ddof=1)
        scale[scale == 0] = 1.0

        pca = PCA(svd_solver='full').fit((data - center) / scale)
        ratios = pca.explained_variance_ratio_
        if n_eofs is not None:
            k = min(int(n_eofs), len(ratios))
        else:
            k = n_components_for_variance(ratios, v_exp)

        logger.debug('retaining %d principal components of %s', k, variables)
        return cls(
            variables=tuple(variables),
            center=readonly(center),
            scale=readonly(scale),
            components=readonly(pca.components_[:k]),
            explained_variance_ratio=readonly(ratios),
        )

    def transform(self, matrix: ArrayLike) -> NDArray[Any]:
        standardized = (np.asarray(matrix, dtype=np.float64) - self.center) / self.scale
        return standardized @ self.components.T

    def inverse_transform(self, scores: ArrayLike) -> NDArray[Any]:
        return (np.asarray(scores, dtype=np.float64) @ self.components) * self.scale + self.center


@dataclass(frozen=True, eq=False)
class SiteLayout:
    """Maps a predictand field to a (time, site) matrix and back.

    ``kind`` is ``'scalar'`` for a single series, ``'single'`` when the field
    has one site dimension, and ``'stacked'`` for gridded fields whose spatial
    dimensions are stacked into ``site``.
    """

    dims: tuple[str, ...]
    site_dims: tuple[str, ...]
    kind: str
    template: xr.DataArray

    @classmethod
    def from_predictand(cls, y: xr.DataArray) -> SiteLayout:
        site_dims = tuple(d for d in y.dims if d != TIME_DIM)
        time_coords = [c for c in y.coords if TIME_DIM in y[c].dims]
        base = y.drop_vars(time_coords).isel({TIME_DIM: 0})

        if not site_dims:
            kind = 'scalar'
            template = base.expand_dims(SITE_DIM)
        elif len(site_dims) == 1:
            kind = 'single'
            template = base if site_dims[0] == SITE_DIM else base.rename({site_dims[0]: SITE_DIM})
        else:
            kind = 'stacked'
            template = base.stack({SITE_DIM: site_dims})

        template = xr.full_like(template, np.nan, dtype=np.float64)
        return cls(dims=tuple(y.dims), site_dims=site_dims, kind=kind, template=template)

    @property
    def n_sites(self) -> int:
        return self.template.sizes[SITE_DIM]

    def stack(self, y: xr.DataArray) -> NDArray[Any]:
        """Return the (time, site) values of predictand field `y`."""
        if self.kind == 'scalar':
            values = y.transpose(TIME_DIM).values[:, np.newaxis]
        elif self.kind == 'single':
            values = y.transpose(TIME_DIM, self.site_dims[0]).values
        else:
            values = y.stack({SITE_DIM: self.site_dims}).transpose(TIME_DIM, SITE_DIM).values
        return np.array(values, dtype=np.float64)

    def unstack(
        self, values: NDArray[Any], time: pd.Index, members: pd.Index | None = None
    ) -> xr.DataArray:
        """Rebuild a predictand-shaped DataArray from (time, site) values.

        If `members` is given, `values` has shape (member, time, site) and the
        output gains a leading ``member`` dimension.
        """
        if members is not None:
            return xr.concat(
                [self.unstack(v, time) for v in values], dim=pd.Index(members, name=MEMBER_DIM)
            )

        out = self.template.expand_dims({TIME_DIM: time}).copy(data=np.asarray(values))
        if self.kind == 'scalar':
            out = out.isel({SITE_DIM: 0}, drop=True)
        elif self.kind == 'single':
            if self.site_dims[0] != SITE_DIM:
                out = out.rename({SITE_DIM: self.site_dims[0]})
        else:
            out = out.unstack(SITE_DIM)
        return out.transpose(*self.dims)

    def site_coordinates(self) -> NDArray[Any]:
        return lonlat(self.template)


@dataclass(frozen=True, eq=False)
class PreparedData:
    """Model-ready matrices plus the metadata needed to project new predictors.

    Attributes
    ----------
    x_global : ndarray, shape (n_times, n_features)
        Predictors shared by all sites (raw values or principal components).
    y : ndarray, shape (n_times, n_sites)
        Predictand values.
    time : pd.Index
        Time axis shared by `x_global` and `y`.
    layout : SiteLayout
        Recipe to rebuild predictand-shaped output.
    feature_names : tuple of str
        Names of the columns of `x_global`.
    variables : dict
        Predictor variable name -> (non-time dims, non-time shape).
    raw_vars : tuple of str
        Variables used as raw (unreduced) global predictors.
    transforms : tuple of PCATransform
        Principal component projections producing the reduced global predictors.
    valid_sites : ndarray of bool
        Sites with at least one observed value.
    na_action : {'omit', 'fail', 'none'}
        Missing-value policy.
    x_local : tuple of ndarray, optional
        Site-specific predictors, one (n_times, n_local_features) matrix per site.
    local_vars : tuple of str
        Variables used as local predictors.
    local_index : ndarray, optional
        (n_sites, n) positions of the grid points nearest to each site.
    predictand_transform : PCATransform, optional
        Principal component projection of the predictand.
    """

    x_global: NDArray[Any]
    y: NDArray[Any]
    time: pd.Index
    layout: SiteLayout
    feature_names: tuple[str, ...]
    variables: dict[str, tuple[tuple[str, ...], tuple[int, ...]]]
    raw_vars: tuple[str, ...]
    transforms: tuple[PCATransform, ...]
    valid_sites: NDArray[np.bool_]
    na_action: str
    x_local: tuple[NDArray[Any], ...] | None = None
    local_vars: tuple[str, ...] = ()
    local_index: NDArray[Any] | None = None
    predictand_transform: PCATransform | None = None

    @property
    def n_sites(self) -> int:
        return self.y.shape[1]

    @property
    def has_member(self) -> bool:
        return any(MEMBER_DIM in dims for dims, _ in self.variables.values())

    def features(self, site: int | None = None) -> NDArray[Any]:
        """Feature matrix for `site` (global plus local predictors)."""
        if site is None or self.x_local is None:
            return self.x_global
        return np.hstack([self.x_global, self.x_local[site]])

    def target(self) -> NDArray[Any]:
        """Joint target matrix: observed sites, or their principal components."""
        y = self.y[:, self.valid_sites]
        if self.predictand_transform is not None:
            return self.predictand_transform.transform(y)
        return y

    def to_sites(self, values: NDArray[Any]) -> NDArray[Any]:
        """Map values in `target` space back to a (time, site) matrix."""
        values = np.asarray(values, dtype=np.float64).reshape(len(values), -1)
        if self.predictand_transform is not None:
            values = self.predictand_transform.inverse_transform(values)
        out = np.full((len(values), self.n_sites), np.nan)
        out[:, self.valid_sites] = values
        return out


@dataclass(frozen=True, eq=False)
class NewData:
    """New predictors projected into the feature space of a PreparedData.

    ``x_global`` and ``x_local`` hold one entry per ensemble member; there is a
    single entry when the new fields carry no extra ``member`` dimension.
    """

    x_global: tuple[NDArray[Any], ...]
    time: pd.Index
    members: pd.Index | None = None
    x_local: tuple[tuple[NDArray[Any], ...], ...] | None = None

    def matrices(self):
        for m, x in enumerate(self.x_global):
            yield x, (None if self.x_local is None else self.x_local[m])


def as_dataset(x: xr.Dataset | xr.DataArray) -> xr.Dataset:
    if isinstance(x, xr.Dataset):
        return x
    if isinstance(x, xr.DataArray):
        return x.to_dataset(name=x.name if x.name is not None else 'var0')
    raise TypeError(f'predictors must be an xarray Dataset or DataArray, got {type(x).__name__}')


def check_time_axes(x: xr.Dataset | xr.DataArray, y: xr.DataArray) -> None:
    """Raise ShapeMismatch unless `x` and `y` share the same time axis."""
    nx = x.sizes.get(TIME_DIM)
    ny = y.sizes.get(TIME_DIM)
    if nx is None or ny is None:
        raise ShapeMismatch(f'predictors and predictand both need a "{TIME_DIM}" dimension')
    if nx != ny:
        raise ShapeMismatch(f'predictors have {nx} time steps but the predictand has {ny}')
    if TIME_DIM in x.indexes and TIME_DIM in y.indexes:
        if not x.indexes[TIME_DIM].equals(y.indexes[TIME_DIM]):
            raise ShapeMismatch('predictor and predictand time axes differ in ordering or values')


def _variable_matrix(da: xr.DataArray, dims: tuple[str, ...] | None = None):
    if dims is None:
        da = da.transpose(TIME_DIM, ...)
    else:
        try:
            da = da.transpose(TIME_DIM, *dims)
        except ValueError as err:
            raise ShapeMismatch(
                f'variable {da.name!r} has dimensions {da.dims}, expected {(TIME_DIM,) + dims}'
            ) from err
    values = np.asarray(da.values, dtype=np.float64)
    return values.reshape(values.shape[0], -1), tuple(da.dims[1:]), values.shape[1:]


def _global_features(matrices, raw_vars, transforms, n_times):
    blocks = [matrices[v] for v in raw_vars]
    blocks += [t.transform(np.hstack([matrices[v] for v in t.variables])) for t in transforms]
    if not blocks:
        return np.empty((n_times, 0))
    return np.hstack(blocks)


def _local_features(matrices, local_vars, local_index):
    return tuple(
        readonly(np.hstack([matrices[v][:, inds] for v in local_vars])) for inds in local_index
    )


def _check_vars(x, names, kind):
    if names is None:
        return list(x.data_vars)
    names = [names] if isinstance(names, str) else list(names)
    missing = [v for v in names if v not in x.data_vars]
    if missing:
        raise ValueError(f'{kind} {missing} not found in predictors {list(x.data_vars)}')
    return names


def _check_pca_options(options, name):
    if options is None:
        return None
    if isinstance(options, (int, float)) and not isinstance(options, bool):
        options = {'v_exp': float(options)}
    options = default_none_kwargs(options, copy=True)
    unknown = set(options) - _PCA_KEYS
    if unknown:
        raise UnsupportedOption(
            f'unknown {name} options {sorted(unknown)}, valid are {sorted(_PCA_KEYS)}'
        )
    if (options.get('v_exp') is None) == (options.get('n_eofs') is None):
        raise ValueError(f'{name} needs exactly one of "v_exp" or "n_eofs"')
    v_exp = options.get('v_exp')
    if v_exp is not None and not 0 < v_exp <= 1:
        raise ValueError(f'{name} v_exp must be in (0, 1], got {v_exp}')
    n_eofs = options.get('n_eofs')
    if n_eofs is not None and n_eofs < 1:
        raise ValueError(f'{name} n_eofs must be >= 1, got {n_eofs}')
    return options


def _check_local_options(options, x):
    if options is None:
        return None
    options = default_none_kwargs(options, copy=True)
    unknown = set(options) - _LOCAL_KEYS
    if unknown:
        raise UnsupportedOption(
            f'unknown local_predictors options {sorted(unknown)}, valid are {sorted(_LOCAL_KEYS)}'
        )
    options['vars'] = _check_vars(x, options.get('vars'), 'local predictors')
    options['n'] = int(options.get('n', 4))
    if options['n'] < 1:
        raise ValueError(f'local_predictors n must be >= 1, got {options["n"]}')
    return options


def _nearest_gridpoints(x, local_vars, layout, n):
    grid = x[local_vars[0]].isel({TIME_DIM: 0}, drop=True)
    if MEMBER_DIM in grid.dims:
        raise ShapeMismatch('local predictors cannot be built from fields with a member dimension')
    for v in local_vars[1:]:
        if x[v].isel({TIME_DIM: 0}, drop=True).shape != grid.shape:
            raise ShapeMismatch(f'local predictor {v!r} is not on the grid of {local_vars[0]!r}')

    if grid.ndim == 0:
        points = grid.expand_dims('gridpoint')
    elif grid.ndim == 1:
        points = grid
    else:
        points = grid.stack(gridpoint=grid.dims)

    tree = KDTree(lonlat(points))
    k = min(n, points.size)
    return tree.query(layout.site_coordinates(), k=k, return_distance=False)


def prepare_data(
    x: xr.Dataset | xr.DataArray,
    y: xr.DataArray,
    global_vars: list[str] | None = None,
    combined_only: bool = False,
    spatial_predictors: dict[str, Any] | float | None = None,
    local_predictors: dict[str, Any] | None = None,
    predictand_pca: dict[str, Any] | float | None = None,
    na_action: str | None = None,
) -> PreparedData:
    """Build predictor and predictand matrices for model fitting.

    Parameters
    ----------
    x : xarray.Dataset or xarray.DataArray
        Predictor fields with a ``time`` dimension. Any other dimensions
        (spatial, ``member``) are flattened into features.
    y : xarray.DataArray
        Predictand with a ``time`` dimension aligned with `x` and zero, one
        (stations) or several (grid) site dimensions.
    global_vars : list of str, optional
        Variables used as global predictors. Default is all variables of `x`.
        Pass an empty list to use local predictors only.
    combined_only : bool
        Only keep the combined principal components of ``which_combine`` variables.
    spatial_predictors : dict or float, optional
        Principal component reduction of the global predictors, with keys
        ``v_exp`` (explained variance to retain) or ``n_eofs`` (number of
        components), and optionally ``which_combine`` (variables to also reduce
        jointly). A float is a shorthand for ``{'v_exp': value}``.
    local_predictors : dict, optional
        ``{'vars': [...], 'n': 4}``: raw values of the `n` grid points closest to
        each site are added as site-specific predictors.
    predictand_pca : dict or float, optional
        Principal component reduction of the predictand (``v_exp`` or ``n_eofs``).
    na_action : {'omit', 'fail', 'none'}, optional
        Missing-value policy. ``'omit'`` (default) fits on complete rows only,
        ``'fail'`` raises :class:`MissingValues`, ``'none'`` leaves data untouched.

    Returns
    -------
    PreparedData
    """
    x = as_dataset(x)
    if not isinstance(y, xr.DataArray):
        raise TypeError(f'predictand must be an xarray DataArray, got {type(y).__name__}')
    check_time_axes(x, y)

    na_action = get_option(NA_ACTION, na_action)
    if na_action not in NA_ACTIONS:
        raise ValueError(f'na_action must be one of {sorted(NA_ACTIONS)}, got {na_action!r}')

    global_vars = _check_vars(x, global_vars, 'global predictors')
    spatial = _check_pca_options(spatial_predictors, 'spatial_predictors')
    local = _check_local_options(local_predictors, x)
    y_pca = _check_pca_options(predictand_pca, 'predictand_pca')
    if y_pca is not None and 'which_combine' in y_pca:
        raise UnsupportedOption('predictand_pca does not accept "which_combine"')
    if not global_vars and local is None:
        raise ValueError('at least one global or local predictor is required')

    layout = SiteLayout.from_predictand(y)
    y_values = layout.stack(y)
    time = time_index(y)

    used_vars = list(dict.fromkeys(global_vars + (local['vars'] if local else [])))
    matrices, variables = {}, {}
    for name in used_vars:
        matrix, dims, shape = _variable_matrix(x[name])
        matrices[name] = matrix
        variables[name] = (dims, shape)

    valid_sites = ~np.isnan(y_values).all(axis=0)
    if not valid_sites.any():
        raise MissingValues('the predictand has no observed values')

    if na_action == 'fail':
        if not complete_rows(*matrices.values()).all():
            raise MissingValues('missing values found in the predictors')
        if not complete_rows(y_values[:, valid_sites]).all():
            raise MissingValues('missing values found in the predictand')

    transforms = []
    raw_vars = tuple(global_vars)
    if spatial is not None:
        raw_vars = ()
        combine = spatial.get('which_combine')
        if combine is None and combined_only:
            combine = global_vars
        combine = _check_vars(x, combine, 'combined predictors') if combine else []
        missing = [v for v in combine if v not in global_vars]
        if missing:
            raise ValueError(f'combined predictors {missing} are not global predictors')

        pca_kws = {'v_exp': spatial.get('v_exp'), 'n_eofs': spatial.get('n_eofs')}
        for name in global_vars:
            if combined_only and name in combine:
                continue
            transforms.append(PCATransform.fit(matrices[name], (name,), **pca_kws))
        if combine:
            joint = np.hstack([matrices[v] for v in combine])
            transforms.append(PCATransform.fit(joint, tuple(combine), **pca_kws))
    elif combined_only:
        raise ValueError('combined_only requires spatial_predictors')

    x_global = _global_features(matrices, raw_vars, transforms, len(time))

    feature_names = []
    for name in raw_vars:
        feature_names += [f'{name}.{j}' for j in range(matrices[name].shape[1])]
    for t in transforms:
        feature_names += [f'{t.name}.PC{j + 1}' for j in range(t.n_components)]

    x_local = local_index = None
    local_vars = ()
    if local is not None:
        local_vars = tuple(local['vars'])
        local_index = _nearest_gridpoints(x, local_vars, layout, local['n'])
        x_local = _local_features(matrices, local_vars, local_index)

    y_transform = None
    if y_pca is not None:
        y_transform = PCATransform.fit(
            y_values[:, valid_sites], ('predictand',), v_exp=y_pca.get('v_exp'),
            n_eofs=y_pca.get('n_eofs'),
        )

    logger.debug(
        'prepared %d time steps, %d global features, %d sites', len(time), x_global.shape[1],
        layout.n_sites,
    )
    valid_sites = valid_sites.copy()
    valid_sites.setflags(write=False)
    return PreparedData(
        x_global=readonly(x_global),
        y=readonly(y_values),
        time=time.copy(),
        layout=layout,
        feature_names=tuple(feature_names),
        variables=variables,
        raw_vars=raw_vars,
        transforms=tuple(transforms),
        valid_sites=valid_sites,
        na_action=na_action,
        x_local=x_local,
        local_vars=local_vars,
        local_index=local_index,
        predictand_transform=y_transform,
    )


def prepare_new_data(newdata: xr.Dataset | xr.DataArray, prepared: PreparedData) -> NewData:
    """Project new predictor fields into the feature space of `prepared`.

    The transforms recorded in `prepared` are applied as-is; nothing is refit.
    When the training predictors had no ``member`` dimension and `newdata` has
    one, each member is projected separately.
    """
    newdata = as_dataset(newdata)
    missing = [v for v in prepared.variables if v not in newdata.data_vars]
    if missing:
        raise ShapeMismatch(f'new predictors are missing variables {missing}')
    time = time_index(newdata)

    members = None
    if MEMBER_DIM in newdata.dims and not prepared.has_member:
        if MEMBER_DIM in newdata.indexes:
            members = newdata.indexes[MEMBER_DIM]
        else:
            members = pd.RangeIndex(newdata.sizes[MEMBER_DIM], name=MEMBER_DIM)
        subsets = [
            newdata.isel({MEMBER_DIM: i}, drop=True) for i in range(newdata.sizes[MEMBER_DIM])
        ]
    else:
        subsets = [newdata]

    x_global, x_local = [], []
    for subset in subsets:
        matrices = {}
        for name, (dims, shape) in prepared.variables.items():
            matrix, _, new_shape = _variable_matrix(subset[name], dims)
            if new_shape != shape:
                raise ShapeMismatch(
                    f'variable {name!r} has shape {new_shape} per time step, expected {shape}'
                )
            matrices[name] = matrix
        x_global.append(
            readonly(_global_features(matrices, prepared.raw_vars, prepared.transforms, len(time)))
        )
        if prepared.local_index is not None:
            x_local.append(_local_features(matrices, prepared.local_vars, prepared.local_index))

    return NewData(
        x_global=tuple(x_global),
        time=time.copy(),
        members=members,
        x_local=tuple(x_local) if prepared.local_index is not None else None,
    )
