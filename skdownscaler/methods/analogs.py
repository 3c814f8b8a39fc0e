import re
import warnings

import numpy as np
from sklearn.neighbors import KDTree
from sklearn.utils.validation import check_is_fitted

from ..utils import default_none_kwargs, ensure_samples_targets
from .base import DownscalingBackend

_PERCENTILE = re.compile(r'^prc(\d{1,2}(\.\d+)?)$')
SEL_FUNS = ('mean', 'wmean', 'median', 'max', 'min', 'prcXX')


def _parse_sel_fun(sel_fun):
    if sel_fun in ('mean', 'wmean', 'median', 'max', 'min'):
        return sel_fun, None
    match = _PERCENTILE.match(str(sel_fun))
    if match is None:
        raise ValueError(f'got unexpected sel_fun {sel_fun!r}, expected one of {SEL_FUNS}')
    return 'percentile', float(match.group(1))


class AnalogDownscaler(DownscalingBackend):
    """ Analog downscaling

    Predicts each time step from the observations of the `n_analogs` most
    similar predictor patterns of the training period. All sites are predicted
    from the same analog dates, so the method works in single and multi-site
    mode.

    Parameters
    ----------
    n_analogs : int
        Number of analogs.
    sel_fun : str
        How the analogs are combined when ``n_analogs > 1``: ``'mean'``,
        ``'wmean'`` (inverse-distance weighted mean), ``'median'``, ``'max'``,
        ``'min'`` or ``'prcXX'`` for the XX-th percentile (e.g. ``'prc90'``).
    kdtree_kwargs : dict
        Keyword arguments to pass to the sklearn.neighbors.KDTree constructor
    query_kwargs : dict
        Keyword arguments to pass to the sklearn.neighbors.KDTree.query method

    Attributes
    ----------
    kdtree_ : sklearn.neighbors.KDTree
        KDTree object
    """

    method = 'analogs'

    def __init__(self, n_analogs=1, sel_fun='mean', kdtree_kwargs=None, query_kwargs=None):
        self.n_analogs = n_analogs
        self.sel_fun = sel_fun
        self.kdtree_kwargs = kdtree_kwargs
        self.query_kwargs = query_kwargs

    def check_options(self):
        _parse_sel_fun(self.sel_fun)
        if self.n_analogs < 1:
            raise ValueError(f'n_analogs must be >= 1, got {self.n_analogs}')

    def fit(self, X, y):
        """ Fit Analog model using a KDTree

        Parameters
        ----------
        X : array-like, shape (n_samples, n_features)
            Training data
        y : array-like, shape (n_samples,) or (n_samples, n_sites)
            Target values.

        Returns
        -------
        self : returns an instance of self.
        """
        self.check_options()
        X, y = self._validate_data(X, y=y)

        if len(X) >= self.n_analogs:
            self.k_ = self.n_analogs
        else:
            warnings.warn('length of X is less than n_analogs, setting n_analogs = len(X)')
            self.k_ = len(X)

        kdtree_kwargs = default_none_kwargs(self.kdtree_kwargs)
        self.kdtree_ = KDTree(X, **kdtree_kwargs)
        self.y_ = ensure_samples_targets(y)

        return self

    def predict(self, X):
        """Predict using the Analog model

        Parameters
        ----------
        X : array-like, shape (n_samples, n_features)
            Samples.

        Returns
        -------
        pred : ndarray, shape (n_samples,) or (n_samples, n_sites)
        """
        check_is_fitted(self)
        X = self._validate_data(X, reset=False)

        query_kwargs = default_none_kwargs(self.query_kwargs)
        dist, inds = self.kdtree_.query(X, k=self.k_, **query_kwargs)

        # (n_samples, k, n_sites)
        analogs = self.y_[inds]
        kind, q = _parse_sel_fun(self.sel_fun)

        if self.k_ == 1:
            predicted = analogs[:, 0]
        elif kind == 'mean':
            predicted = np.nanmean(analogs, axis=1)
        elif kind == 'wmean':
            # work around for zero distances (perfect matches)
            tiny = 1e-20
            weights = 1.0 / np.where(dist == 0, tiny, dist)
            masked = np.ma.masked_invalid(analogs)
            weights = np.broadcast_to(weights[..., np.newaxis], analogs.shape)
            predicted = np.ma.average(masked, weights=weights, axis=1)
            predicted = predicted.filled(np.nan)
        elif kind == 'median':
            predicted = np.nanmedian(analogs, axis=1)
        elif kind == 'max':
            predicted = np.nanmax(analogs, axis=1)
        elif kind == 'min':
            predicted = np.nanmin(analogs, axis=1)
        else:
            predicted = np.nanpercentile(analogs, q, axis=1)

        return self._format_output(predicted)
