"""
Global or contextual options for skdownscaler, similar to xarray.set_options.
"""
from __future__ import annotations

import numbers

N_JOBS = 'n_jobs'
RANDOM_STATE = 'random_state'
NA_ACTION = 'na_action'
CV_ON_INCOMPLETE = 'cv_on_incomplete'

OPTIONS = {
    N_JOBS: None,
    RANDOM_STATE: None,
    NA_ACTION: 'omit',
    CV_ON_INCOMPLETE: 'raise',
}

NA_ACTIONS = frozenset(['omit', 'fail', 'none'])
_LOUDNESS_OPTIONS = frozenset(['log', 'warn', 'raise'])


def _valid_n_jobs(value):
    return value is None or (isinstance(value, numbers.Integral) and value != 0)


def _valid_random_state(value):
    return value is None or (isinstance(value, numbers.Integral) and value >= 0)


_VALIDATORS = {
    N_JOBS: _valid_n_jobs,
    RANDOM_STATE: _valid_random_state,
    NA_ACTION: NA_ACTIONS.__contains__,
    CV_ON_INCOMPLETE: _LOUDNESS_OPTIONS.__contains__,
}


def get_option(key, value=None):
    """Return `value` if given, otherwise the current global value of option `key`."""
    if key not in OPTIONS:
        raise ValueError(f'{key!r} is not in the set of valid options {set(OPTIONS)!r}')
    return OPTIONS[key] if value is None else value


class set_options:
    """Set options for skdownscaler in a controlled context.

    Attributes
    ----------
    n_jobs : int, optional
        Size of the worker pools used to fit sites and cross-validation folds.
        ``None`` runs sequentially, ``-1`` uses all cores. Default: ``None``.
    random_state : int, optional
        Seed used by fold shuffling, penalty searches and stochastic predictions
        when none is given explicitly. Default: ``None``.
    na_action : {'omit', 'fail', 'none'}
        Missing-value policy of :py:func:`skdownscaler.prepare.prepare_data`.
        Default: ``'omit'``.
    cv_on_incomplete : {'log', 'warn', 'raise'}
        What :py:func:`skdownscaler.cv.downscale_cv` does when folds leave time
        steps without a prediction. Default: ``'raise'``.

    Examples
    --------
    You can use ``set_options`` either as a context manager:

    >>> with skdownscaler.set_options(n_jobs=-1):
    ...     out = skdownscaler.downscale_cv(x, y, 'GLM')

    Or to set global options:

    >>> skdownscaler.set_options(random_state=42)
    """

    def __init__(self, **kwargs):
        self.old = {}
        for k, v in kwargs.items():
            if k not in OPTIONS:
                raise ValueError(
                    'argument name %r is not in the set of valid options %r' % (k, set(OPTIONS))
                )
            if k in _VALIDATORS and not _VALIDATORS[k](v):
                raise ValueError(f'option {k!r} given an invalid value: {v!r}')

            self.old[k] = OPTIONS[k]

        self._update(kwargs)

    def __enter__(self):
        return

    def _update(self, kwargs):
        OPTIONS.update(kwargs)

    def __exit__(self, option_type, value, traceback):
        self._update(self.old)
