"""Exceptions raised by the downscaling toolbox."""

from __future__ import annotations

import logging
import warnings

logger = logging.getLogger('skdownscaler')

__all__ = [
    'ConvergenceFailure',
    'DownscalingError',
    'IncompleteCoverage',
    'MissingValues',
    'ShapeMismatch',
    'UnsupportedCombination',
    'UnsupportedOption',
    'UnsupportedSimulation',
    'raise_warn_or_log',
]


class DownscalingError(Exception):
    """Base class of all errors raised by skdownscaler."""

    @property
    def msg(self):
        return self.args[0]


class ShapeMismatch(DownscalingError, ValueError):
    """Predictor and predictand time axes (or new and training fields) do not align."""


class UnsupportedCombination(DownscalingError, ValueError):
    """Illegal pairing of fitting mode, site mode or family."""


class UnsupportedSimulation(DownscalingError, ValueError):
    """Stochastic prediction was requested for a family that cannot be simulated."""


class UnsupportedOption(DownscalingError, TypeError):
    """An option is unknown to a method, or meaningless for the chosen fitting mode."""


class MissingValues(DownscalingError, ValueError):
    """Missing values were found while ``na_action='fail'``."""


class ConvergenceFailure(DownscalingError, RuntimeError):
    """An underlying fit routine did not converge.

    Parameters
    ----------
    msg : str
        Error message.
    site : int, optional
        Index of the predictand site being fitted.
    fold : int, optional
        Index of the cross-validation fold being fitted.
    """

    def __init__(self, msg, site=None, fold=None):
        super().__init__(msg)
        self.site = site
        self.fold = fold


class IncompleteCoverage(DownscalingError, RuntimeError):
    """Cross-validation folds left some time steps without a prediction.

    Attributes
    ----------
    output : xarray.DataArray
        The partially filled prediction series.
    missing : ndarray
        Integer positions along ``time`` that were never written.
    errors : dict
        Mapping of fold index to the exception that aborted that fold.
    """

    def __init__(self, msg, output=None, missing=None, errors=None):
        super().__init__(msg)
        self.output = output
        self.missing = missing
        self.errors = errors if errors is not None else {}


def raise_warn_or_log(err: Exception, mode: str, msg: str | None = None, stacklevel: int = 1):
    """Raise, warn or log an error according to `mode`.

    Parameters
    ----------
    err : Exception
        An error.
    mode : {'log', 'warn', 'raise'}
        What to do with the error.
    msg : str, optional
        The string used when logging or warning. Defaults to the `msg` attr of the error.
    stacklevel : int
        Stacklevel when warning. Relative to the call of this function (1 is added).
    """
    message = msg or getattr(err, 'msg', f'Failed with {err!r}.')
    if mode == 'log':
        logger.info(message)
    elif mode == 'warn':
        warnings.warn(message, stacklevel=stacklevel + 1)
    else:
        raise err
