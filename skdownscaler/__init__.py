try:
    from importlib.metadata import PackageNotFoundError, version
except ImportError:
    from importlib_metadata import PackageNotFoundError, version

from .cv import downscale_cv, make_folds
from .downscale import ExperimentResult, predict, predict_training, train
from .exceptions import (
    ConvergenceFailure,
    DownscalingError,
    IncompleteCoverage,
    MissingValues,
    ShapeMismatch,
    UnsupportedCombination,
    UnsupportedOption,
    UnsupportedSimulation,
)
from .methods import AnalogDownscaler, FittingMode, GLMDownscaler, NeuralNetDownscaler
from .options import set_options
from .prepare import PreparedData, prepare_data, prepare_new_data

try:
    __version__ = version('scikit-downscaler')
except PackageNotFoundError:
    # package is not installed
    __version__ = "0.0.0"
