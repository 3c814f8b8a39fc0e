from skdownscaler.methods.analogs import AnalogDownscaler
from skdownscaler.methods.base import (
    MULTI,
    SINGLE,
    SITE_LEGALITY,
    DownscalingBackend,
    FittingMode,
    Info,
    simulate_draws,
)
from skdownscaler.methods.glm import GLMDownscaler
from skdownscaler.methods.nn import NeuralNetDownscaler
from skdownscaler.methods.penalized import PenaltySearch, cv_penalty, select_lambda_1se

METHODS = {
    AnalogDownscaler.method: AnalogDownscaler,
    GLMDownscaler.method: GLMDownscaler,
    NeuralNetDownscaler.method: NeuralNetDownscaler,
}

__all__ = [
    'AnalogDownscaler',
    'DownscalingBackend',
    'FittingMode',
    'GLMDownscaler',
    'Info',
    'METHODS',
    'MULTI',
    'NeuralNetDownscaler',
    'PenaltySearch',
    'SINGLE',
    'SITE_LEGALITY',
    'cv_penalty',
    'select_lambda_1se',
    'simulate_draws',
]
