import numpy as np
from sklearn.neural_network import MLPClassifier, MLPRegressor
from sklearn.utils.validation import check_is_fitted

from ..exceptions import UnsupportedCombination
from .base import DownscalingBackend, check_simulation, simulate_draws

NN_FAMILIES = ('gaussian', 'binomial')


class NeuralNetDownscaler(DownscalingBackend):
    """ Neural network downscaling

    A multilayer perceptron mapping predictors to one or several sites. The
    ``'gaussian'`` family fits a regression network; ``'binomial'`` a
    classification network whose predictions are probabilities.

    Parameters
    ----------
    hidden_layer_sizes : tuple of int
        Number of neurons of each hidden layer.
    activation : {'identity', 'logistic', 'tanh', 'relu'}
        Activation of the hidden layers.
    family : {'gaussian', 'binomial'}
        Type of predictand.
    simulate : bool
        Draw Bernoulli outcomes from the predicted probabilities (binomial only).
    alpha : float
        L2 penalty.
    learning_rate_init : float
        Initial learning rate.
    max_iter : int
        Maximum number of epochs.
    early_stopping : bool
        Hold out 10% of the training rows to stop training when the score stalls.
    random_state : int, optional
        Seed of weight initialisation and of simulation draws.
    mlp_kwargs : dict, optional
        Keyword arguments to pass to the MLPRegressor or MLPClassifier constructor.

    Attributes
    ----------
    model_ : MLPRegressor or MLPClassifier
        Fitted network.
    """

    method = 'NN'

    def __init__(
        self,
        hidden_layer_sizes=(10,),
        activation='tanh',
        family='gaussian',
        simulate=False,
        alpha=1e-4,
        learning_rate_init=1e-3,
        max_iter=500,
        early_stopping=False,
        random_state=None,
        mlp_kwargs=None,
    ):
        self.hidden_layer_sizes = hidden_layer_sizes
        self.activation = activation
        self.family = family
        self.simulate = simulate
        self.alpha = alpha
        self.learning_rate_init = learning_rate_init
        self.max_iter = max_iter
        self.early_stopping = early_stopping
        self.random_state = random_state
        self.mlp_kwargs = mlp_kwargs

    def check_options(self):
        if self.family not in NN_FAMILIES:
            raise UnsupportedCombination(
                f'family {self.family!r} is not available for method {self.method!r}; '
                f'expected one of {NN_FAMILIES}'
            )
        check_simulation(self.simulate, self.family)

    def fit(self, X, y):
        self.check_options()
        X, y = self._validate_data(X, y=y)

        kwargs = dict(
            hidden_layer_sizes=self.hidden_layer_sizes,
            activation=self.activation,
            alpha=self.alpha,
            learning_rate_init=self.learning_rate_init,
            max_iter=self.max_iter,
            early_stopping=self.early_stopping,
            random_state=self.random_state,
        )
        kwargs.update(self.mlp_kwargs or {})

        if self.family == 'binomial':
            self.model_ = MLPClassifier(**kwargs).fit(X, y.astype(int))
        else:
            self.model_ = MLPRegressor(**kwargs).fit(X, y)

        self.rng_ = np.random.default_rng(self.random_state)
        return self

    def predict_mean(self, X):
        """Network output: values, or probabilities for the binomial family."""
        check_is_fitted(self)
        X = self._validate_data(X, reset=False)
        if self.family == 'binomial':
            proba = self.model_.predict_proba(X)
            # multilabel networks return one probability per site
            pred = proba[:, 1] if self.n_outputs_ == 1 else proba
        else:
            pred = self.model_.predict(X)
        return self._format_output(pred)

    def predict(self, X):
        pred = self.predict_mean(X)
        if self.simulate:
            pred = simulate_draws(pred, self.family, self.rng_)
        return pred
