import numpy as np
import pytest
import statsmodels.api as sm
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import ElasticNet, MultiTaskLasso, Ridge

from skdownscaler.exceptions import (
    ConvergenceFailure,
    UnsupportedCombination,
    UnsupportedOption,
    UnsupportedSimulation,
)
from skdownscaler.methods import (
    MULTI,
    SINGLE,
    AnalogDownscaler,
    FittingMode,
    GLMDownscaler,
    NeuralNetDownscaler,
    select_lambda_1se,
    simulate_draws,
)
from skdownscaler.methods.base import check_fitting_site
from skdownscaler.methods.penalized import ALPHA_GRID, cv_penalty, lambda_path


@pytest.fixture(scope='module')
def linear_X_y():
    rng = np.random.default_rng(42)
    X = rng.standard_normal((200, 3))
    beta = np.array([1.5, -2.0, 0.5])
    y = X @ beta + 3.0 + 0.01 * rng.standard_normal(200)
    return X, y, beta


@pytest.fixture(scope='module')
def sparse_X_y():
    rng = np.random.default_rng(7)
    X = rng.standard_normal((150, 8))
    y = 2.0 * X[:, 0] - 1.0 * X[:, 1] + 0.3 * rng.standard_normal(150)
    Y = np.column_stack([y, -y + 0.3 * rng.standard_normal(150), 0.5 * y])
    return X, y, Y


@pytest.fixture(scope='module')
def binary_X_y():
    rng = np.random.default_rng(3)
    X = rng.standard_normal((300, 2))
    p = 1 / (1 + np.exp(-(0.5 + 1.5 * X[:, 0] - X[:, 1])))
    y = (rng.uniform(size=300) < p).astype(float)
    return X, y


def test_moore_penrose_matches_least_squares(linear_X_y):
    X, y, beta = linear_X_y
    model = GLMDownscaler(fitting='MP').fit(X, y)

    ols = sm.OLS(y, sm.add_constant(X)).fit()
    np.testing.assert_allclose(model.coef_[:-1], ols.params[1:], rtol=1e-8)
    np.testing.assert_allclose(model.coef_[-1], ols.params[0], rtol=1e-8)

    reference, *_ = np.linalg.lstsq(np.column_stack([X, np.ones(len(X))]), y, rcond=None)
    np.testing.assert_allclose(model.coef_, reference, rtol=1e-8)
    np.testing.assert_almost_equal(model.coef_[:-1], beta, decimal=2)
    np.testing.assert_allclose(model.predict(X), ols.fittedvalues, rtol=1e-8)


def test_moore_penrose_multi_site(sparse_X_y):
    X, _, Y = sparse_X_y
    model = GLMDownscaler(fitting='MP').fit(X, Y)
    assert model.coef_.shape == (9, 3)
    assert model.predict(X).shape == (150, 3)
    for j in range(3):
        single = GLMDownscaler(fitting='MP').fit(X, Y[:, j])
        np.testing.assert_allclose(model.coef_[:, j], single.coef_, rtol=1e-8, atol=1e-12)


def test_glm_gaussian_matches_ols(linear_X_y):
    X, y, _ = linear_X_y
    model = GLMDownscaler().fit(X, y)
    ols = sm.OLS(y, sm.add_constant(X)).fit()
    np.testing.assert_allclose(model.model_.params, ols.params, rtol=1e-6)
    assert model.dispersion_ > 0
    assert model.info(SINGLE).fitting == 'none'


def test_stepwise_selects_informative_columns():
    rng = np.random.default_rng(0)
    X = rng.standard_normal((200, 5))
    y = 3.0 * X[:, 2] - 2.0 * X[:, 4] + 0.1 * rng.standard_normal(200)
    model = GLMDownscaler(fitting='stepwise').fit(X, y)
    assert {2, 4} <= set(model.selected_)
    assert model.selected_[0] == 2
    assert model.score(X, y) > 0.99


def test_stepwise_skips_candidates_that_fail(monkeypatch):
    rng = np.random.default_rng(0)
    X = rng.standard_normal((200, 5))
    y = 3.0 * X[:, 2] - 2.0 * X[:, 4] + 0.1 * rng.standard_normal(200)
    fit_likelihood = GLMDownscaler._fit_likelihood

    def fail_on_column_4(self, exog, y, with_intercept=True):
        if np.any(np.all(exog == X[:, [4]], axis=0)):
            raise ConvergenceFailure('did not converge')
        return fit_likelihood(self, exog, y, with_intercept=with_intercept)

    monkeypatch.setattr(GLMDownscaler, '_fit_likelihood', fail_on_column_4)
    model = GLMDownscaler(fitting='stepwise').fit(X, y)
    assert 2 in model.selected_
    assert 4 not in model.selected_


def test_stepwise_stops_when_no_candidate_converges(monkeypatch):
    rng = np.random.default_rng(0)
    X = rng.standard_normal((100, 3))
    y = X[:, 0] + 0.1 * rng.standard_normal(100)
    fit_likelihood = GLMDownscaler._fit_likelihood

    def intercept_only(self, exog, y, with_intercept=True):
        if exog.shape[1] > 1:
            raise ConvergenceFailure('did not converge')
        return fit_likelihood(self, exog, y, with_intercept=with_intercept)

    monkeypatch.setattr(GLMDownscaler, '_fit_likelihood', intercept_only)
    model = GLMDownscaler(fitting='stepwise').fit(X, y)
    assert model.selected_.size == 0
    np.testing.assert_allclose(model.predict(X), y.mean())


def test_lasso(sparse_X_y):
    X, y, _ = sparse_X_y
    model = GLMDownscaler(fitting='L1', n_lambda=30, n_folds=5, random_state=0).fit(X, y)
    assert isinstance(model.model_, ElasticNet)
    assert model.search_.alpha == 1.0
    assert len(model.search_.lambdas) == 30
    assert model.search_.lambda_ in model.search_.lambdas
    assert model.score(X, y) > 0.9
    # informative columns survive the penalty
    assert np.all(model.model_.coef_[:2] != 0)


def test_ridge(sparse_X_y):
    X, y, _ = sparse_X_y
    model = GLMDownscaler(fitting='L2', n_lambda=20, n_folds=5, random_state=0).fit(X, y)
    assert isinstance(model.model_, Ridge)
    assert model.search_.alpha == 0.0
    assert model.score(X, y) > 0.8


def test_elastic_net_alpha_search(sparse_X_y):
    X, y, _ = sparse_X_y
    model = GLMDownscaler(
        fitting='L1L2', alphas=(0.5, 1.0), n_lambda=20, n_folds=5, random_state=0
    ).fit(X, y)
    assert model.search_.alpha in (0.5, 1.0)
    assert model.score(X, y) > 0.9


def test_default_alpha_grid(sparse_X_y):
    assert ALPHA_GRID == (0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0)

    X, y, _ = sparse_X_y
    kwargs = dict(n_folds=5, n_lambda=10, random_state=0)
    model = GLMDownscaler(fitting='L1L2', **kwargs).fit(X, y)
    assert model.search_.alpha in ALPHA_GRID

    # the mixing parameter with the lowest minimum cross-validated deviance wins
    lowest = [cv_penalty(X, y, 'gaussian', alphas=(a,), **kwargs).cvm.min() for a in ALPHA_GRID]
    assert model.search_.alpha == ALPHA_GRID[int(np.argmin(lowest))]
    assert model.search_.cvm.min() == pytest.approx(min(lowest))


def test_penalty_search_is_reproducible(sparse_X_y):
    X, y, _ = sparse_X_y
    kwargs = dict(fitting='L1', n_lambda=15, n_folds=4, random_state=1)
    first = GLMDownscaler(**kwargs).fit(X, y).search_
    second = GLMDownscaler(**kwargs).fit(X, y).search_
    assert first.lambda_ == second.lambda_
    np.testing.assert_array_equal(first.cvm, second.cvm)


@pytest.mark.filterwarnings('ignore::FutureWarning')
def test_penalized_binomial(binary_X_y):
    X, y = binary_X_y
    model = GLMDownscaler(
        fitting='L1', family='binomial', n_lambda=10, n_folds=3, random_state=0
    ).fit(X, y)
    proba = model.predict_mean(X)
    assert proba.min() >= 0 and proba.max() <= 1
    assert np.corrcoef(proba, y)[0, 1] > 0.3


def test_group_lasso(sparse_X_y):
    X, _, Y = sparse_X_y
    model = GLMDownscaler(fitting='gLASSO', n_lambda=15, n_folds=4, random_state=0).fit(X, Y)
    assert isinstance(model.model_, MultiTaskLasso)
    assert model.info(MULTI).family == 'mgaussian'
    assert model.predict(X).shape == (150, 3)
    # rows of the coefficient matrix vanish together
    nonzero = model.model_.coef_ != 0
    assert np.all(nonzero.all(axis=0) | ~nonzero.any(axis=0))
    assert nonzero[:, 0].all()


def test_lambda_path_starts_at_null_model(sparse_X_y):
    X, y, _ = sparse_X_y
    path = lambda_path(X, y, alpha=1.0, n_lambda=10)
    assert len(path) == 10
    assert np.all(np.diff(path) < 0)
    np.testing.assert_allclose(path[-1] / path[0], 1e-4)
    null = ElasticNet(alpha=path[0] * 1.0001, l1_ratio=1.0).fit(X, y)
    np.testing.assert_array_equal(null.coef_, 0)


def test_select_lambda_1se():
    lambdas = np.array([1.0, 0.5, 0.25, 0.125])
    cvm = np.array([3.0, 1.2, 1.0, 1.1])
    cvsd = np.array([0.1, 0.1, 0.3, 0.1])
    assert select_lambda_1se(lambdas, cvm, cvsd) == 1


@pytest.mark.parametrize(
    ('fitting', 'site'),
    [('gLASSO', SINGLE), ('groupLasso', SINGLE), ('L1', MULTI), ('L2', MULTI), ('L1L2', MULTI),
     ('none', MULTI), ('stepwise', MULTI)],
)
def test_illegal_site_modes(fitting, site):
    with pytest.raises(UnsupportedCombination):
        GLMDownscaler(fitting=fitting).check_site_mode(site)


@pytest.mark.parametrize(('fitting', 'site'), [('MP', SINGLE), ('MP', MULTI), ('gLASSO', MULTI)])
def test_legal_site_modes(fitting, site):
    GLMDownscaler(fitting=fitting).check_site_mode(site)


def test_fit_rejects_illegal_target_shape(sparse_X_y):
    X, y, Y = sparse_X_y
    with pytest.raises(UnsupportedCombination):
        GLMDownscaler(fitting='L1').fit(X, Y)
    with pytest.raises(UnsupportedCombination):
        GLMDownscaler(fitting='gLASSO').fit(X, y)


def test_every_fitting_mode_has_site_rules():
    for mode in FittingMode:
        for site in (SINGLE, MULTI):
            try:
                check_fitting_site(mode, site)
            except UnsupportedCombination:
                pass
    assert FittingMode.parse(None) is FittingMode.NONE
    assert FittingMode.parse('groupLasso') is FittingMode.GROUP_LASSO
    with pytest.raises(ValueError):
        FittingMode.parse('ridge')


@pytest.mark.parametrize(
    ('params', 'error'),
    [
        ({'fitting': 'MP', 'n_lambda': 10}, UnsupportedOption),
        ({'fitting': 'none', 'alphas': (0.5,)}, UnsupportedOption),
        ({'fitting': 'L1', 'link': 'log'}, UnsupportedOption),
        ({'fitting': 'L1', 'family': 'poisson'}, UnsupportedCombination),
        ({'fitting': 'MP', 'family': 'binomial'}, UnsupportedCombination),
        ({'fitting': 'gLASSO', 'family': 'binomial'}, UnsupportedCombination),
        ({'fitting': 'none', 'simulate': True}, UnsupportedSimulation),
        ({'fitting': 'none', 'link': 'cubic'}, ValueError),
    ],
)
def test_option_checks(params, error):
    with pytest.raises(error):
        GLMDownscaler(**params).check_options()


def test_simulate_binomial_frequency():
    rng = np.random.default_rng(0)
    pred = np.full(4000, 0.3)
    draws = simulate_draws(pred, 'binomial', rng)
    assert set(np.unique(draws)) <= {0.0, 1.0}
    assert abs(draws.mean() - 0.3) < 0.03


def test_simulate_unsupported_family():
    with pytest.raises(UnsupportedSimulation):
        simulate_draws(np.ones(3), 'gaussian', np.random.default_rng(0))
    with pytest.raises(UnsupportedSimulation):
        simulate_draws(np.ones(3), 'Gamma', np.random.default_rng(0))


def test_glm_binomial_simulation(binary_X_y):
    X, y = binary_X_y
    model = GLMDownscaler(family='binomial', simulate=True, random_state=0).fit(X, y)
    proba = model.predict_mean(X)
    draws = np.stack([model.predict(X) for _ in range(400)])
    assert set(np.unique(draws)) <= {0.0, 1.0}
    assert np.abs(draws.mean(axis=0) - proba).mean() < 0.05

    repeat = GLMDownscaler(family='binomial', simulate=True, random_state=0).fit(X, y)
    np.testing.assert_array_equal(repeat.predict(X), draws[0])


def test_glm_gamma_simulation():
    rng = np.random.default_rng(5)
    X = rng.standard_normal((400, 1))
    mu = np.exp(0.5 + 0.3 * X[:, 0])
    y = rng.gamma(shape=5.0, scale=mu / 5.0)
    model = GLMDownscaler(family='Gamma', link='log', simulate=True, random_state=0).fit(X, y)
    np.testing.assert_allclose(model.dispersion_, 0.2, rtol=0.3)

    mean = model.predict_mean(X)
    draws = np.stack([model.predict(X) for _ in range(50)])
    assert np.all(draws > 0)
    np.testing.assert_allclose(draws.mean(), mean.mean(), rtol=0.05)


def test_analogs_single_analog_reproduces_training(linear_X_y):
    X, y, _ = linear_X_y
    model = AnalogDownscaler().fit(X, y)
    np.testing.assert_array_equal(model.predict(X), y)
    assert model.info(SINGLE).method == 'analogs'


@pytest.mark.parametrize('sel_fun', ['mean', 'wmean', 'median', 'max', 'min', 'prc50', 'prc90'])
def test_analogs_selection(linear_X_y, sel_fun):
    X, y, _ = linear_X_y
    model = AnalogDownscaler(n_analogs=5, sel_fun=sel_fun).fit(X, y)
    pred = model.predict(X[:20])
    assert pred.shape == (20,)

    _, inds = model.kdtree_.query(X[:20], k=5)
    analogs = y[inds]
    assert np.all(pred >= analogs.min(axis=1) - 1e-12)
    assert np.all(pred <= analogs.max(axis=1) + 1e-12)
    if sel_fun == 'prc50':
        np.testing.assert_allclose(pred, np.median(analogs, axis=1))
    if sel_fun == 'wmean':
        # perfect matches dominate the weighted mean
        np.testing.assert_allclose(pred, y[:20])


def test_analogs_multi_site(sparse_X_y):
    X, _, Y = sparse_X_y
    model = AnalogDownscaler(n_analogs=3).fit(X, Y)
    assert model.predict(X).shape == (150, 3)


def test_analogs_options(linear_X_y):
    X, y, _ = linear_X_y
    with pytest.raises(ValueError):
        AnalogDownscaler(sel_fun='mode').check_options()
    with pytest.warns(UserWarning):
        model = AnalogDownscaler(n_analogs=500).fit(X, y)
    assert model.k_ == len(X)


@pytest.mark.filterwarnings('ignore::sklearn.exceptions.ConvergenceWarning')
def test_neural_net_regression(linear_X_y):
    X, y, _ = linear_X_y
    model = NeuralNetDownscaler(
        max_iter=2000, random_state=0, mlp_kwargs={'solver': 'lbfgs'}
    ).fit(X, y)
    assert model.score(X, y) > 0.95
    assert model.predict(X).shape == (200,)


@pytest.mark.filterwarnings('ignore::sklearn.exceptions.ConvergenceWarning')
def test_neural_net_binomial(binary_X_y):
    X, y = binary_X_y
    model = NeuralNetDownscaler(family='binomial', simulate=True, random_state=0).fit(X, y)
    proba = model.predict_mean(X)
    assert proba.shape == (300,)
    assert proba.min() >= 0 and proba.max() <= 1
    assert set(np.unique(model.predict(X))) <= {0.0, 1.0}


def test_neural_net_options():
    with pytest.raises(UnsupportedCombination):
        NeuralNetDownscaler(family='Gamma').check_options()
    with pytest.raises(UnsupportedSimulation):
        NeuralNetDownscaler(simulate=True).check_options()


def test_neural_net_warns_without_convergence(linear_X_y):
    X, y, _ = linear_X_y
    with pytest.warns(ConvergenceWarning):
        NeuralNetDownscaler(max_iter=2, random_state=0).fit(X, y)
