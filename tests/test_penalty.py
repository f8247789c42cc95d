"""Tests for the penalty value, gradient, caching and bookkeeping.

Two problems are used throughout:

    quadratic:  min x0^2 + x1^2            s.t. x0 + x1 = 1
    nonlinear:  min x0^2 + 2 x1^2 + x2^2 + x0 x2 + exp(x1 / 2)
                s.t. x0^2 + x1^2 + x2^2 = 2,  x0 x1 - x2 = 1

For the quadratic problem with delta = 0 the penalty has the closed form
``phi(x) = ||x||^2 - c - (1 - sigma / 2) c^2`` with ``c = x0 + x1 - 1``.
"""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from fletcher_jax import (
    ADNLPModel,
    DenseSolver,
    DimensionError,
    DirectSparseSolver,
    EigenFactorizedSolver,
    FletcherPenaltyNLP,
    HessianApprox,
    IterativeSolver,
    LUFactorizedSolver,
    NonFiniteValueError,
    PenaltyParameters,
    SingularSystemError,
)

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


STRATEGIES = [
    pytest.param(IterativeSolver(), id="cg"),
    pytest.param(IterativeSolver(method="minres"), id="minres"),
    pytest.param(DenseSolver(), id="dense"),
    pytest.param(EigenFactorizedSolver(), id="eigen"),
    pytest.param(LUFactorizedSolver(), id="lu"),
    pytest.param(DirectSparseSolver(), id="sparse"),
]


def quadratic_model():
    return ADNLPModel(
        lambda x, args: x[0] ** 2 + x[1] ** 2,
        lambda x, args: jnp.array([x[0] + x[1] - 1.0]),
        x0=jnp.array([1.0, 0.0]),
        name="quadratic",
    )


def nonlinear_model():
    def objective(x, args):
        return x[0] ** 2 + 2.0 * x[1] ** 2 + x[2] ** 2 + x[0] * x[2] + jnp.exp(0.5 * x[1])

    def constraints(x, args):
        return jnp.array(
            [x[0] ** 2 + x[1] ** 2 + x[2] ** 2 - 2.0, x[0] * x[1] - x[2] - 1.0]
        )

    return ADNLPModel(objective, constraints, x0=jnp.array([0.7, -0.4, 0.9]))


def hs6_model():
    return ADNLPModel(
        lambda x, args: (1.0 - x[0]) ** 2,
        lambda x, args: jnp.array([10.0 * (x[1] - x[0] ** 2)]),
        x0=jnp.array([-1.2, 1.0]),
        name="hs6",
    )


X = jnp.array([0.7, -0.4, 0.9])


def central_difference(fun, x, h=1e-6):
    x = np.asarray(x, dtype=np.float64)
    grad = np.zeros_like(x)
    for i in range(x.size):
        e = np.zeros_like(x)
        e[i] = h
        grad[i] = (float(fun(x + e)) - float(fun(x - e))) / (2 * h)
    return grad


class TestParameters:
    """Tests for penalty parameter validation and metadata."""

    def test_defaults(self):
        params = PenaltyParameters()
        assert params.sigma == 1.0
        assert params.rho == 0.0
        assert params.delta == 0.0
        assert params.hessian_approx == HessianApprox.PROJECTED
        assert params.tau == 1e-14

    def test_tau_follows_delta(self):
        """Test tau = max(delta, 1e-14)."""
        assert PenaltyParameters(delta=0.5).tau == 0.5

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"sigma": 0.0},
            {"sigma": -1.0},
            {"rho": -0.5},
            {"delta": -1e-3},
            {"sigma": float("nan")},
            {"hessian_approx": 3},
        ],
    )
    def test_invalid_parameters(self, kwargs):
        """Test sigma <= 0, rho < 0, delta < 0, NaN and unknown approximations."""
        with pytest.raises(ValueError):
            FletcherPenaltyNLP(quadratic_model(), **kwargs)

    def test_unconstrained_model_is_rejected(self):
        model = ADNLPModel(
            lambda x, args: jnp.sum(x**2),
            lambda x, args: jnp.zeros(0),
            x0=jnp.ones(2),
        )
        with pytest.raises(ValueError):
            FletcherPenaltyNLP(model)

    def test_metadata(self):
        nlp = FletcherPenaltyNLP(nonlinear_model(), sigma=2.0, rho=3.0, delta=0.1)
        assert nlp.meta.nvar == 3
        assert nlp.meta.ncon == 0
        assert nlp.meta.nnzh == 6
        assert nlp.meta.name == "Fletcher penalization of Generic"
        assert (nlp.sigma, nlp.rho, nlp.delta) == (2.0, 3.0, 0.1)
        assert isinstance(nlp.solver, IterativeSolver)
        np.testing.assert_array_equal(nlp.meta.x0, X)


class TestValue:
    """Tests for the penalty value phi(x) = f - c^T ys + (rho / 2) ||c||^2."""

    def test_scenario_at_feasible_point(self):
        """f = x0^2 + x1^2, c = x0 + x1 - 1 at x = (1, 0)."""
        nlp = FletcherPenaltyNLP(quadratic_model(), solver=DenseSolver())
        assert float(nlp.objective(jnp.array([1.0, 0.0]))) == 1.0

    @pytest.mark.parametrize("rho", [0.0, 2.0])
    def test_feasible_point_gives_objective(self, rho):
        """Test phi(x) = f(x) wherever c(x) = 0."""
        model = nonlinear_model()
        x = jnp.array([1.0, 1.0, 0.0])
        np.testing.assert_array_equal(model.constraints(x), np.zeros(2))
        nlp = FletcherPenaltyNLP(model, rho=rho, solver=DenseSolver())
        assert float(nlp.objective(x)) == float(model.objective(x))

    @pytest.mark.parametrize("sigma", [0.5, 1.0, 3.0])
    def test_closed_form(self, sigma):
        """Test phi = f - c - (1 - sigma / 2) c^2 for one linear constraint."""
        nlp = FletcherPenaltyNLP(quadratic_model(), sigma=sigma, solver=DenseSolver())
        x = jnp.array([0.3, 1.4])
        c = 0.3 + 1.4 - 1.0
        expected = 0.3**2 + 1.4**2 - c - (1.0 - sigma / 2.0) * c**2
        np.testing.assert_allclose(nlp.objective(x), expected, rtol=1e-12)

    def test_quadratic_term_vanishes_with_rho(self):
        """Test the rho term adds exactly (rho / 2) ||c||^2."""
        model = nonlinear_model()
        base = float(FletcherPenaltyNLP(model, solver=DenseSolver()).objective(X))
        c = np.asarray(model.constraints(X))
        for rho in [1.0, 1e-4, 1e-8]:
            value = float(FletcherPenaltyNLP(model, rho=rho, solver=DenseSolver()).objective(X))
            np.testing.assert_allclose(value - base, 0.5 * rho * c @ c, rtol=1e-6, atol=1e-14)

    @pytest.mark.parametrize("solver", STRATEGIES)
    def test_strategies_agree(self, solver):
        model = nonlinear_model()
        expected = FletcherPenaltyNLP(model, delta=0.1, solver=DenseSolver()).objective(X)
        value = FletcherPenaltyNLP(model, delta=0.1, solver=solver).objective(X)
        np.testing.assert_allclose(value, expected, rtol=1e-7)

    def test_integer_input_is_promoted(self):
        nlp = FletcherPenaltyNLP(quadratic_model(), solver=DenseSolver())
        assert float(nlp.objective(np.array([1, 0]))) == 1.0


class TestGradient:
    """Tests for the penalty gradient."""

    def test_scenario_matches_finite_differences(self):
        nlp = FletcherPenaltyNLP(quadratic_model(), solver=DenseSolver())
        x = jnp.array([1.0, 0.0])
        grad = nlp.gradient(x)
        np.testing.assert_allclose(grad, [1.0, -1.0], atol=1e-12)
        np.testing.assert_allclose(grad, central_difference(nlp.objective, x), atol=1e-6)

    @pytest.mark.parametrize("sigma", [0.5, 2.0])
    @pytest.mark.parametrize("rho", [0.0, 1.5])
    @pytest.mark.parametrize("delta", [0.0, 0.2])
    def test_nonlinear_matches_finite_differences(self, sigma, rho, delta):
        """Test the gradient against central differences of phi."""
        nlp = FletcherPenaltyNLP(
            nonlinear_model(), sigma=sigma, rho=rho, delta=delta, solver=LUFactorizedSolver()
        )
        fd = central_difference(nlp.objective, X)
        np.testing.assert_allclose(nlp.gradient(X), fd, rtol=1e-5, atol=1e-6)

    @pytest.mark.parametrize("solver", STRATEGIES)
    def test_strategies_agree(self, solver):
        model = nonlinear_model()
        expected = FletcherPenaltyNLP(model, rho=1.0, solver=DenseSolver()).gradient(X)
        grad = FletcherPenaltyNLP(model, rho=1.0, solver=solver).gradient(X)
        np.testing.assert_allclose(grad, expected, rtol=1e-6, atol=1e-9)

    @pytest.mark.parametrize("sigma", [1.0, 10.0])
    @pytest.mark.parametrize("rho", [0.0, 5.0])
    def test_stationary_at_constrained_minimizer(self, sigma, rho):
        """Test grad phi = 0 at a KKT point for any sigma and rho."""
        nlp = FletcherPenaltyNLP(hs6_model(), sigma=sigma, rho=rho, solver=DenseSolver())
        np.testing.assert_allclose(nlp.gradient(jnp.array([1.0, 1.0])), [0.0, 0.0], atol=1e-10)

        nlp = FletcherPenaltyNLP(quadratic_model(), sigma=sigma, rho=rho)
        np.testing.assert_allclose(nlp.gradient(jnp.array([0.5, 0.5])), [0.0, 0.0], atol=1e-10)

    def test_objective_and_gradient_match_separate_calls(self):
        model = nonlinear_model()
        nlp = FletcherPenaltyNLP(model, sigma=2.0, rho=0.5, solver=DenseSolver())
        value, grad = nlp.objective_and_gradient(X)
        np.testing.assert_allclose(value, nlp.objective(X), rtol=1e-14)
        np.testing.assert_allclose(grad, nlp.gradient(X), rtol=1e-14)

    def test_out_buffer(self):
        nlp = FletcherPenaltyNLP(quadratic_model(), solver=DenseSolver())
        x = jnp.array([1.0, 0.0])
        buf = np.zeros(2)
        result = nlp.gradient(x, out=buf)
        assert result is buf
        np.testing.assert_allclose(buf, [1.0, -1.0], atol=1e-12)

        buf2 = np.zeros(2)
        value, result = nlp.objective_and_gradient(x, out=buf2)
        assert result is buf2
        assert float(value) == 1.0
        np.testing.assert_allclose(buf2, buf, rtol=1e-14)


class TestCache:
    """Tests for the cached (fx, cx, gx, ys) of the last successful evaluation."""

    def test_cache_after_objective(self):
        model = quadratic_model()
        nlp = FletcherPenaltyNLP(model, sigma=1.0, solver=DenseSolver())
        assert np.isnan(nlp.fx)
        assert nlp.ys.shape == (0,)

        x = jnp.array([0.3, 1.4])
        nlp.objective(x)
        c = 0.7
        np.testing.assert_allclose(nlp.fx, 0.3**2 + 1.4**2, rtol=1e-14)
        np.testing.assert_allclose(nlp.cx, [c], rtol=1e-14)
        np.testing.assert_allclose(nlp.gx, [0.6, 2.8], rtol=1e-14)
        # ys = c + 1 - sigma c / 2
        np.testing.assert_allclose(nlp.ys, [c + 1.0 - 0.5 * c], rtol=1e-12)

    def test_gradient_leaves_objective_cache(self):
        """Test that gradient() never evaluates f, so fx stays unset."""
        model = quadratic_model()
        nlp = FletcherPenaltyNLP(model, solver=DenseSolver())
        nlp.gradient(jnp.array([0.3, 1.4]))
        assert np.isnan(nlp.fx)
        assert model.counters.neval_obj == 0
        np.testing.assert_allclose(nlp.cx, [0.7], rtol=1e-14)

    def test_failed_evaluation_keeps_cache(self):
        """Test a singular solve at the origin leaves the cache from (1, 1)."""
        model = ADNLPModel(
            lambda x, args: (x[0] - 1.0) ** 2 + x[1] ** 2,
            lambda x, args: jnp.array([x[0] ** 2 + x[1] ** 2 - 1.0]),
            x0=jnp.array([1.0, 1.0]),
        )
        nlp = FletcherPenaltyNLP(model, solver=DenseSolver())
        nlp.objective(jnp.array([1.0, 1.0]))
        cached = (float(nlp.fx), np.asarray(nlp.cx), np.asarray(nlp.gx), np.asarray(nlp.ys))

        # The constraint gradient vanishes at the origin
        with pytest.raises(SingularSystemError):
            nlp.objective(jnp.array([0.0, 0.0]))
        with pytest.raises(SingularSystemError):
            nlp.gradient(jnp.array([0.0, 0.0]))

        assert float(nlp.fx) == cached[0]
        np.testing.assert_array_equal(nlp.cx, cached[1])
        np.testing.assert_array_equal(nlp.gx, cached[2])
        np.testing.assert_array_equal(nlp.ys, cached[3])

    def test_non_finite_model_values(self):
        model = ADNLPModel(
            lambda x, args: jnp.log(x[0]) + x[1] ** 2,
            lambda x, args: jnp.array([x[0] + x[1] - 2.0]),
            x0=jnp.array([1.0, 1.0]),
        )
        nlp = FletcherPenaltyNLP(model, solver=DenseSolver())
        with pytest.raises(NonFiniteValueError):
            nlp.objective(jnp.array([-1.0, 1.0]))
        assert np.isnan(nlp.fx)
        assert nlp.cx.shape == (0,)


class TestCounters:
    """Tests for evaluation counters on the penalty and the wrapped model."""

    def test_each_operation_counts_once(self):
        nlp = FletcherPenaltyNLP(nonlinear_model(), solver=DenseSolver())
        nlp.objective(X)
        assert nlp.counters.neval_obj == 1
        assert nlp.counters.total() == 1

        nlp.gradient(X)
        assert nlp.counters.neval_grad == 1

        nlp.objective_and_gradient(X)
        assert (nlp.counters.neval_obj, nlp.counters.neval_grad) == (2, 2)

        nlp.hessian_coord(X)
        assert nlp.counters.neval_hess == 1

        nlp.hessian_vector(X, jnp.ones(3))
        assert nlp.counters.neval_hprod == 1
        assert nlp.counters.total() == 6

        nlp.reset_counters()
        assert nlp.counters.total() == 0

    def test_underlying_model_counts(self):
        """Test the model evaluations behind objective and gradient."""
        model = nonlinear_model()
        nlp = FletcherPenaltyNLP(model, solver=DenseSolver())
        nlp.objective(X)
        c = model.counters
        assert (c.neval_obj, c.neval_cons, c.neval_grad, c.neval_jac) == (1, 1, 1, 1)

        model.reset_counters()
        nlp.gradient(X)
        assert (c.neval_obj, c.neval_cons, c.neval_grad) == (0, 1, 1)
        # Both right-hand sides share one Jacobian
        assert c.neval_jac == 1
        assert c.neval_hprod == 2

    def test_dimension_errors_do_not_touch_the_model(self):
        model = nonlinear_model()
        nlp = FletcherPenaltyNLP(model, solver=DenseSolver())
        bad_x = jnp.ones(2)
        with pytest.raises(DimensionError):
            nlp.objective(bad_x)
        with pytest.raises(DimensionError):
            nlp.gradient(bad_x)
        with pytest.raises(DimensionError):
            nlp.gradient(X, out=np.zeros(4))
        with pytest.raises(DimensionError):
            nlp.objective_and_gradient(X, out=np.zeros(2))
        with pytest.raises(DimensionError):
            nlp.hessian_coord(X, out=np.zeros(3))
        with pytest.raises(DimensionError):
            nlp.hessian_vector(X, jnp.ones(4))
        with pytest.raises(DimensionError):
            nlp.hessian_vector(X, jnp.ones(3), out=np.zeros(2))
        assert model.counters.total() == 0
        assert nlp.counters.total() == 0
        assert np.isnan(nlp.fx)
