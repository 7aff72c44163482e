import pytest
import numpy as np

from multiphysics.numerics.fixed_point import FixedPointIteration


def test_converges_on_a_contraction():
    solver = FixedPointIteration(max_iterations=100, tolerance=1e-10)
    result = solver.solve(lambda x: 0.5 * x + 1.0, np.zeros(3))
    assert result.is_converged
    assert not result.reached_iter_limit
    np.testing.assert_allclose(result.solution, 2.0, atol=1e-9)
    assert len(result.residuals) == result.nb_iterations
    assert all(b < a for [a, b] in zip(result.residuals[:-1], result.residuals[1:]))


def test_relaxation():
    # x + 0.5 * (G(x) - x) lands on the fixed point of G(x) = -x at once, the second sweep confirms it
    solver = FixedPointIteration(max_iterations=5, tolerance=1e-12, relaxation=0.5)
    result = solver.solve(lambda x: -x, np.array([1.0, -2.0]))
    assert result.is_converged
    assert result.nb_iterations == 2
    np.testing.assert_array_equal(result.solution, 0.0)


def test_iteration_limit():
    solver = FixedPointIteration(max_iterations=3)
    result = solver.solve(lambda x: x + 1.0, np.zeros(2))
    assert not result.is_converged
    assert result.reached_iter_limit
    assert result.nb_iterations == 3
    assert len(result.residuals) == 3


def test_stops_on_non_finite_residual():
    solver = FixedPointIteration(max_iterations=10)
    result = solver.solve(lambda x: x + np.inf, np.zeros(2))
    assert not result.is_converged
    assert not result.reached_iter_limit
    assert result.nb_iterations == 1


@pytest.mark.parametrize("kwargs", [
    {"max_iterations": 0},
    {"tolerance": 0.0},
    {"relaxation": 0.0},
    {"relaxation": 1.5},
])
def test_invalid_parameters(kwargs):
    with pytest.raises(ValueError):
        FixedPointIteration(**kwargs)
