"""
Tests of the interpolation in space and time.
"""

import pytest
import numpy as np

from multiphysics.domain import Discretization, DomainState, PhysicsField
from multiphysics.numerics.interpolation import TemporalInterpolator, resample

from utilities import line


def test_resample_linear_is_exact_for_linear_profiles():
    source = line(10)
    field = PhysicsField("pressure", 2.0 * source.nodes[:, 0] + 1.0, source)
    target = line(7)
    np.testing.assert_allclose(resample(field, target), 2.0 * target.nodes[:, 0] + 1.0)


def test_resample_clamps_outside_source_range():
    field = PhysicsField("pressure", [1.0, 2.0, 3.0], Discretization([0.4, 0.5, 0.6], np.full(3, 0.1)))
    target = Discretization([0.0, 0.5, 1.0], np.full(3, 1 / 3))
    np.testing.assert_allclose(resample(field, target), [1.0, 2.0, 3.0])


def test_resample_monotone_does_not_overshoot():
    source = line(12)
    values = np.where(source.nodes[:, 0] < 0.5, 0.0, 1.0)
    field = PhysicsField("concentration", values, source)
    resampled = resample(field, line(31), "monotone")
    assert np.all(resampled >= 0.0)
    assert np.all(resampled <= 1.0)


def test_resample_vector_field():
    source = line(6)
    values = np.column_stack([source.nodes[:, 0], -source.nodes[:, 0], np.ones(6)])
    field = PhysicsField("velocity", values, source)
    target = line(4)
    expected = np.column_stack([target.nodes[:, 0], -target.nodes[:, 0], np.ones(4)])
    np.testing.assert_allclose(resample(field, target), expected)


def test_resample_single_node():
    field = PhysicsField("temperature", [5.0], line(1))
    np.testing.assert_array_equal(resample(field, line(4)), np.full(4, 5.0))


def test_resample_unknown_method():
    field = PhysicsField("temperature", np.ones(3), line(3))
    with pytest.raises(ValueError):
        resample(field, line(4), "cubic")


def test_resample_scattered_nodes():
    [x, y] = np.meshgrid(np.linspace(0, 1, 5), np.linspace(0, 1, 5))
    nodes = np.column_stack([x.ravel(), y.ravel()])
    field = PhysicsField("pressure", nodes[:, 0] + 2 * nodes[:, 1], Discretization(nodes, np.full(25, 1 / 25)))

    inside = np.array([[0.3, 0.3], [0.55, 0.85], [0.9, 0.1]])
    target = Discretization(np.vstack([inside, [[1.5, 0.0]]]), np.full(4, 0.25))
    resampled = resample(field, target)
    np.testing.assert_allclose(resampled[:3], inside[:, 0] + 2 * inside[:, 1])
    # outside the hull, the nearest node
    assert resampled[3] == pytest.approx(1.0)


def create_state(time, values, rates=None):
    field = PhysicsField("temperature", values, line(len(values)))
    rates = {} if rates is None else {"temperature": rates}
    return DomainState("a", "thermal", time, {"temperature": field}, float(np.sum(values)), np.zeros(3), rates=rates)


def test_temporal_linear_interpolation():
    before = create_state(0.0, [0.0, 2.0])
    after = create_state(2.0, [2.0, 6.0])
    middle = TemporalInterpolator().interpolate(before, after, 0.5)
    np.testing.assert_allclose(middle.fields["temperature"].values, [0.5, 3.0])
    np.testing.assert_allclose(middle.rates["temperature"], [1.0, 2.0])
    assert middle.current_time == 0.5
    assert middle.energy == pytest.approx(3.5)


def test_temporal_hermite_interpolation_is_exact_for_cubics():
    def state_at(t):
        return create_state(t, [t**3, 2 * t**3], [3 * t**2, 6 * t**2])

    interpolated = TemporalInterpolator().interpolate(state_at(0.0), state_at(1.0), 0.5)
    np.testing.assert_allclose(interpolated.fields["temperature"].values, [0.125, 0.25])
    np.testing.assert_allclose(interpolated.rates["temperature"], [0.75, 1.5])


def test_temporal_endpoints_are_returned_as_is():
    before = create_state(0.0, [1.0])
    after = create_state(1.0, [2.0])
    interpolator = TemporalInterpolator()
    assert interpolator.interpolate(before, after, 0.0) is before
    assert interpolator.interpolate(before, after, 1.0 + 1e-14) is after


def test_temporal_extrapolation_is_refused():
    before = create_state(0.0, [1.0])
    after = create_state(1.0, [2.0])
    with pytest.raises(ValueError, match="extrapolation"):
        TemporalInterpolator().interpolate(before, after, 1.5)
    with pytest.raises(ValueError, match="not ordered"):
        TemporalInterpolator().interpolate(after, before, 0.5)

    extrapolated = TemporalInterpolator(allow_extrapolation=True).interpolate(before, after, 1.5)
    np.testing.assert_allclose(extrapolated.fields["temperature"].values, [2.5])
