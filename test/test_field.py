"""
Tests of the domain data: discretizations, fields and state snapshots.
"""

import dataclasses as dc

import pytest
import numpy as np

from multiphysics.domain import (
    ConservationLaw,
    CouplingData,
    Discretization,
    DomainState,
    DomainStepResult,
    InterfaceRegion,
    PhysicsField,
    count_substeps,
)

from utilities import line


def test_uniform_discretization():
    disc = Discretization.uniform(1.0, 2.0, 4)
    np.testing.assert_allclose(disc.nodes[:, 0], [1.25, 1.75, 2.25, 2.75])
    np.testing.assert_allclose(disc.weights, 0.5)
    assert disc.nb_nodes == 4
    assert disc.nb_dims == 1
    assert disc.measure == pytest.approx(2.0)


def test_discretization_rejects_mismatched_weights():
    with pytest.raises(ValueError):
        Discretization(np.zeros((3, 1)), np.ones(4))
    with pytest.raises(ValueError):
        Discretization.uniform(0.0, 1.0, 0)


def test_integrate_scalar_and_vector():
    disc = line(5)
    assert disc.integrate(np.full(5, 3.0)) == pytest.approx(3.0)
    total = disc.integrate(np.tile([1.0, -2.0, 0.5], (5, 1)))
    np.testing.assert_allclose(total, [1.0, -2.0, 0.5])


def test_identical_discretization():
    assert line(5).identical_to(line(5))
    assert not line(5).identical_to(line(6))
    assert not line(5).identical_to(line(5, origin=0.1))


def test_field_values_are_read_only():
    field = PhysicsField("temperature", np.ones(5), line(5), ConservationLaw.energy)
    with pytest.raises(ValueError):
        field.values[0] = 2.0
    assert field.total() == pytest.approx(1.0)
    assert field.mean() == pytest.approx(1.0)


def test_field_shape_must_match_nodes():
    with pytest.raises(ValueError):
        PhysicsField("temperature", np.ones(4), line(5))


def test_field_sample_at_region():
    field = PhysicsField("temperature", np.arange(10.0), line(10))
    region = InterfaceRegion("middle", (0.3,), (0.7,))
    sub = field.sample_at(region)
    np.testing.assert_array_equal(sub.indices, [3, 4, 5, 6])
    np.testing.assert_array_equal(sub.values, [3.0, 4.0, 5.0, 6.0])
    assert sub.discretization.measure == pytest.approx(0.4)
    assert field.sample_at(None) is field

    with pytest.raises(ValueError, match="no node inside"):
        field.sample_at(InterfaceRegion("outside", (2.0,), (3.0,)))


def test_field_bounds():
    field = PhysicsField("concentration", [0.0, 0.5, 1.0], line(3), lower_bound=0.0, upper_bound=1.0)
    assert not field.violates_bounds()
    assert field.with_values([-0.1, 0.5, 1.0]).violates_bounds()
    assert not field.with_values([-1e-12, 0.5, 1.0]).violates_bounds(atol=1e-9)


def create_state(values, time=0.0, **kwargs):
    field = PhysicsField("temperature", values, line(len(values)))
    return DomainState("a", "thermal", time, {"temperature": field}, 1.0, [2.0], **kwargs)


def test_state_pads_momentum_and_freezes():
    state = create_state([1.0, 2.0])
    np.testing.assert_array_equal(state.momentum, [2.0, 0.0, 0.0])
    with pytest.raises(dc.FrozenInstanceError):
        state.energy = 3.0
    with pytest.raises(TypeError):
        state.fields["other"] = None


def test_state_needs_fields():
    with pytest.raises(ValueError):
        DomainState("a", "thermal", 0.0, {}, 0.0, np.zeros(3))


def test_state_solution_vector():
    state = create_state([1.0, 2.0, 3.0], rates={"temperature": [0.1, 0.2, 0.3]})
    np.testing.assert_array_equal(state.solution_vector(), [1.0, 2.0, 3.0])

    moved = state.with_solution_vector(np.array([4.0, 5.0, 6.0]))
    np.testing.assert_array_equal(moved.fields["temperature"].values, [4.0, 5.0, 6.0])
    assert moved.energy == state.energy
    assert not moved.is_identical_to(state)
    assert state.is_identical_to(create_state([1.0, 2.0, 3.0], rates={"temperature": [0.1, 0.2, 0.3]}))

    with pytest.raises(ValueError):
        state.with_solution_vector(np.ones(4))


def test_count_substeps():
    assert count_substeps(0.0, 0.1) == 0
    assert count_substeps(0.1, 0.1) == 1
    assert count_substeps(0.3, 0.1) == 3
    assert count_substeps(0.25, 0.1) == 3
    assert count_substeps(0.01, 0.1) == 1


def test_step_result_merge():
    first = DomainStepResult("a", 0.0, 0.1, 1, {"b": 1.0}, {"b": np.ones(3)}, 0.5, np.zeros(3), 1e-3)
    second = DomainStepResult("a", 0.1, 0.3, 2, {"b": 2.0, "c": -1.0}, {}, 0.25, np.ones(3), 1e-4)
    merged = first.merge(second)
    assert merged.start_time == 0.0
    assert merged.end_time == 0.3
    assert merged.nb_substeps == 3
    assert merged.absorbed_energy == {"b": 3.0, "c": -1.0}
    np.testing.assert_array_equal(merged.absorbed_momentum["b"], np.ones(3))
    assert merged.external_energy == 0.75
    assert merged.error_estimate == 1e-3
    assert merged.duration == pytest.approx(0.3)


def test_coupling_data_collect():
    field = PhysicsField("temperature", np.ones(3), line(3))
    data = CouplingData(0.0, {"b": {"temperature": field}, "c": {}})
    assert data.collect("temperature") == {"b": field}
    assert data.collect("velocity") == {}
    assert not data.is_empty
    assert CouplingData(0.0, {"c": {}}).is_empty
