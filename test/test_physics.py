"""
Tests of the reference physics domains.
"""

import math

import pytest
import numpy as np

from multiphysics.coupling import TransferSpec
from multiphysics.domain import CouplingData, PhysicsField
from multiphysics.physics import ChemicalDomain, FlowDomain, SignalDomain, ThermalDomain, create_domain

from utilities import line


def coupling_from(source, values, disc, name="temperature", time=0.0, support=None):
    field = PhysicsField(name, values, disc, support=support)
    return CouplingData(time, {source: {name: field}})


def test_thermal_relaxation_is_exact():
    disc = line(4)
    domain = ThermalDomain("a", disc, 300.0, rate=2.0, capacity=3.0)
    data = coupling_from("b", np.full(4, 400.0), disc)
    result = domain.advance_time_step(0.1, data)

    alpha = 1 - math.exp(-0.2)
    state = domain.get_current_state()
    np.testing.assert_allclose(state.fields["temperature"].values, 300.0 + 100.0 * alpha)
    assert state.current_time == pytest.approx(0.1)
    assert state.step_index == 1
    # everything absorbed is attributed to the partner
    assert result.absorbed_energy["b"] == pytest.approx(3.0 * 100.0 * alpha)
    assert state.energy == pytest.approx(3.0 * (300.0 + 100.0 * alpha))


def test_partners_share_a_node():
    disc = line(2)
    domain = ThermalDomain("a", disc, 0.0, rate=1.0)
    data = CouplingData(0.0, {
        "b": {"temperature": PhysicsField("temperature", np.full(2, 10.0), disc)},
        "c": {"temperature": PhysicsField("temperature", [20.0], line(1), support=[1])},
    })
    result = domain.advance_time_step(0.5, data)

    alpha = 1 - math.exp(-0.5)
    values = domain.get_current_state().fields["temperature"].values
    np.testing.assert_allclose(values, [10.0 * alpha, 15.0 * alpha])
    assert result.absorbed_energy["b"] == pytest.approx(0.5 * (10.0 * alpha + 5.0 * alpha))
    assert result.absorbed_energy["c"] == pytest.approx(0.5 * 10.0 * alpha)


def test_ambient_is_an_external_source():
    disc = line(4)
    domain = ThermalDomain("a", disc, 300.0, ambient=250.0)
    data = coupling_from("b", [400.0, 400.0], line(2), support=[0, 1])
    result = domain.advance_time_step(0.1, data)

    alpha = 1 - math.exp(-0.1)
    values = domain.get_current_state().fields["temperature"].values
    np.testing.assert_allclose(values, [300 + 100 * alpha] * 2 + [300 - 50 * alpha] * 2)
    assert result.external_energy == pytest.approx(0.5 * -50.0 * alpha)
    assert result.absorbed_energy["b"] == pytest.approx(0.5 * 100.0 * alpha)


def test_advance_to_time_lands_exactly():
    domain = ThermalDomain("a", line(3), 300.0, natural_time_step=0.03)
    result = domain.advance_to_time_with_coupling(0.1, coupling_from("b", np.full(3, 310.0), line(3)))
    assert domain.get_current_time() == 0.1
    assert result.nb_substeps == 4
    assert result.end_time == 0.1
    assert result.start_time == 0.0

    idle = domain.advance_to_time_with_coupling(0.1, None)
    assert idle.nb_substeps == 0
    with pytest.raises(ValueError):
        domain.advance_to_time_with_coupling(0.05, None)


def test_substeps_match_one_step_with_frozen_partner():
    disc = line(3)
    data = coupling_from("b", np.full(3, 400.0), disc)
    one = ThermalDomain("a", disc, 300.0, natural_time_step=1.0)
    many = ThermalDomain("a", disc, 300.0, natural_time_step=0.01)
    one.advance_to_time_with_coupling(0.2, data)
    many.advance_to_time_with_coupling(0.2, data)
    np.testing.assert_allclose(
        many.get_current_state().fields["temperature"].values,
        one.get_current_state().fields["temperature"].values, rtol=1e-12)


def test_trial_and_finalize():
    disc = line(3)
    domain = ThermalDomain("a", disc, 300.0)
    before = domain.get_current_state()
    trial = domain.update_with_coupled_solution(0.1, coupling_from("b", np.full(3, 400.0), disc))
    assert domain.get_current_state().is_identical_to(before)
    assert trial.current_time == pytest.approx(0.1)

    with pytest.raises(ValueError, match="did not compute"):
        domain.finalize_step_with_solution(before)
    domain.finalize_step_with_solution(trial)
    assert domain.get_current_state().is_identical_to(trial)


def test_restore_state_is_exact():
    domain = FlowDomain("fluid", line(5), [1.0, 0.5, 0.0], internal_energy=2.0)
    before = domain.get_current_state()
    domain.advance_time_step(0.1, coupling_from("plate", np.zeros((5, 3)), line(5), "velocity"))
    assert not domain.get_current_state().is_identical_to(before)
    domain.restore_state(before)
    assert domain.get_current_state().is_identical_to(before)


def test_restore_state_forgets_undone_coupling():
    disc = line(3)
    domain = ThermalDomain("a", disc, 300.0, record_coupling=True)
    before = domain.get_current_state()
    domain.advance_time_step(0.1, coupling_from("b", np.full(3, 400.0), disc, time=0.1))
    middle = domain.get_current_state()
    domain.advance_time_step(0.1, coupling_from("b", np.full(3, 410.0), disc, time=0.2))
    assert [time for [time, _] in domain.coupling_log] == [0.1, 0.2]

    domain.restore_state(middle)
    assert [time for [time, _] in domain.coupling_log] == [0.1]
    np.testing.assert_equal(domain.coupling_log[0][1]["b"], 400.0)
    domain.restore_state(before)
    assert domain.coupling_log == []


def test_flow_exchange_keeps_energy_forms_consistent():
    disc = line(5)
    domain = FlowDomain("fluid", disc, [1.0, 0.0, 0.0], capacity=2.0)
    result = domain.advance_time_step(0.1, coupling_from("plate", np.zeros((5, 3)), disc, "velocity"))
    state = domain.get_current_state()
    assert sum(state.energy_forms.values()) == pytest.approx(state.energy)
    # energy lost by the fluid is what it gave away
    assert state.energy - 1.0 == pytest.approx(result.absorbed_energy["plate"])
    np.testing.assert_allclose(state.momentum - [2.0, 0.0, 0.0], result.absorbed_momentum["plate"])
    # dissipation heats the fluid
    assert state.energy_forms["internal"] > 0


def test_flow_momentum_correction_is_energy_neutral():
    domain = FlowDomain("fluid", line(4), [1.0, 0.0, 0.0], capacity=2.0, internal_energy=5.0)
    energy = domain.calculate_total_energy()
    record = domain.apply_momentum_correction(np.array([0.5, 0.0, -1.0]))
    np.testing.assert_allclose(record.applied, [0.5, 0.0, -1.0])
    np.testing.assert_allclose(domain.calculate_total_momentum(), [2.5, 0.0, -1.0])
    assert domain.calculate_total_energy() == pytest.approx(energy)


def test_thermal_energy_correction_respects_lower_bound():
    domain = ThermalDomain("a", line(2), [1.0, 3.0], capacity=2.0)
    record = domain.apply_energy_correction(-10.0)
    np.testing.assert_allclose(domain.get_current_state().fields["temperature"].values, [0.0, 2.0])
    assert record.requested == -10.0
    assert record.applied == pytest.approx(-2.0)

    record = domain.apply_momentum_correction(np.ones(3))
    np.testing.assert_array_equal(record.applied, 0.0)


def test_received_fields_are_used_without_coupling_data():
    disc = line(3)
    domain = ChemicalDomain("c", disc, 1.0)
    field = PhysicsField("concentration", np.full(3, 2.0), disc)
    domain.receive_transferred_fields({"concentration": field}, TransferSpec("concentration", source="r"))
    assert list(domain.received.fields) == ["r"]
    domain.advance_time_step(0.1, None)
    np.testing.assert_allclose(domain.get_current_state().fields["concentration"].values, 2 - math.exp(-0.1))

    with pytest.raises(ValueError, match="does not fit"):
        domain.receive_transferred_fields(
            {"concentration": PhysicsField("concentration", [1.0], line(1), support=[7])}, None)


def test_stiffness():
    assert not ThermalDomain("a", line(2), 1.0, rate=10.0, natural_time_step=0.1).is_stiff
    assert ThermalDomain("a", line(2), 1.0, rate=100.0, natural_time_step=0.1).is_stiff
    assert ThermalDomain("a", line(2), 1.0, stiff=True).is_stiff


def test_invalid_domain_parameters():
    with pytest.raises(ValueError):
        ThermalDomain("a", line(2), 1.0, natural_time_step=0.0)
    with pytest.raises(ValueError):
        ThermalDomain("a", line(2), 1.0, rate=-1.0)


def test_signal_domain():
    domain = SignalDomain("s", line(2), math.sin, math.cos, natural_time_step=0.1)
    result = domain.advance_to_time_with_coupling(0.35, None)
    state = domain.get_current_state()
    assert result.nb_substeps == 4
    np.testing.assert_allclose(state.fields["temperature"].values, math.sin(0.35))
    np.testing.assert_allclose(state.rates["temperature"], math.cos(0.35))
    assert state.energy == 0.0
    assert domain.predict_state(0.5).fields["temperature"].values[0] == pytest.approx(math.sin(0.5))


def test_create_domain():
    domain = create_domain("structural", "plate", line(3), [0.0, 1.0, 0.0], capacity=4.0)
    assert isinstance(domain, FlowDomain)
    assert domain.kind == "structural"
    np.testing.assert_allclose(domain.calculate_total_momentum(), [0.0, 4.0, 0.0])

    assert isinstance(create_domain("thermal", "a", line(3), 300.0), ThermalDomain)
    with pytest.raises(ValueError, match="Unknown domain kind"):
        create_domain("acoustic", "x", line(3), 0.0)
