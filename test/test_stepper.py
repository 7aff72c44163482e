"""
Tests of the multi-rate time stepping.
"""

import math

import pytest
import numpy as np

from multiphysics.coupling import CouplingInterfaceManager, CouplingPair, TransferSpec
from multiphysics.physics import SignalDomain, ThermalDomain
from multiphysics.simulation import (
    MultiScaleTimeStepper,
    StateHistory,
    SteppingStrategy,
    StepContext,
    SynchronizationSchedule,
)

from utilities import both_ways, line


def create_context(domains, pairs):
    return StepContext({d.domain_id: d for d in domains}, pairs, CouplingInterfaceManager(), StateHistory())


def thermal_pair(natural_time_step=0.05, **kwargs):
    domains = [
        ThermalDomain("a", line(5), 400.0, natural_time_step=natural_time_step, **kwargs),
        ThermalDomain("b", line(5), 300.0, natural_time_step=natural_time_step, rate=3.0),
    ]
    return domains, both_ways("a", "b", "temperature")


def test_sub_cycling_with_equal_ratios_is_uniform_stepping():
    results = {}
    for strategy in (SteppingStrategy.uniform, SteppingStrategy.sub_cycling):
        context = create_context(*thermal_pair())
        stepper = MultiScaleTimeStepper(strategy)
        for target_time in (0.1, 0.2, 0.3):
            stepper.advance_simulation_time(context, target_time)
        results[strategy] = context.states()

    for domain_id in ("a", "b"):
        uniform = results[SteppingStrategy.uniform][domain_id]
        sub_cycled = results[SteppingStrategy.sub_cycling][domain_id]
        np.testing.assert_allclose(
            uniform.fields["temperature"].values, sub_cycled.fields["temperature"].values, rtol=1e-12)
        assert uniform.current_time == sub_cycled.current_time == 0.3


def test_single_domain_with_ratio_one_is_uniform_stepping():
    results = {}
    for strategy in (SteppingStrategy.uniform, SteppingStrategy.sub_cycling):
        domain = ThermalDomain("a", line(5), 400.0, ambient=250.0, natural_time_step=0.1)
        context = create_context([domain], [])
        stepper = MultiScaleTimeStepper(strategy, ratios={"a": 1})
        for target_time in (0.1, 0.2):
            result = stepper.advance_simulation_time(context, target_time)
            assert result.ratios == {"a": 1}
        results[strategy] = context.state("a")

    uniform = results[SteppingStrategy.uniform]
    sub_cycled = results[SteppingStrategy.sub_cycling]
    np.testing.assert_array_equal(uniform.fields["temperature"].values, sub_cycled.fields["temperature"].values)
    assert uniform.current_time == sub_cycled.current_time == 0.2
    assert uniform.energy == sub_cycled.energy


def test_multi_rate_coupling_is_interpolated_in_time():
    def signal(t):
        return 2.0 + math.sin(t)

    fast = ThermalDomain("fast", line(4), 2.0, natural_time_step=1e-3, record_coupling=True)
    slow = SignalDomain("slow", line(4), signal, math.cos, natural_time_step=0.1)
    pairs = [CouplingPair("slow", "fast", TransferSpec(("temperature",)))]
    context = create_context([fast, slow], pairs)

    stepper = MultiScaleTimeStepper(SteppingStrategy.sub_cycling, ratios={"fast": 100})
    result = stepper.advance_simulation_time(context, 0.1)

    assert result.ratios == {"fast": 100, "slow": 1}
    assert fast.get_current_time() == 0.1
    assert slow.get_current_time() == 0.1
    assert len(fast.coupling_log) == 100
    for [time, values] in fast.coupling_log:
        np.testing.assert_allclose(values["slow"], signal(time), rtol=1e-6)
    assert fast.coupling_log[-1][0] == 0.1


def test_last_substep_lands_on_the_target():
    context = create_context(*thermal_pair(natural_time_step=0.03))
    result = MultiScaleTimeStepper(SteppingStrategy.uniform).advance_simulation_time(context, 0.1)
    assert result.ratios == {"a": 4, "b": 4}
    assert context.time("a") == 0.1
    assert context.time("b") == 0.1


def test_synchronization_points_split_the_step():
    schedule = SynchronizationSchedule([0.05])
    context = create_context(*thermal_pair(natural_time_step=0.01))
    stepper = MultiScaleTimeStepper(SteppingStrategy.sub_cycling, schedule=schedule)
    result = stepper.advance_simulation_time(context, 0.1)

    assert len(result.synchronizations) == 1
    assert result.synchronizations[0].target_time == 0.05
    assert result.synchronizations[0].is_converged
    assert result.ratios == {"a": 10, "b": 10}
    assert context.time("a") == context.time("b") == 0.1
    # the stepper only reads the schedule
    assert not schedule.points[0].satisfied


def test_synchronization_point_splits_one_substep():
    schedule = SynchronizationSchedule([0.04])
    context = create_context(*thermal_pair(natural_time_step=0.1, record_coupling=True))
    stepper = MultiScaleTimeStepper(SteppingStrategy.sub_cycling, ratios={"a": 4, "b": 1}, schedule=schedule)
    result = stepper.advance_simulation_time(context, 0.1)

    # the grid of a keeps its four sub-steps, the one holding the point is cut in two
    assert result.ratios == {"a": 4, "b": 1}
    assert result.domain_results["a"].nb_substeps == 5
    assert result.domain_results["b"].nb_substeps == 2
    times = [time for [time, _] in context.domain("a").coupling_log]
    np.testing.assert_allclose(times, [0.025, 0.04, 0.05, 0.075, 0.1])
    assert context.time("a") == context.time("b") == 0.1


def test_synchronization_point_on_the_grid_keeps_the_substeps():
    schedule = SynchronizationSchedule([0.05])
    context = create_context(*thermal_pair(natural_time_step=0.1))
    stepper = MultiScaleTimeStepper(SteppingStrategy.sub_cycling, ratios={"a": 4, "b": 1}, schedule=schedule)
    result = stepper.advance_simulation_time(context, 0.1)

    assert result.ratios == {"a": 4, "b": 1}
    assert result.domain_results["a"].nb_substeps == 4
    assert len(result.synchronizations) == 1
    assert result.synchronizations[0].is_converged


def test_adaptive_multirate_adapts_ratios():
    context = create_context(*thermal_pair(natural_time_step=0.05))
    stepper = MultiScaleTimeStepper(SteppingStrategy.adaptive_multirate, error_tolerance=1e-3, max_ratio=64)
    stepper.advance_simulation_time(context, 0.1)
    assert set(stepper.adapted_ratios) == {"a", "b"}
    assert all(1 <= r <= 64 for r in stepper.adapted_ratios.values())
    # the faster relaxing domain has the larger error, so the larger ratio
    assert stepper.adapted_ratios["b"] >= stepper.adapted_ratios["a"]

    expected = dict(stepper.adapted_ratios)
    result = stepper.advance_simulation_time(context, 0.2)
    assert result.ratios == expected
    assert context.time("a") == context.time("b") == 0.2


def test_implicit_explicit_splitting():
    context = create_context(*thermal_pair(natural_time_step=0.05, stiff=True))
    result = MultiScaleTimeStepper(SteppingStrategy.implicit_explicit).advance_simulation_time(context, 0.1)
    assert result.implicit_status is not None
    assert result.implicit_status.is_converged
    assert result.ratios == {"b": 2, "a": 1}
    assert context.time("a") == pytest.approx(0.1)
    assert context.time("b") == 0.1


def test_domain_past_the_target():
    domains = [ThermalDomain("a", line(3), 1.0, start_time=0.5)]
    context = create_context(domains, [])
    with pytest.raises(ValueError, match="past"):
        MultiScaleTimeStepper().advance_simulation_time(context, 0.1)


def test_invalid_ratios():
    with pytest.raises(ValueError):
        MultiScaleTimeStepper(ratios={"a": 0})
    with pytest.raises(ValueError):
        MultiScaleTimeStepper(max_ratio=0)
