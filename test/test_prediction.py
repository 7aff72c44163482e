"""
Tests of the state prediction from history.
"""

import math

import pytest
import numpy as np

from multiphysics.domain import DomainState, PhysicsField, PredictionMethod
from multiphysics.numerics.prediction import predict_state
from multiphysics.physics import ThermalDomain

from utilities import line


def create_state(time, values, rates=None):
    field = PhysicsField("temperature", values, line(len(values)))
    rates = {} if rates is None else {"temperature": rates}
    return DomainState("a", "thermal", time, {"temperature": field}, 1.0, np.zeros(3), rates=rates)


def values_of(state):
    return state.fields["temperature"].values


def test_empty_history():
    with pytest.raises(ValueError):
        predict_state([], 1.0, PredictionMethod.linear_extrapolation)


def test_unknown_method():
    with pytest.raises(ValueError):
        predict_state([create_state(0.0, [1.0])], 1.0, "guessing")


def test_prediction_at_latest_time_is_the_latest_state():
    history = [create_state(0.0, [1.0]), create_state(1.0, [2.0])]
    assert predict_state(history, 1.0, PredictionMethod.historical_trends) is history[-1]


def test_linear_extrapolation():
    history = [create_state(0.0, [1.0, 0.0]), create_state(1.0, [2.0, -1.0])]
    predicted = predict_state(history, 3.0, PredictionMethod.linear_extrapolation)
    np.testing.assert_allclose(values_of(predicted), [4.0, -3.0])
    np.testing.assert_allclose(predicted.rates["temperature"], [1.0, -1.0])
    assert predicted.current_time == 3.0
    # derived quantities are carried over
    assert predicted.energy == history[-1].energy


def test_linear_extrapolation_from_one_snapshot():
    with_rates = [create_state(1.0, [2.0], [0.5])]
    np.testing.assert_allclose(values_of(predict_state(with_rates, 3.0, "linear_extrapolation")), [3.0])

    without_rates = [create_state(1.0, [2.0])]
    predicted = predict_state(without_rates, 3.0, "linear_extrapolation")
    np.testing.assert_allclose(values_of(predicted), [2.0])
    assert predicted.current_time == 3.0


def test_taylor_series_is_exact_for_quadratics():
    history = [create_state(t, [t**2], [2 * t]) for t in (0.0, 1.0)]
    predicted = predict_state(history, 2.0, PredictionMethod.taylor_series)
    np.testing.assert_allclose(values_of(predicted), [4.0])
    np.testing.assert_allclose(predicted.rates["temperature"], [4.0])


def test_taylor_series_without_rates_falls_back():
    history = [create_state(0.0, [0.0]), create_state(1.0, [1.0])]
    predicted = predict_state(history, 2.0, PredictionMethod.taylor_series)
    np.testing.assert_allclose(values_of(predicted), [2.0])


def test_historical_trends_fit_a_quadratic():
    history = [create_state(t, [t**2, 1 - t**2]) for t in (0.0, 1.0, 2.0, 3.0)]
    predicted = predict_state(history, 4.0, PredictionMethod.historical_trends)
    np.testing.assert_allclose(values_of(predicted), [16.0, -15.0], atol=1e-9)
    np.testing.assert_allclose(predicted.rates["temperature"], [8.0, -8.0], atol=1e-9)


def test_historical_trends_with_short_history():
    history = [create_state(0.0, [0.0]), create_state(1.0, [1.0])]
    predicted = predict_state(history, 2.0, PredictionMethod.historical_trends)
    np.testing.assert_allclose(values_of(predicted), [2.0])


def test_physics_based_prediction_asks_the_domain():
    domain = ThermalDomain("a", line(3), 300.0, rate=2.0)
    domain._rates = np.full(3, -4.0)
    history = [domain.get_current_state()]
    predicted = predict_state(history, 0.5, PredictionMethod.physics_based, domain)
    # u + r / k * (1 - exp(-k t))
    np.testing.assert_allclose(values_of(predicted), 300.0 - 2.0 * (1 - math.exp(-1.0)))

    # without a domain, linear extrapolation with the rates
    fallback = predict_state(history, 0.5, PredictionMethod.physics_based)
    np.testing.assert_allclose(values_of(fallback), 298.0)
