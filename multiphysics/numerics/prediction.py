"""
Predicting a domain state at a future time from its history of snapshots.

Predictions are only coupling estimates: the field values are extrapolated, the derived
quantities (energy, momentum) are carried over from the latest snapshot.
"""

import dataclasses as dc
import logging
from typing import Sequence

import numpy as np

from multiphysics.domain import DomainState, PhysicsDomain, PredictionMethod


logger = logging.getLogger(__name__)

max_trend_points = 5
max_trend_degree = 2


def _replace_values(state: DomainState, time: float, values: dict[str, np.ndarray],
                    rates: dict[str, np.ndarray]) -> DomainState:
    fields = {name: state.fields[name].with_values(values[name]) for name in state.field_names}
    return dc.replace(state, current_time=time, fields=fields, rates=rates)


def _linear(history: Sequence[DomainState], time: float) -> DomainState:
    last = history[-1]
    if len(history) < 2 or history[-1].current_time == history[-2].current_time:
        if not last.rates:
            return dc.replace(last, current_time=time)
        tau = time - last.current_time
        values = {name: last.fields[name].values + tau * last.rates[name] if last.has_rates(name)
                  else last.fields[name].values for name in last.field_names}
        return _replace_values(last, time, values, dict(last.rates))
    prev = history[-2]
    slope = {name: (last.fields[name].values - prev.fields[name].values) / (last.current_time - prev.current_time)
             for name in last.field_names}
    tau = time - last.current_time
    values = {name: last.fields[name].values + tau * slope[name] for name in last.field_names}
    return _replace_values(last, time, values, slope)


def _taylor(history: Sequence[DomainState], time: float) -> DomainState:
    last = history[-1]
    if not all(last.has_rates(name) for name in last.field_names):
        return _linear(history, time)
    tau = time - last.current_time
    values = {}
    rates = {}
    for name in last.field_names:
        first = last.rates[name]
        second = np.zeros_like(first)
        if len(history) >= 2 and history[-2].has_rates(name):
            prev = history[-2]
            dt = last.current_time - prev.current_time
            if dt > 0:
                second = (first - prev.rates[name]) / dt
        values[name] = last.fields[name].values + tau * first + 0.5 * tau**2 * second
        rates[name] = first + tau * second
    return _replace_values(last, time, values, rates)


def _trend(history: Sequence[DomainState], time: float) -> DomainState:
    """Least-squares polynomial through the latest snapshots."""
    points = list(history)[-max_trend_points:]
    if len(points) < 3:
        return _linear(history, time)
    last = points[-1]
    times = np.array([s.current_time for s in points])
    degree = min(max_trend_degree, len(points) - 1)
    values = {}
    rates = {}
    for name in last.field_names:
        shape = last.fields[name].values.shape
        samples = np.stack([s.fields[name].values.reshape(-1) for s in points])
        coefficients = np.polyfit(times - times[-1], samples, degree)
        tau = time - times[-1]
        powers = tau ** np.arange(degree, -1, -1)
        d_powers = np.array([(degree - i) * tau ** max(degree - i - 1, 0) for i in range(degree + 1)])
        values[name] = (powers @ coefficients).reshape(shape)
        rates[name] = (d_powers @ coefficients).reshape(shape)
    return _replace_values(last, time, values, rates)


def predict_state(history: Sequence[DomainState], target_time: float, method: PredictionMethod,
                  domain: PhysicsDomain | None = None) -> DomainState:
    """
    Predict the state of a domain at `target_time`.

    Parameters
    ----------
    history : Sequence[DomainState]
        Committed snapshots in chronological order, the latest last.
    target_time : float
        Where to predict.
    method : PredictionMethod
        How to extrapolate.
    domain : PhysicsDomain, optional
        Asked for its own prediction when the method is physics based. Falls back to
        linear extrapolation when the domain has none.
    """
    if not len(history):
        raise ValueError("Cannot predict without any snapshot.")
    method = PredictionMethod(method)
    if target_time == history[-1].current_time:
        return history[-1]

    if method == PredictionMethod.linear_extrapolation:
        return _linear(history, target_time)
    elif method == PredictionMethod.taylor_series:
        return _taylor(history, target_time)
    elif method == PredictionMethod.historical_trends:
        return _trend(history, target_time)
    elif method == PredictionMethod.physics_based:
        predicted = domain.predict_state(target_time) if domain is not None else None
        if predicted is None:
            logger.debug(f"No physics-based prediction for '{history[-1].domain_id}', extrapolating linearly.")
            return _linear(history, target_time)
        return predicted
    else:
        raise ValueError(f"Unknown prediction method: {method}")
