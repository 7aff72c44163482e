"""
Interpolation in space (resampling a field onto another discretization) and in time
(estimating a domain state between two snapshots). No conservation logic in this file.
"""

import logging

import numpy as np
from scipy.interpolate import CubicHermiteSpline, PchipInterpolator, griddata, make_interp_spline

from multiphysics.domain import Discretization, DomainState, PhysicsField


logger = logging.getLogger(__name__)


def resample(field: PhysicsField, target: Discretization, method: str = "linear") -> np.ndarray:
    """
    Sample the field values at the nodes of the target discretization.

    Parameters
    ----------
    field : PhysicsField
        Source field.
    target : Discretization
        Where to evaluate.
    method : str
        "linear" or "monotone". The monotone (PCHIP) variant does not overshoot the
        source values, which keeps physically bounded quantities within their bounds.

    Returns
    -------
    np.ndarray
        Values of shape (target.nb_nodes, *field.values.shape[1:]).
    """
    source = field.discretization
    values = field.values
    if source.nb_nodes == 1:
        return np.repeat(values, target.nb_nodes, axis=0)

    if source.nb_dims == 1 and target.nb_dims == 1:
        x = source.nodes[:, 0]
        order = np.argsort(x, kind="stable")
        x = x[order]
        y = values[order]
        # clamp to the source range, never extrapolate
        x_eval = np.clip(target.nodes[:, 0], x[0], x[-1])
        if method == "monotone":
            return PchipInterpolator(x, y, axis=0)(x_eval)
        elif method == "linear":
            return make_interp_spline(x, y, k=1, axis=0)(x_eval)
        else:
            raise ValueError(f"Unknown interpolation method: {method}")

    # scattered nodes in 2D / 3D
    nb_dims = min(source.nb_dims, target.nb_dims)
    points = source.nodes[:, :nb_dims]
    xi = target.nodes[:, :nb_dims]
    result = griddata(points, values, xi, method="linear")
    outside = np.isnan(result)
    if np.any(outside):
        nearest = griddata(points, values, xi, method="nearest")
        result[outside] = nearest[outside]
    return result


class TemporalInterpolator:
    """
    Estimates a domain state at an intermediate time from the two snapshots around it.

    Uses a cubic Hermite interpolant when both snapshots carry the time derivatives of a
    field, and a linear one otherwise. Extrapolation is refused unless explicitly allowed.
    """

    allow_extrapolation: bool
    time_tolerance: float

    def __init__(self, allow_extrapolation: bool = False, time_tolerance: float = 1e-12):
        self.allow_extrapolation = allow_extrapolation
        self.time_tolerance = time_tolerance

    def interpolate(self, before: DomainState, after: DomainState, time: float) -> DomainState:
        t0 = before.current_time
        t1 = after.current_time
        if abs(time - t0) <= self.time_tolerance:
            return before
        if abs(time - t1) <= self.time_tolerance:
            return after
        if t1 <= t0:
            raise ValueError(f"Snapshots of '{before.domain_id}' are not ordered in time: {t0} >= {t1}.")
        if not (t0 <= time <= t1) and not self.allow_extrapolation:
            raise ValueError(
                f"Time {time} is outside [{t0}, {t1}] of domain '{before.domain_id}', "
                f"which would be an extrapolation.")

        theta = (time - t0) / (t1 - t0)
        fields = {}
        rates = {}
        for name in before.field_names:
            v0 = before.fields[name].values
            v1 = after.fields[name].values
            if before.has_rates(name) and after.has_rates(name):
                spline = CubicHermiteSpline(
                    [t0, t1], np.stack([v0, v1]), np.stack([before.rates[name], after.rates[name]]), axis=0)
                fields[name] = after.fields[name].with_values(spline(time))
                rates[name] = spline(time, 1)
            else:
                fields[name] = after.fields[name].with_values((1 - theta) * v0 + theta * v1)
                rates[name] = (v1 - v0) / (t1 - t0)

        return DomainState(
            domain_id=after.domain_id,
            kind=after.kind,
            current_time=time,
            fields=fields,
            energy=(1 - theta) * before.energy + theta * after.energy,
            momentum=(1 - theta) * before.momentum + theta * after.momentum,
            rates=rates,
            energy_forms={
                k: (1 - theta) * before.energy_forms.get(k, 0.0) + theta * v for [k, v] in after.energy_forms.items()},
            capacities=after.capacities,
            stiffness=after.stiffness,
            step_index=before.step_index,
        )
