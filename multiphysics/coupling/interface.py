"""
Transferring fields from one domain onto the discretization of another.

The manager only computes payloads; the target domain receives them explicitly.
"""

import dataclasses as dc
import logging
from typing import Callable

import numpy as np
import scipy.optimize

from multiphysics.domain import ConservationLaw, Discretization, DomainState, FieldCollection, InterfaceRegion, PhysicsField
from multiphysics.errors import ConservationViolation
from multiphysics.numerics.interpolation import resample
from .pair import MappingStrategy, SpatialContext, TransferSpec


logger = logging.getLogger(__name__)


HigherOrderCorrection = Callable[[np.ndarray, np.ndarray, float, float | None, float | None], np.ndarray]
"""(values, weights, target_total, lower_bound, upper_bound) -> corrected values"""


def redistribute_with_bounds(values: np.ndarray, weights: np.ndarray, target_total: float,
                             lower_bound: float | None = None, upper_bound: float | None = None) -> np.ndarray:
    """
    Additive correction: shift all values by the same amount, clipped to the bounds, so that
    the weighted sum hits the target. Nodes stuck at a bound take no share of the shift.
    """
    total_weight = float(np.sum(weights))
    if total_weight <= 0:
        return values
    shift = (target_total - float(weights @ values)) / total_weight
    if lower_bound is None and upper_bound is None:
        return values + shift

    def clipped_total(s):
        return float(weights @ np.clip(values + s, lower_bound, upper_bound)) - target_total

    a = lower_bound - np.max(values) if lower_bound is not None else min(0.0, shift)
    b = upper_bound - np.min(values) if upper_bound is not None else max(0.0, shift)
    if clipped_total(a) > 0 or clipped_total(b) < 0:
        # the bounds cannot accommodate the target total
        return np.clip(values + (a if clipped_total(a) > 0 else b), lower_bound, upper_bound)
    shift = scipy.optimize.brentq(clipped_total, a, b, xtol=1e-14)
    result = np.clip(values + shift, lower_bound, upper_bound)

    # remove the bisection error on the nodes away from the bounds
    free = np.ones(result.shape, dtype=bool)
    if lower_bound is not None:
        free &= result > lower_bound
    if upper_bound is not None:
        free &= result < upper_bound
    free_weight = float(np.sum(weights[free]))
    if free_weight > 0:
        result[free] += (target_total - float(weights @ result)) / free_weight
        result = np.clip(result, lower_bound, upper_bound)
    return result


@dc.dataclass
class FieldTransferRecord:
    name: str
    strategy: MappingStrategy
    source_total: float | np.ndarray
    mapped_total: float | np.ndarray
    relative_error: float
    corrections: list[str] = dc.field(default_factory=list)
    """correction stages that were needed, e.g. rescale, redistribute"""


@dc.dataclass
class FieldTransferResult:
    source: str
    target: str
    fields: FieldCollection
    """living on the target nodes, `support` pointing into the target domain"""
    records: list[FieldTransferRecord]

    @property
    def max_relative_error(self) -> float:
        return max((r.relative_error for r in self.records), default=0.0)


def _clip(values, lower, upper):
    if lower is None and upper is None:
        return values
    return np.clip(values, lower, upper)


def _relative_error(mapped: float, source: float, scale: float) -> float:
    if abs(source) > 0:
        return abs(mapped - source) / abs(source)
    return abs(mapped - source) / max(scale, np.finfo(float).tiny)


class CouplingInterfaceManager:
    """
    Maps fields across interfaces.

    The strategy is either declared in the transfer spec or selected from the field's
    conservation law and the two discretizations. Conservation preserving transfers are
    corrected by a rescaling first, and by a higher-order correction registered per
    conservation law if the rescaling is not enough.
    """

    corrections: dict[ConservationLaw, HigherOrderCorrection]

    def __init__(self, corrections: dict[ConservationLaw, HigherOrderCorrection] | None = None):
        self.corrections = {}
        for [law, routine] in (corrections or {}).items():
            self.register_correction(law, routine)

    def register_correction(self, law: ConservationLaw, routine: HigherOrderCorrection):
        self.corrections[ConservationLaw(law)] = routine

    @staticmethod
    def select_strategy(field: PhysicsField, target: Discretization, spec: TransferSpec) -> MappingStrategy:
        if spec.strategy != MappingStrategy.auto:
            return spec.strategy
        if field.discretization.identical_to(target):
            return MappingStrategy.direct_transfer
        if field.conservation_law is None:
            return MappingStrategy.interpolation_based
        bounded = (field.lower_bound, field.upper_bound, spec.lower_bound, spec.upper_bound)
        if any(bound is not None for bound in bounded):
            return MappingStrategy.physics_aware
        return MappingStrategy.conservation_preserving

    def transfer_fields(self, source: DomainState, target: DomainState, spec: TransferSpec,
                        region: str | InterfaceRegion | None = None,
                        spatial_context: SpatialContext | None = None) -> FieldTransferResult:
        """
        Map `spec.fields` of the source state onto the target nodes inside the region.

        Raises
        ------
        ConservationViolation
            When a conserved field total cannot be met within `spec.tolerance`.
        ValueError
            For a missing field, an empty region or a direct transfer between different
            discretizations.
        """
        if isinstance(region, str):
            if spatial_context is None:
                raise ValueError(f"Region '{region}' needs a spatial context to be resolved.")
            region = spatial_context.resolve(region)

        target_disc = target.discretization
        if region is None:
            target_nodes = np.arange(target_disc.nb_nodes)
            target_sub = target_disc
        else:
            mask = region.contains(target_disc.nodes)
            if not np.any(mask):
                raise ValueError(f"Domain '{target.domain_id}' has no node inside region '{region.name}'.")
            target_nodes = np.flatnonzero(mask)
            target_sub = target_disc.restrict(mask)

        fields = {}
        records = []
        for name in spec.fields:
            if name not in source.fields:
                raise ValueError(f"Domain '{source.domain_id}' has no field '{name}'.")
            field = source.fields[name].sample_at(region)
            strategy = self.select_strategy(field, target_sub, spec)
            [values, record] = self._map(field, target_sub, strategy, spec, source.domain_id, target.domain_id)
            fields[name] = PhysicsField(
                name, values, target_sub, field.conservation_law, field.lower_bound, field.upper_bound,
                support=target_nodes)
            records.append(record)
            logger.debug(f"Transferred '{name}' {source.domain_id} -> {target.domain_id} by {strategy}, "
                         f"relative error {record.relative_error:.1e}.")

        return FieldTransferResult(source.domain_id, target.domain_id, fields, records)

    def _map(self, field: PhysicsField, target: Discretization, strategy: MappingStrategy, spec: TransferSpec,
             source_id: str, target_id: str):
        source_total = field.total()
        if strategy == MappingStrategy.direct_transfer:
            if not field.discretization.identical_to(target):
                raise ValueError(
                    f"Direct transfer of '{field.name}' from '{source_id}' to '{target_id}' "
                    f"needs identical discretizations.")
            values = np.array(field.values)
            return values, FieldTransferRecord(field.name, strategy, source_total, target.integrate(values), 0.0)

        if strategy == MappingStrategy.interpolation_based:
            values = resample(field, target, "linear")
            mapped_total = target.integrate(values)
            scale = field.discretization.integrate(np.abs(field.values))
            error = max(_relative_error(float(m), float(s), float(c)) for [m, s, c] in zip(
                np.atleast_1d(mapped_total), np.atleast_1d(source_total), np.atleast_1d(scale)))
            return values, FieldTransferRecord(field.name, strategy, source_total, mapped_total, error)

        if strategy == MappingStrategy.physics_aware:
            lower = spec.lower_bound if spec.lower_bound is not None else field.lower_bound
            upper = spec.upper_bound if spec.upper_bound is not None else field.upper_bound
            values = _clip(resample(field, target, "monotone"), lower, upper)
        elif strategy == MappingStrategy.conservation_preserving:
            lower = None
            upper = None
            values = resample(field, target, "linear")
        else:
            raise ValueError(f"Unknown mapping strategy: {strategy}")

        corrections = []
        # each component of a vector field is conserved on its own
        columns = values.reshape(values.shape[0], -1)
        source_columns = np.atleast_1d(source_total)
        abs_scales = np.atleast_1d(field.discretization.integrate(np.abs(field.values)))
        errors = []
        for j in range(columns.shape[1]):
            column = columns[:, j]
            s = float(source_columns[j])
            scale = float(abs_scales[j])
            m = float(target.weights @ column)
            if _relative_error(m, s, scale) > spec.tolerance and m != 0:
                column = _clip(column * (s / m), lower, upper)
                corrections.append("rescale")
                m = float(target.weights @ column)
            if _relative_error(m, s, scale) > spec.tolerance:
                law = field.conservation_law
                routine = self.corrections.get(law, redistribute_with_bounds) if law is not None \
                    else redistribute_with_bounds
                column = routine(column, target.weights, s, lower, upper)
                corrections.append("redistribute")
                m = float(target.weights @ column)
            error = _relative_error(m, s, scale)
            if error > spec.tolerance:
                raise ConservationViolation(
                    f"Transfer of '{field.name}' from '{source_id}' to '{target_id}' misses its total "
                    f"by a relative {error:.1e} after correction.",
                    quantity=str(field.conservation_law or field.name), residual=abs(m - s))
            columns[:, j] = column
            errors.append(error)

        values = columns.reshape(values.shape)
        record = FieldTransferRecord(
            field.name, strategy, source_total, target.integrate(values), max(errors, default=0.0), corrections)
        return values, record
