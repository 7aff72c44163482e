"""
Auditing and correcting the conservation of energy and momentum across a coupled step.

An enforcer compares the system total after a step with what the ledger expects, attributes
every change of a domain to the coupling operations that caused it, and plans corrections
for what cannot be attributed. The domains are only corrected by the manager; the enforcer
then verifies how effective the corrections were.
"""

import abc
import dataclasses as dc
import logging
import sys
if sys.version_info >= (3, 11):
    from enum import StrEnum
else:
    from backports.strenum import StrEnum

import numpy as np

from multiphysics.domain import ConservationLaw, CorrectionRecord, DomainKind, DomainState
from multiphysics.errors import MissingViolationInfo
from .ledger import ConservationLedger, LedgerEntry
from .pair import TransferMechanism


logger = logging.getLogger(__name__)


EXTERNAL_SOURCE = "external"
"""source id of the declared external sources / sinks"""


@dc.dataclass
class CouplingOperation:
    """One delivery of coupling data from a source to a target over [time, time + dt]."""

    source: str
    target: str
    time: float
    dt: float
    mechanism: TransferMechanism | None = None
    coefficient: float = 1.0
    area: float = 1.0
    source_mean: float | np.ndarray | None = None
    """mean of the delivered field over the interface"""
    target_mean: float | np.ndarray | None = None
    """mean of the target's own field over the interface"""
    realized_energy: float = 0.0
    """energy the target actually absorbed from this delivery"""
    realized_momentum: np.ndarray = dc.field(default_factory=lambda: np.zeros(3))

    @property
    def is_external(self) -> bool:
        return self.source == EXTERNAL_SOURCE


class ViolationKind(StrEnum):
    total_drift = "total_drift"
    interface_imbalance = "interface_imbalance"
    unphysical_creation = "unphysical_creation"
    form_imbalance = "form_imbalance"


class CorrectionStrategy(StrEnum):
    source_adjustment = "source_adjustment"
    target_adjustment = "target_adjustment"
    proportional_split = "proportional_split"
    mass_weighted = "mass_weighted"
    coupling_based = "coupling_based"


@dc.dataclass
class Violation:
    kind: ViolationKind
    quantity: ConservationLaw
    amount: float | np.ndarray | None
    """the excess, i.e. what a correction has to remove"""
    magnitude: float
    domains: tuple[str, ...]
    """for an interface, (source, target)"""
    correctable: bool = True
    strategy: CorrectionStrategy | None = None
    residual: float | None = None
    """magnitude after correction"""
    effectiveness: float | None = None
    resolved: bool = False

    @property
    def worsened(self) -> bool:
        """The correction made it worse. Reported on its own, neither accepted nor reverted."""
        return self.effectiveness is not None and self.effectiveness < 0


@dc.dataclass
class InterfaceAudit:
    source: str
    target: str
    mechanism: TransferMechanism | None
    theoretical: float | np.ndarray
    """first-principles estimate of what enters the target"""
    numerical: float | np.ndarray
    """what the target actually absorbed from the source"""
    leaving: float | np.ndarray
    """what actually left the source towards the target"""
    imbalance: float | np.ndarray
    """numerical - leaving, zero for a conservative exchange"""
    estimated: bool = False
    """the operations carried what a first-principles estimate needs"""
    off_estimate: bool = False
    """the conservation error exceeds the flux tolerance"""

    @property
    def conservation_error(self):
        return self.numerical - self.theoretical


@dc.dataclass
class CorrectionAction:
    domain_id: str
    amount: float | np.ndarray
    violation: int
    """index into the report's violations"""
    applied: float | np.ndarray | None = None


@dc.dataclass
class ConservationReport:
    quantity: ConservationLaw
    time: float
    tolerance: float
    scale: float
    """what relative errors are measured against"""
    domain_totals_before: dict[str, float | np.ndarray]
    domain_totals_after: dict[str, float | np.ndarray]
    expected_total: float | np.ndarray
    external: float | np.ndarray
    violations: list[Violation] = dc.field(default_factory=list)
    interfaces: list[InterfaceAudit] = dc.field(default_factory=list)
    actions: list[CorrectionAction] = dc.field(default_factory=list)
    corrected_totals: dict[str, float | np.ndarray] | None = None

    @property
    def system_total_before(self):
        return sum(self.domain_totals_before.values())

    @property
    def system_total_after(self):
        totals = self.corrected_totals if self.corrected_totals is not None else self.domain_totals_after
        return sum(totals.values())

    @property
    def drift(self):
        return self.system_total_after - self.expected_total

    @property
    def relative_drift(self) -> float:
        return float(np.linalg.norm(self.drift)) / self.scale

    @property
    def net_correction(self):
        total = 0.0
        for action in self.actions:
            if action.applied is not None:
                total = total + action.applied
        return total

    @property
    def unresolved(self) -> list[Violation]:
        return [v for v in self.violations if not v.resolved]

    @property
    def worsened(self) -> list[Violation]:
        return [v for v in self.violations if v.worsened]

    @property
    def flux_discrepancies(self) -> list[InterfaceAudit]:
        return [audit for audit in self.interfaces if audit.off_estimate]

    @property
    def is_conserved(self) -> bool:
        return not self.unresolved


def _norm(value) -> float:
    return float(np.linalg.norm(value))


class ConservationEnforcer(abc.ABC):
    """
    Audits one conserved quantity.

    Usage per step: `monitor` -> the manager applies `report.actions` -> `verify` ->
    after commit, `record`.
    """

    quantity: ConservationLaw
    strategies: tuple[CorrectionStrategy, ...]
    mechanism_precedence: tuple[tuple[DomainKind, TransferMechanism], ...]
    """the first kind present in a pair decides the mechanism"""
    inert_kinds: frozenset = frozenset()
    """kinds not carrying the quantity; pairs with them transfer nothing"""

    tolerance: float
    strategy: CorrectionStrategy
    absolute_tolerance: float
    flux_tolerance: float
    """allowed deviation of an interface from its first-principles estimate, relative to the estimate"""
    ledger: ConservationLedger | None

    def __init__(self, tolerance=1e-8, strategy=CorrectionStrategy.proportional_split, absolute_tolerance=1e-12,
                 flux_tolerance=0.1):
        if tolerance <= 0:
            raise ValueError("Conservation tolerance must be positive.")
        strategy = CorrectionStrategy(strategy)
        if strategy not in self.strategies:
            raise ValueError(f"Strategy {strategy} does not apply to {self.quantity}.")
        self.tolerance = tolerance
        self.strategy = strategy
        self.absolute_tolerance = absolute_tolerance
        self.flux_tolerance = flux_tolerance
        self.ledger = None

    # ---- per quantity ----

    @abc.abstractmethod
    def total_of(self, state: DomainState): ...

    @abc.abstractmethod
    def realized(self, op: CouplingOperation): ...

    @abc.abstractmethod
    def theoretical(self, op: CouplingOperation, mechanism: TransferMechanism | None): ...

    @abc.abstractmethod
    def zero(self): ...

    def form_violations(self, after: dict[str, DomainState], threshold: float) -> list[Violation]:
        return []

    def classify(self, source_kind: str | None, target_kind: str | None) -> TransferMechanism | None:
        kinds = {source_kind, target_kind}
        if kinds & self.inert_kinds:
            return None
        for [kind, mechanism] in self.mechanism_precedence:
            if kind in kinds:
                return mechanism
        return None

    # ---- workflow ----

    def start(self, states: dict[str, DomainState]) -> ConservationLedger:
        totals = {domain_id: self.total_of(state) for [domain_id, state] in states.items()}
        self.ledger = ConservationLedger(self.quantity, sum(totals.values(), self.zero()), totals)
        return self.ledger

    def threshold(self, scale: float) -> float:
        return max(self.tolerance * scale, self.absolute_tolerance)

    def monitor(self, before: dict[str, DomainState], after: dict[str, DomainState],
                coupling_operations: list[CouplingOperation], spatial_context=None) -> ConservationReport:
        """Find the violations of the step from `before` to `after` and plan their corrections."""
        totals_before = {domain_id: self.total_of(state) for [domain_id, state] in before.items()}
        totals_after = {domain_id: self.total_of(state) for [domain_id, state] in after.items()}
        external = sum((self.realized(op) for op in coupling_operations if op.is_external), self.zero())
        if self.ledger is not None:
            expected = self.ledger.expected_total + external
        else:
            expected = sum(totals_before.values(), self.zero()) + external
        scale = max(_norm(expected), sum(_norm(v) for v in totals_after.values()), np.finfo(float).tiny)
        threshold = self.threshold(scale)
        time = max((state.current_time for state in after.values()), default=0.0)

        report = ConservationReport(
            self.quantity, time, self.tolerance, scale, totals_before, totals_after, expected, external)

        # interfaces
        kinds = {domain_id: state.kind for [domain_id, state] in after.items()}
        entering = {}
        theoretical = {}
        mechanisms = {}
        directions = {}
        estimated = set()
        for op in coupling_operations:
            if op.is_external:
                continue
            key = tuple(sorted((op.source, op.target)))
            directions.setdefault(key, (op.source, op.target))
            mechanism = op.mechanism if op.mechanism is not None else self.classify(
                kinds.get(op.source), kinds.get(op.target))
            mechanisms.setdefault(key, mechanism)
            entering[(op.source, op.target)] = entering.get((op.source, op.target), self.zero()) + self.realized(op)
            theoretical[(op.source, op.target)] = (
                theoretical.get((op.source, op.target), self.zero()) + self.theoretical(op, mechanism))
            if mechanism is not None and op.source_mean is not None and op.target_mean is not None:
                estimated.add((op.source, op.target))

        for [key, [source, target]] in directions.items():
            numerical = entering.get((source, target), self.zero())
            leaving = -entering.get((target, source), self.zero())
            imbalance = numerical - leaving
            audit = InterfaceAudit(
                source, target, mechanisms[key], theoretical.get((source, target), self.zero()),
                numerical, leaving, imbalance, estimated=(source, target) in estimated)
            if audit.estimated:
                error = _norm(audit.conservation_error)
                audit.off_estimate = error > max(self.flux_tolerance * _norm(audit.theoretical), threshold)
                if audit.off_estimate:
                    logger.warning(
                        f"WARNING: {self.quantity} through {source} -> {target} deviates from its "
                        f"{audit.mechanism} estimate by {error:.3e}.")
            report.interfaces.append(audit)
            if _norm(imbalance) > threshold:
                report.violations.append(Violation(
                    ViolationKind.interface_imbalance, self.quantity, imbalance, _norm(imbalance),
                    (source, target), strategy=self.strategy))

        # changes of a domain that no operation accounts for
        for domain_id in after:
            absorbed = sum((self.realized(op) for op in coupling_operations if op.target == domain_id), self.zero())
            change = totals_after[domain_id] - totals_before.get(domain_id, totals_after[domain_id])
            created = change - absorbed
            if _norm(created) > threshold:
                report.violations.append(Violation(
                    ViolationKind.unphysical_creation, self.quantity, created, _norm(created), (domain_id,)))

        report.violations.extend(self.form_violations(after, threshold))

        drift = sum(totals_after.values(), self.zero()) - expected
        if _norm(drift) > threshold:
            report.violations.append(Violation(
                ViolationKind.total_drift, self.quantity, drift, _norm(drift), tuple(sorted(after)),
                strategy=self.strategy))

        self._plan(report, after, coupling_operations)
        for violation in report.violations:
            logger.info(f"{self.quantity} {violation.kind} of {violation.magnitude:.3e} on {violation.domains}.")
        return report

    def _weights(self, domain_ids, strategy, after, coupling_operations, direction=None) -> dict[str, float]:
        capacities = {d: float(after[d].capacities.get(str(self.quantity), 0.0)) for d in domain_ids}
        if strategy == CorrectionStrategy.source_adjustment and direction is not None:
            return {d: float(d == direction[0]) for d in domain_ids}
        if strategy == CorrectionStrategy.target_adjustment and direction is not None:
            return {d: float(d == direction[1]) for d in domain_ids}
        if strategy == CorrectionStrategy.mass_weighted:
            return capacities
        if strategy == CorrectionStrategy.coupling_based:
            strength = {d: 0.0 for d in domain_ids}
            for op in coupling_operations:
                for d in (op.source, op.target):
                    if d in strength:
                        strength[d] += abs(op.coefficient * op.area)
            # a domain that cannot hold the quantity takes no share
            return {d: strength[d] if capacities[d] > 0 else 0.0 for d in domain_ids}
        # proportional split: stiffer domains absorb less
        return {d: capacities[d] / (after[d].stiffness if after[d].stiffness > 0 else 1.0) for d in domain_ids}

    def _distribute(self, amount, domain_ids, strategy, after, coupling_operations, index, direction=None):
        weights = self._weights(domain_ids, strategy, after, coupling_operations, direction)
        total_weight = sum(weights.values())
        if total_weight <= 0:
            logger.warning(f"WARNING: no domain among {tuple(domain_ids)} can absorb a {self.quantity} correction.")
            return []
        return [CorrectionAction(d, -amount * (w / total_weight), index)
                for [d, w] in weights.items() if w > 0]

    def _plan(self, report: ConservationReport, after, coupling_operations):
        """Interface and creation corrections first; what remains of the drift is spread afterwards."""
        planned = self.zero()
        drift_index = None
        for [index, violation] in enumerate(report.violations):
            if not violation.correctable:
                continue
            if violation.amount is None or not violation.domains:
                raise MissingViolationInfo(f"{violation.kind} of {self.quantity} has no amount or domain to correct.")
            if violation.kind == ViolationKind.total_drift:
                drift_index = index
                continue
            if violation.kind == ViolationKind.interface_imbalance:
                actions = self._distribute(violation.amount, violation.domains, violation.strategy, after,
                                           coupling_operations, index, direction=violation.domains)
            elif violation.kind == ViolationKind.unphysical_creation:
                actions = [CorrectionAction(violation.domains[0], -violation.amount, index)]
            else:
                raise MissingViolationInfo(f"No correction is known for {violation.kind}.")
            report.actions.extend(actions)
            for action in actions:
                planned = planned + action.amount

        if drift_index is not None:
            violation = report.violations[drift_index]
            remaining = violation.amount + planned
            if _norm(remaining) > self.threshold(report.scale) * 1e-3:
                report.actions.extend(self._distribute(
                    remaining, violation.domains, violation.strategy, after, coupling_operations, drift_index))

    def verify(self, report: ConservationReport, corrected: dict[str, DomainState],
               records: list[CorrectionRecord]) -> ConservationReport:
        """
        Measure what the corrections achieved. `records` are aligned with `report.actions`.

        effectiveness = 1 - |residual| / |original|
        """
        if len(records) != len(report.actions):
            raise MissingViolationInfo(
                f"Got {len(records)} correction records for {len(report.actions)} {self.quantity} corrections.")
        for [action, record] in zip(report.actions, records):
            action.applied = record.applied
        report.corrected_totals = {domain_id: self.total_of(state) for [domain_id, state] in corrected.items()}
        threshold = self.threshold(report.scale)

        for [index, violation] in enumerate(report.violations):
            if violation.kind == ViolationKind.total_drift:
                residual = report.drift
            elif violation.correctable:
                residual = violation.amount + sum(
                    (a.applied for a in report.actions if a.violation == index), self.zero())
            else:
                residual = violation.amount
            violation.residual = _norm(residual)
            if violation.correctable and violation.magnitude > 0:
                violation.effectiveness = 1.0 - violation.residual / violation.magnitude
            violation.resolved = violation.residual <= threshold
            if violation.worsened:
                logger.warning(
                    f"WARNING: correction of {self.quantity} {violation.kind} on {violation.domains} made it worse, "
                    f"effectiveness {violation.effectiveness:.3f}.")
            elif not violation.resolved:
                logger.warning(
                    f"WARNING: {self.quantity} {violation.kind} on {violation.domains} remains at "
                    f"{violation.residual:.3e} after correction.")
        return report

    def record(self, report: ConservationReport, step_index: int):
        """Append the committed step to the ledger."""
        if self.ledger is None:
            raise RuntimeError(f"The {self.quantity} ledger is not started.")
        totals = report.corrected_totals if report.corrected_totals is not None else report.domain_totals_after
        transfers = tuple(
            {"source": audit.source, "target": audit.target, "amount": audit.numerical}
            for audit in report.interfaces)
        self.ledger.append(LedgerEntry(
            step_index, report.time, dict(totals), sum(totals.values(), self.zero()), transfers,
            report.net_correction, report.external))


class EnergyConservationEnforcer(ConservationEnforcer):

    quantity = ConservationLaw.energy
    strategies = (
        CorrectionStrategy.source_adjustment,
        CorrectionStrategy.target_adjustment,
        CorrectionStrategy.proportional_split,
    )
    mechanism_precedence = (
        (DomainKind.thermal, TransferMechanism.heat_conduction),
        (DomainKind.chemical, TransferMechanism.chemical_reaction),
        (DomainKind.electromagnetic, TransferMechanism.electromagnetic_force),
        (DomainKind.fluid, TransferMechanism.viscous_shear),
        (DomainKind.structural, TransferMechanism.mechanical_work),
        (DomainKind.particle, TransferMechanism.mechanical_work),
    )

    def total_of(self, state):
        return state.energy

    def realized(self, op):
        return op.realized_energy

    def zero(self):
        return 0.0

    def theoretical(self, op, mechanism):
        if op.source_mean is None or op.target_mean is None or mechanism is None:
            return 0.0
        scale = op.coefficient * op.area * op.dt
        if mechanism == TransferMechanism.heat_conduction:
            return float(scale * np.sum(op.source_mean - op.target_mean))
        if mechanism == TransferMechanism.chemical_reaction:
            return float(scale * np.sum(op.source_mean))
        # work of the interface force at the target velocity
        return float(scale * np.dot(np.ravel(op.source_mean - op.target_mean), np.ravel(op.target_mean)))

    def form_violations(self, after, threshold):
        violations = []
        for [domain_id, state] in after.items():
            if not state.energy_forms:
                continue
            mismatch = sum(state.energy_forms.values()) - state.energy
            if abs(mismatch) > threshold:
                violations.append(Violation(
                    ViolationKind.form_imbalance, self.quantity, mismatch, abs(mismatch), (domain_id,),
                    correctable=False))
        return violations


class MomentumConservationEnforcer(ConservationEnforcer):

    quantity = ConservationLaw.momentum
    strategies = tuple(CorrectionStrategy)
    mechanism_precedence = (
        (DomainKind.electromagnetic, TransferMechanism.electromagnetic_force),
        (DomainKind.fluid, TransferMechanism.viscous_shear),
        (DomainKind.structural, TransferMechanism.mechanical_work),
        (DomainKind.particle, TransferMechanism.mechanical_work),
    )
    inert_kinds = frozenset({DomainKind.thermal, DomainKind.chemical})

    def __init__(self, tolerance=1e-8, strategy=CorrectionStrategy.mass_weighted, absolute_tolerance=1e-12,
                 flux_tolerance=0.1):
        super().__init__(tolerance, strategy, absolute_tolerance, flux_tolerance)

    def total_of(self, state):
        return np.array(state.momentum)

    def realized(self, op):
        return np.asarray(op.realized_momentum, dtype=float)

    def zero(self):
        return np.zeros(3)

    def theoretical(self, op, mechanism):
        force_like = (TransferMechanism.mechanical_work, TransferMechanism.electromagnetic_force,
                      TransferMechanism.viscous_shear)
        if op.source_mean is None or op.target_mean is None or mechanism not in force_like:
            return np.zeros(3)
        force = np.zeros(3)
        difference = np.ravel(np.asarray(op.source_mean - op.target_mean, dtype=float))
        force[:difference.size] = op.coefficient * op.area * difference[:3]
        return force * op.dt
