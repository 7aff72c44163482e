"""
Top-level coordination of a coupled multi-physics simulation.
"""

import logging
import types

import numpy as np

from multiphysics.coupling.conservation import (
    ConservationEnforcer,
    ConservationReport,
    EnergyConservationEnforcer,
    MomentumConservationEnforcer,
)
from multiphysics.coupling.interface import CouplingInterfaceManager, FieldTransferResult
from multiphysics.coupling.pair import CouplingPair, SpatialContext
from multiphysics.domain import ConservationLaw, CorrectionRecord, DomainState, PhysicsDomain
from multiphysics.errors import ConservationViolation, DomainNotFound
from multiphysics.numerics.fixed_point import FixedPointIteration
from multiphysics.numerics.interpolation import TemporalInterpolator
from .context import StateHistory, StepContext
from .implicit import solve_coupled_step
from .results import CouplingStatus, CouplingStrategy, StabilityReport, StepResult, TimeStepResult
from .stepper import MultiScaleTimeStepper
from .synchronization import SynchronizationSchedule, TemporalSynchronizationManager


logger = logging.getLogger(__name__)


class PhysicsDomainManager:
    """
    Owns the domains and advances them together, one global step at a time.

    Only this class calls the mutating methods of a domain, always through a `StepContext`
    that keeps a checkpoint: a step either commits completely or leaves every domain exactly
    as it was.

    Parameters
    ----------
    coupling_strategy : CouplingStrategy
        explicit: the stepper advances all domains with the latest partner data.
        implicit: fixed-point iteration until the exchanged fields agree.
        staggered: the groups are advanced one after another, in an order rotating every step.
        adaptive: chooses between explicit and implicit every step.
    stepper : MultiScaleTimeStepper, optional
        Sub-stepping of the explicit and staggered strategies.
    solver : FixedPointIteration, optional
        For implicit coupling.
    enforcers : list[ConservationEnforcer], optional
        Post-step audits, momentum then energy by default. An empty list disables them.
    enforce_conservation : bool
        Reject the step on a violation that correction could not resolve. Otherwise the
        report is only attached to the result.
    groups : list[list[str]], optional
        Domain groups of staggered coupling. Each domain is its own group by default.
    """

    def __init__(self, coupling_strategy=CouplingStrategy.explicit, stepper: MultiScaleTimeStepper | None = None,
                 solver: FixedPointIteration | None = None, interface: CouplingInterfaceManager | None = None,
                 enforcers: list[ConservationEnforcer] | None = None, enforce_conservation: bool = True,
                 groups: list[list[str]] | None = None, schedule: SynchronizationSchedule | None = None,
                 synchronizer: TemporalSynchronizationManager | None = None,
                 interpolator: TemporalInterpolator | None = None, history_length: int = 256,
                 time_tolerance: float = 1e-9, adaptive_change_threshold: float = 0.1,
                 adaptive_iteration_threshold: int = 3, growth_limit: float = 10.0):
        self.coupling_strategy = CouplingStrategy(coupling_strategy)
        self.synchronizer = synchronizer if synchronizer is not None else TemporalSynchronizationManager()
        self.schedule = schedule
        self.stepper = stepper if stepper is not None else MultiScaleTimeStepper(
            synchronizer=self.synchronizer, schedule=schedule)
        if self.stepper.schedule is None:
            self.stepper.schedule = schedule
        self.solver = solver if solver is not None else FixedPointIteration()
        self.interface = interface if interface is not None else CouplingInterfaceManager()
        self.enforcers = list(enforcers) if enforcers is not None else [
            MomentumConservationEnforcer(), EnergyConservationEnforcer()]
        self.enforce_conservation = enforce_conservation
        self.groups = [list(group) for group in groups] if groups else None
        self.interpolator = interpolator if interpolator is not None else TemporalInterpolator()
        self.history = StateHistory(history_length)
        self.time_tolerance = time_tolerance
        self.adaptive_change_threshold = adaptive_change_threshold
        self.adaptive_iteration_threshold = adaptive_iteration_threshold
        self.growth_limit = growth_limit

        self._domains: dict[str, PhysicsDomain] = {}
        self._pairs: list[CouplingPair] = []
        self.step_index = 0
        self.is_initialized = False
        self._last_strategy: CouplingStrategy | None = None
        self._last_status: CouplingStatus | None = None
        self._last_relative_change: float | None = None

    # ---- setup ----

    def add_domain(self, domain: PhysicsDomain):
        if self.is_initialized:
            raise ValueError("Cannot add a domain to a running simulation.")
        if domain.domain_id in self._domains:
            raise ValueError(f"Domain '{domain.domain_id}' already exists.")
        self._domains[domain.domain_id] = domain
        logger.info(f"Added {domain!r}")

    def add_coupling(self, pair: CouplingPair):
        for domain_id in (pair.source, pair.target):
            if domain_id not in self._domains:
                raise DomainNotFound(domain_id, f"coupling {pair.source} -> {pair.target}")
        self._pairs.append(pair)
        logger.info(f"Added coupling {pair.source} -> {pair.target} of {list(pair.spec.fields)}")

    def get_domain(self, domain_id: str) -> PhysicsDomain:
        try:
            return self._domains[domain_id]
        except KeyError:
            raise DomainNotFound(domain_id) from None

    @property
    def domains(self):
        return types.MappingProxyType(self._domains)

    @property
    def couplings(self) -> list[CouplingPair]:
        return list(self._pairs)

    @property
    def ledgers(self):
        return {str(enforcer.quantity): enforcer.ledger for enforcer in self.enforcers}

    @property
    def current_time(self) -> float:
        return max(domain.get_current_time() for domain in self._domains.values())

    def get_states(self) -> dict[str, DomainState]:
        return {domain_id: domain.get_current_state() for [domain_id, domain] in self._domains.items()}

    def initialize(self):
        """Start the ledgers and the history from the current states."""
        if not self._domains:
            raise ValueError("No domain to simulate.")
        states = self.get_states()
        for state in states.values():
            self.history.record(state)
        for enforcer in self.enforcers:
            enforcer.start(states)
        self.is_initialized = True

    # ---- stepping ----

    def _select_strategy(self) -> CouplingStrategy:
        if self.coupling_strategy != CouplingStrategy.adaptive:
            return self.coupling_strategy
        if any(domain.is_stiff for domain in self._domains.values()):
            return CouplingStrategy.implicit
        if self._last_strategy == CouplingStrategy.implicit and self._last_status is not None:
            # cheap convergence means weak coupling
            if self._last_status.nb_iterations <= self.adaptive_iteration_threshold:
                return CouplingStrategy.explicit
            return CouplingStrategy.implicit
        if self._last_relative_change is not None and self._last_relative_change > self.adaptive_change_threshold:
            return CouplingStrategy.implicit
        return CouplingStrategy.explicit

    def _staggered_groups(self) -> list[list[str]]:
        groups = [list(group) for group in self.groups] if self.groups else [[d] for d in self._domains]
        for group in groups:
            for domain_id in group:
                if domain_id not in self._domains:
                    raise DomainNotFound(domain_id, "staggered group")
        grouped = {d for group in groups for d in group}
        rest = [d for d in self._domains if d not in grouped]
        if rest:
            groups.append(rest)
        # rotate, so that no group always sees the others lagging
        shift = self.step_index % len(groups)
        return groups[shift:] + groups[:shift]

    def _run(self, strategy: CouplingStrategy, context: StepContext, target_time: float, spatial_context):
        if strategy == CouplingStrategy.explicit:
            result = self.stepper.advance_simulation_time(context, target_time, spatial_context=spatial_context)
            status = result.implicit_status if result.implicit_status is not None else CouplingStatus()
            return status, result

        if strategy == CouplingStrategy.staggered:
            combined = TimeStepResult(self.stepper.strategy, context.time(context.order[0]), target_time)
            status = CouplingStatus()
            for group in self._staggered_groups():
                result = self.stepper.advance_simulation_time(context, target_time, group, spatial_context)
                combined.ratios.update(result.ratios)
                combined.synchronizations.extend(result.synchronizations)
                combined.domain_results.update(result.domain_results)
                if result.implicit_status is not None:
                    status = result.implicit_status
            return status, combined

        if strategy == CouplingStrategy.implicit:
            return self._solve_implicit(context, target_time, spatial_context), None

        raise ValueError(f"Unknown coupling strategy: {strategy}")

    def _solve_implicit(self, context: StepContext, target_time: float, spatial_context) -> CouplingStatus:
        """One coupled solve per segment between the synchronization points inside the step."""
        start_time = min(context.time(d) for d in context.order)
        points = self.schedule.pending_within(start_time, target_time) if self.schedule is not None else []
        ends = [p.time for p in points] + [target_time]
        status = CouplingStatus()
        for [index, end_time] in enumerate(ends):
            segment = solve_coupled_step(context, context.order, end_time, self.solver)
            status.nb_iterations += segment.nb_iterations
            status.residuals.extend(segment.residuals)
            if index < len(points):
                logger.info(f"Synchronization point at t={end_time:.6g}")
                self.synchronizer.synchronize_all_domains(context, end_time, spatial_context)
        return status

    def _apply_correction(self, quantity: ConservationLaw, domain_id: str, amount, spatial_context) -> CorrectionRecord:
        domain = self.get_domain(domain_id)
        if quantity == ConservationLaw.energy:
            return domain.apply_energy_correction(amount, spatial_context)
        if quantity == ConservationLaw.momentum:
            return domain.apply_momentum_correction(amount, spatial_context)
        raise ValueError(f"No correction interface for {quantity}.")

    def _audit(self, context: StepContext, before: dict[str, DomainState], spatial_context):
        reports: dict[str, ConservationReport] = {}
        for enforcer in self.enforcers:
            report = enforcer.monitor(before, context.states(), context.operations, spatial_context)
            records = [self._apply_correction(enforcer.quantity, action.domain_id, action.amount, spatial_context)
                       for action in report.actions]
            enforcer.verify(report, context.states(), records)
            reports[str(enforcer.quantity)] = report

            for violation in report.worsened:
                logger.warning(
                    f"WARNING: CorrectionWorsened, {violation.kind} of {enforcer.quantity} on {violation.domains}.")
            if report.unresolved and self.enforce_conservation:
                residual = max(v.residual for v in report.unresolved)
                raise ConservationViolation(
                    f"{len(report.unresolved)} {enforcer.quantity} violation(s) remain after correction, "
                    f"largest {residual:.3e}.", str(enforcer.quantity), residual, report.unresolved)

        # corrections changed the states the history holds
        for domain_id in context.order:
            context.history.record(context.state(domain_id))
        return reports

    def _exchange(self, context: StepContext, spatial_context) -> list[tuple[CouplingPair, FieldTransferResult]]:
        """Field payloads of every interface at the end of the step."""
        exchange = []
        for pair in self._pairs:
            transfer = self.interface.transfer_fields(
                context.state(pair.source), context.state(pair.target), pair.spec, pair.region, spatial_context)
            exchange.append((pair, transfer))
        return exchange

    def _check_stability(self, before, after, strategy, status: CouplingStatus, results) -> StabilityReport:
        report = StabilityReport()
        for [domain_id, state] in after.items():
            x = state.solution_vector()
            x0 = before[domain_id].solution_vector()
            if not np.all(np.isfinite(x)):
                report.warnings.append(f"Domain '{domain_id}' has non-finite values.")
                continue
            norm0 = float(np.linalg.norm(x0))
            norm1 = float(np.linalg.norm(x))
            growth = norm1 / norm0 if norm0 > 0 else (1.0 if norm1 == 0 else np.inf)
            report.growth_factors[domain_id] = growth
            if growth > self.growth_limit:
                report.warnings.append(f"Domain '{domain_id}' grew by a factor {growth:.3g} in one step.")

            domain = self._domains[domain_id]
            result = results.get(domain_id)
            if strategy != CouplingStrategy.implicit and result is not None and result.nb_substeps > 0:
                substep = result.duration / result.nb_substeps
                if substep > domain.natural_time_step * (1 + 1e-9) and domain.is_stiff:
                    report.warnings.append(
                        f"Stiff domain '{domain_id}' took explicit sub-steps of {substep:.3g}, "
                        f"above its natural step {domain.natural_time_step:.3g}.")

        residuals = status.residuals
        if len(residuals) >= 3 and residuals[-1] > 0.9 * residuals[-2]:
            report.warnings.append(
                f"Implicit residuals stagnate: {residuals[-2]:.3e} -> {residuals[-1]:.3e}.")
        for warning in report.warnings:
            logger.warning(f"WARNING: {warning}")
        return report

    def step_simulation(self, time_step: float, spatial_context: SpatialContext | None = None) -> StepResult:
        """
        Advance every domain by one global step of `time_step`.

        Raises
        ------
        ConvergenceFailure
            Implicit coupling did not converge. The caller may retry with a smaller step.
        SynchronizationFailure
            Domains could not be brought to a common time.
        ConservationViolation
            A transfer or the post-step audit found drift that correction could not resolve.
        DomainNotFound
            A coupling refers to an unknown domain.

        In every case, all domains are restored to their state before the call.
        """
        if not time_step > 0:
            raise ValueError(f"Time step must be positive, got {time_step}.")
        if not self.is_initialized:
            self.initialize()

        strategy = self._select_strategy()
        context = StepContext(self._domains, self._pairs, self.interface, self.history, self.interpolator,
                              spatial_context, self.time_tolerance)
        checkpoint = context.checkpoint()
        before = checkpoint.states
        start_time = self.current_time
        target_time = start_time + time_step
        logger.info(f"Step #{self.step_index}: t={start_time:.6g} -> {target_time:.6g} by {strategy} coupling")

        try:
            lagging = [d for d in context.order if start_time - context.time(d) > self.time_tolerance]
            if lagging:
                self.synchronizer.synchronize_all_domains(context, start_time, spatial_context)
            [status, time_step_result] = self._run(strategy, context, target_time, spatial_context)
            reports = self._audit(context, before, spatial_context)
            exchange = self._exchange(context, spatial_context)
        except Exception as err:
            logger.warning(f"WARNING: step #{self.step_index} aborted ({type(err).__name__}), domains restored.")
            context.rollback(checkpoint)
            raise

        # commit
        for [pair, transfer] in exchange:
            self._domains[pair.target].receive_transferred_fields(transfer.fields, pair.spec)
        for enforcer in self.enforcers:
            enforcer.record(reports[str(enforcer.quantity)], self.step_index)
        if self.schedule is not None:
            self.schedule.satisfy_until(target_time)

        after = context.states()
        stability = self._check_stability(before, after, strategy, status, context.results)
        self._last_strategy = strategy
        self._last_status = status
        self._last_relative_change = max(
            float(np.linalg.norm(after[d].solution_vector() - before[d].solution_vector()))
            / max(float(np.linalg.norm(before[d].solution_vector())), np.finfo(float).tiny)
            for d in after)

        result = StepResult(
            self.step_index, start_time, target_time, strategy, dict(context.results), status, reports,
            stability, time_step_result)
        self.step_index += 1
        return result
