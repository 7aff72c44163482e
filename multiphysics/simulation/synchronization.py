"""
Bringing domains at different simulation times to a common time.
"""

import dataclasses as dc
import logging

import numpy as np

from multiphysics.domain import DomainState, PredictionMethod
from multiphysics.errors import SynchronizationFailure
from .context import StepContext
from .results import SyncPhase, SyncStrategy, SynchronizationResult


logger = logging.getLogger(__name__)


@dc.dataclass
class SynchronizationPoint:
    time: float
    label: str = ""
    satisfied: bool = False


class SynchronizationSchedule:
    """Times at which every domain must agree on the current time, consumed once reached."""

    tolerance: float

    def __init__(self, times=(), tolerance: float = 1e-12):
        self.tolerance = tolerance
        self._points: list[SynchronizationPoint] = []
        for time in times:
            self.add(time)

    @property
    def points(self) -> list[SynchronizationPoint]:
        return list(self._points)

    def add(self, time: float, label: str = "") -> SynchronizationPoint:
        point = SynchronizationPoint(float(time), label)
        self._points.append(point)
        self._points.sort(key=lambda p: p.time)
        return point

    def pending_within(self, start: float, end: float) -> list[SynchronizationPoint]:
        """Unsatisfied points strictly inside (start, end)."""
        return [p for p in self._points
                if not p.satisfied and start + self.tolerance < p.time < end - self.tolerance]

    def mark_satisfied(self, points):
        for point in points:
            point.satisfied = True

    def satisfy_until(self, time: float) -> list[SynchronizationPoint]:
        """Mark every point up to `time` as reached."""
        reached = [p for p in self._points if not p.satisfied and p.time <= time + self.tolerance]
        self.mark_satisfied(reached)
        return reached


def _divergence(a: DomainState, b: DomainState) -> float:
    """Relative difference of the field values of two estimates of the same state."""
    x = a.solution_vector()
    y = b.solution_vector()
    return float(np.linalg.norm(x - y)) / max(float(np.linalg.norm(y)), 1.0)


class TemporalSynchronizationManager:
    """
    Advances lagging domains to a target time.

    - direct advancement: advance every lagging domain once, with the coupling data at hand
    - iterative convergence: redo the advancement with the newly reached states as coupling
      data until they stop changing
    - predictor-corrector: predict every state at the target time, advance with the predicted
      coupling data, and repeat with the corrected states as the new prediction
    """

    strategy: SyncStrategy
    prediction_method: PredictionMethod | None
    max_correction_iterations: int
    tolerance: float
    time_tolerance: float

    def __init__(self, strategy=SyncStrategy.predictor_corrector, prediction_method=None,
                 max_correction_iterations=10, tolerance=1e-8, time_tolerance=1e-12):
        self.strategy = SyncStrategy(strategy)
        if max_correction_iterations < 1:
            raise ValueError("Needs at least one correction iteration.")
        if self.strategy == SyncStrategy.iterative_convergence and max_correction_iterations < 2:
            # the first round has no earlier round to be compared with
            raise ValueError("Iterative convergence needs at least two correction iterations.")
        self.prediction_method = None if prediction_method is None else PredictionMethod(prediction_method)
        self.max_correction_iterations = max_correction_iterations
        self.tolerance = tolerance
        self.time_tolerance = time_tolerance

    def synchronize_all_domains(self, context: StepContext, target_time: float, spatial_context=None,
                                domain_ids: list[str] | None = None) -> SynchronizationResult:
        """
        Raises
        ------
        SynchronizationFailure
            When a domain is already past the target, or the corrections do not settle within
            `max_correction_iterations`. The domains are then back where they were.
        """
        domain_ids = context.order if domain_ids is None else list(domain_ids)
        result = SynchronizationResult(target_time, self.strategy)
        for domain_id in domain_ids:
            if context.time(domain_id) > target_time + self.time_tolerance:
                result.phases.append(SyncPhase.failed)
                raise SynchronizationFailure(
                    f"Domain '{domain_id}' is at {context.time(domain_id)}, past the synchronization "
                    f"time {target_time}.", [], 0, result.phases)
        lagging = [d for d in domain_ids if target_time - context.time(d) > self.time_tolerance]
        if not lagging:
            result.phases.append(SyncPhase.converged)
            return result

        logger.info(f"Synchronizing {lagging} to t={target_time:.6g} by {self.strategy}")
        checkpoint = context.checkpoint()
        try:
            if self.strategy == SyncStrategy.direct_advancement:
                self._advance(context, lagging, target_time, None)
                result.phases.append(SyncPhase.converged)
            elif self.strategy == SyncStrategy.iterative_convergence:
                self._iterate(context, domain_ids, lagging, target_time, None, result)
            elif self.strategy == SyncStrategy.predictor_corrector:
                result.phases.append(SyncPhase.predicting)
                predictions = {
                    d: context.predict(d, target_time, self.prediction_method) if d in lagging else context.state(d)
                    for d in domain_ids}
                self._iterate(context, domain_ids, lagging, target_time, predictions, result)
            else:
                raise ValueError(f"Unknown synchronization strategy: {self.strategy}")
        except Exception:
            context.rollback(checkpoint)
            raise

        result.domain_results = {d: context.results[d] for d in lagging if d in context.results}
        return result

    def _advance(self, context: StepContext, lagging, target_time, estimates):
        # every coupling is gathered before any domain moves
        couplings = {d: context.build_coupling(d, target_time, estimates) for d in lagging}
        for domain_id in lagging:
            [data, operations] = couplings[domain_id]
            context.advance_to(domain_id, target_time, data, operations)

    def _iterate(self, context: StepContext, domain_ids, lagging, target_time, estimates, result):
        start = context.checkpoint()
        for count in range(1, self.max_correction_iterations + 1):
            if count > 1:
                context.rollback(start)
            result.phases.append(SyncPhase.correcting)
            self._advance(context, lagging, target_time, estimates)

            result.phases.append(SyncPhase.validating)
            corrected = context.states(lagging)
            if estimates is None:
                # the first round has nothing to compare with
                divergence = np.inf
            else:
                divergence = max(_divergence(corrected[d], estimates[d]) for d in lagging)
            result.divergences.append(divergence)
            result.nb_iterations = count
            if divergence <= self.tolerance:
                result.phases.append(SyncPhase.converged)
                return
            result.phases.append(SyncPhase.needs_additional_correction)
            estimates = {**(estimates or {}), **corrected}

        result.phases.append(SyncPhase.failed)
        logger.warning(f"WARNING: synchronization to t={target_time:.6g} failed after {count} corrections.")
        raise SynchronizationFailure(
            f"Domains {lagging} did not settle at t={target_time} within {self.max_correction_iterations} "
            f"corrections, last divergence {result.divergences[-1]:.3e}.",
            result.divergences, result.nb_iterations, result.phases)
