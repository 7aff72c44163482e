"""
Multi-rate time integration of the coupled domains over one global step.
"""

import logging
import math

from multiphysics.domain import count_substeps
from multiphysics.numerics.fixed_point import FixedPointIteration
from .context import StepContext
from .implicit import solve_coupled_step
from .results import SteppingStrategy, TimeStepResult
from .synchronization import SynchronizationSchedule, TemporalSynchronizationManager


logger = logging.getLogger(__name__)


class MultiScaleTimeStepper:
    """
    Decides how many sub-steps each domain takes and executes them.

    Parameters
    ----------
    strategy : SteppingStrategy
        uniform: every domain takes the smallest natural time step.
        sub_cycling: a domain with ratio N takes N sub-steps per global step.
        adaptive_multirate: ratios follow the local error estimates of the domains.
        implicit_explicit: stiff domains are solved implicitly, the others sub-cycled.
    ratios : dict[str, int], optional
        Fixed sub-cycling ratios. Domains without one get ceil(global step / natural step).
    max_ratio : int
        Cap on any ratio.
    error_tolerance : float
        Target local error for adaptive multirate.
    synchronizer : TemporalSynchronizationManager, optional
        Used at synchronization points inside a global step.
    schedule : SynchronizationSchedule, optional
        Synchronization points. The stepper only reads it.
    solver : FixedPointIteration, optional
        For the implicit part of implicit-explicit splitting.
    """

    def __init__(self, strategy=SteppingStrategy.sub_cycling, ratios: dict[str, int] | None = None,
                 max_ratio: int = 1000, error_tolerance: float = 1e-6,
                 synchronizer: TemporalSynchronizationManager | None = None,
                 schedule: SynchronizationSchedule | None = None, solver: FixedPointIteration | None = None):
        self.strategy = SteppingStrategy(strategy)
        self.ratios = dict(ratios or {})
        for [domain_id, ratio] in self.ratios.items():
            if int(ratio) < 1:
                raise ValueError(f"Sub-cycling ratio of '{domain_id}' must be at least 1.")
        if max_ratio < 1:
            raise ValueError("Maximal ratio must be at least 1.")
        self.max_ratio = max_ratio
        self.error_tolerance = error_tolerance
        self.synchronizer = synchronizer if synchronizer is not None else TemporalSynchronizationManager()
        self.schedule = schedule
        self.solver = solver if solver is not None else FixedPointIteration()
        # ratios adapted along the simulation, for adaptive multirate
        self.adapted_ratios: dict[str, int] = {}

    def advance_simulation_time(self, context: StepContext, target_time: float,
                                domain_ids: list[str] | None = None, spatial_context=None) -> TimeStepResult:
        """
        Advance the domains to exactly `target_time`, synchronizing at scheduled points on the way.

        The sub-step grid of every domain is laid over the whole global step. A synchronization
        point splits the sub-step holding it in two, so a domain of ratio N still reports N.
        """
        domain_ids = context.order if domain_ids is None else list(domain_ids)
        start_time = min(context.time(d) for d in domain_ids)
        for domain_id in domain_ids:
            if context.time(domain_id) > target_time:
                raise ValueError(f"Domain '{domain_id}' is at {context.time(domain_id)}, past {target_time}.")
        if spatial_context is not None:
            context.spatial_context = spatial_context

        result = TimeStepResult(self.strategy, start_time, target_time)
        grids = self._grids(context, domain_ids, start_time, target_time, result)
        points = self.schedule.pending_within(start_time, target_time) if self.schedule is not None else []
        bounds = [start_time] + [p.time for p in points] + [target_time]
        for [index, [a, b]] in enumerate(zip(bounds[:-1], bounds[1:])):
            self._advance_segment(context, domain_ids, a, b, grids, result)
            if index < len(points):
                logger.info(f"Synchronization point at t={b:.6g}")
                result.synchronizations.append(
                    self.synchronizer.synchronize_all_domains(context, b, spatial_context, domain_ids))

        if self.strategy == SteppingStrategy.adaptive_multirate:
            self._adapt(context, domain_ids, result.ratios)
        result.domain_results = {d: context.results[d] for d in domain_ids if d in context.results}
        return result

    def _ratio(self, context: StepContext, domain_id: str, duration: float) -> int:
        if domain_id in self.ratios:
            return min(int(self.ratios[domain_id]), self.max_ratio)
        natural = count_substeps(duration, context.domain(domain_id).natural_time_step)
        if self.strategy == SteppingStrategy.adaptive_multirate and domain_id in self.adapted_ratios:
            return self.adapted_ratios[domain_id]
        return min(max(natural, 1), self.max_ratio)

    def _adapt(self, context: StepContext, domain_ids, ratios: dict[str, int]):
        """r_new = ceil(r * sqrt(error / tolerance)), clamped to [1, max_ratio]."""
        for domain_id in domain_ids:
            result = context.results.get(domain_id)
            if result is None or domain_id in self.ratios:
                continue
            error = result.error_estimate
            ratio = ratios[domain_id]
            if error > 0:
                ratio = math.ceil(ratio * math.sqrt(error / self.error_tolerance))
            else:
                ratio = math.ceil(ratio / 2)
            self.adapted_ratios[domain_id] = min(max(ratio, 1), self.max_ratio)

    def _grids(self, context: StepContext, domain_ids, start: float, end: float,
               result: TimeStepResult) -> dict[str, list[float]]:
        """End times of the sub-steps of every explicitly stepped domain over [start, end]."""
        if self.strategy == SteppingStrategy.uniform:
            h = min(context.domain(d).natural_time_step for d in domain_ids)
            nb_steps = count_substeps(end - start, h)
            grid = [start + k * h for k in range(1, nb_steps)] + [end]
            for domain_id in domain_ids:
                result.ratios[domain_id] = nb_steps
            return {d: grid for d in domain_ids}

        if self.strategy == SteppingStrategy.implicit_explicit:
            explicit = [d for d in domain_ids if not context.is_stiff(d)]
        elif self.strategy in (SteppingStrategy.sub_cycling, SteppingStrategy.adaptive_multirate):
            explicit = list(domain_ids)
        else:
            raise ValueError(f"Unknown stepping strategy: {self.strategy}")

        grids = {}
        for domain_id in explicit:
            ratio = self._ratio(context, domain_id, end - start)
            h = (end - start) / ratio
            grids[domain_id] = [start + k * h for k in range(1, ratio)] + [end]
            result.ratios[domain_id] = ratio
        return grids

    def _advance_segment(self, context: StepContext, domain_ids, a: float, b: float,
                         grids: dict[str, list[float]], result: TimeStepResult):
        if b <= a:
            return
        explicit = [d for d in domain_ids if d in grids]
        stiff = [d for d in domain_ids if d not in grids]

        # slow domains first, so faster ones can interpolate them
        groups: dict[int, list[str]] = {}
        for domain_id in explicit:
            groups.setdefault(len(grids[domain_id]), []).append(domain_id)
        for ratio in sorted(groups):
            group = groups[ratio]
            stops = [t for t in grids[group[0]] if a + context.time_tolerance < t < b - context.time_tolerance]
            logger.debug(f"Sub-cycling {group} with ratio {ratio} over [{a:.6g}, {b:.6g}]")
            self._march(context, group, stops + [b])

        if stiff:
            result.implicit_status = solve_coupled_step(context, stiff, b, self.solver)
            for domain_id in stiff:
                result.ratios[domain_id] = result.ratios.get(domain_id, 0) + 1

    @staticmethod
    def _march(context: StepContext, group, stops: list[float]):
        """Advance the group in lockstep through the sub-step end times `stops`, landing exactly on the last."""
        for [k, end_time] in enumerate(stops):
            last = k == len(stops) - 1
            # every coupling is gathered before any domain of the group moves
            couplings = {d: context.build_coupling(d, end_time) for d in group}
            for domain_id in group:
                [data, operations] = couplings[domain_id]
                if last:
                    context.advance_to(domain_id, end_time, data, operations)
                else:
                    context.advance(domain_id, end_time - context.time(domain_id), data, operations)
