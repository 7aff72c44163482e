"""
The explicit mutable context of one global step.

The manager creates it, and the stepper, the synchronizer and the implicit solver work
through it. It is the only way they touch a domain, and it keeps what a rollback needs.
"""

import collections
import dataclasses as dc
import logging
from typing import Iterable

import numpy as np

from multiphysics.coupling.conservation import EXTERNAL_SOURCE, CouplingOperation
from multiphysics.coupling.interface import CouplingInterfaceManager
from multiphysics.coupling.pair import CouplingPair, SpatialContext
from multiphysics.domain import CouplingData, DomainState, DomainStepResult, PhysicsDomain, PredictionMethod
from multiphysics.errors import DomainNotFound
from multiphysics.numerics.interpolation import TemporalInterpolator
from multiphysics.numerics.prediction import predict_state


logger = logging.getLogger(__name__)


class StateHistory:
    """Latest committed snapshots of every domain, oldest first."""

    max_length: int

    def __init__(self, max_length: int = 256):
        if max_length < 2:
            raise ValueError("History needs room for at least two snapshots.")
        self.max_length = max_length
        self._states: dict[str, collections.deque] = {}

    def record(self, state: DomainState):
        states = self._states.setdefault(state.domain_id, collections.deque(maxlen=self.max_length))
        if states and states[-1].current_time == state.current_time:
            states[-1] = state
        elif states and states[-1].current_time > state.current_time:
            # a rewind of the domain invalidates what came after
            while states and states[-1].current_time >= state.current_time:
                states.pop()
            states.append(state)
        else:
            states.append(state)

    def states(self, domain_id: str) -> list[DomainState]:
        return list(self._states.get(domain_id, ()))

    def latest(self, domain_id: str) -> DomainState:
        return self._states[domain_id][-1]

    def at(self, domain_id: str, time: float, interpolator: TemporalInterpolator, tolerance: float) -> DomainState:
        """
        The state at `time`: the snapshot within `tolerance` of it, an interpolation between the
        two snapshots around it, or else the nearest snapshot held constant.
        """
        states = self._states[domain_id]
        latest = states[-1]
        if abs(latest.current_time - time) <= tolerance:
            return latest
        if time > latest.current_time:
            return latest
        for index in range(len(states) - 1, 0, -1):
            after = states[index]
            before = states[index - 1]
            if abs(before.current_time - time) <= tolerance:
                return before
            if before.current_time < time < after.current_time:
                return interpolator.interpolate(before, after, time)
        return states[0]

    def snapshot(self) -> dict[str, list[DomainState]]:
        return {domain_id: list(states) for [domain_id, states] in self._states.items()}

    def rollback(self, snapshot: dict[str, list[DomainState]]):
        self._states = {
            domain_id: collections.deque(states, maxlen=self.max_length)
            for [domain_id, states] in snapshot.items()}


@dc.dataclass
class Checkpoint:
    states: dict[str, DomainState]
    nb_operations: int
    results: dict[str, DomainStepResult]
    history: dict[str, list[DomainState]]


class StepContext:
    """
    Work area of one global step: gathers coupling data, advances domains, attributes what
    they absorbed to coupling operations, and takes / restores checkpoints.
    """

    def __init__(self, domains: dict[str, PhysicsDomain], pairs: Iterable[CouplingPair],
                 interface: CouplingInterfaceManager, history: StateHistory,
                 interpolator: TemporalInterpolator | None = None, spatial_context: SpatialContext | None = None,
                 time_tolerance: float = 1e-9):
        self.domains = domains
        self.pairs = list(pairs)
        self.interface = interface
        self.history = history
        self.interpolator = interpolator if interpolator is not None else TemporalInterpolator()
        self.spatial_context = spatial_context
        self.time_tolerance = time_tolerance
        self.operations: list[CouplingOperation] = []
        self.results: dict[str, DomainStepResult] = {}
        for domain in domains.values():
            if not history.states(domain.domain_id):
                history.record(domain.get_current_state())

    @property
    def order(self) -> list[str]:
        """The fixed order in which domains are visited."""
        return list(self.domains)

    def domain(self, domain_id: str) -> PhysicsDomain:
        try:
            return self.domains[domain_id]
        except KeyError:
            raise DomainNotFound(domain_id) from None

    def state(self, domain_id: str) -> DomainState:
        return self.domain(domain_id).get_current_state()

    def time(self, domain_id: str) -> float:
        return self.domain(domain_id).get_current_time()

    def states(self, domain_ids: Iterable[str] | None = None) -> dict[str, DomainState]:
        domain_ids = self.order if domain_ids is None else domain_ids
        return {domain_id: self.state(domain_id) for domain_id in domain_ids}

    def partners_of(self, target_id: str) -> list[CouplingPair]:
        return [pair for pair in self.pairs if pair.target == target_id]

    def is_stiff(self, domain_id: str) -> bool:
        return self.domain(domain_id).is_stiff

    # ---- coupling data ----

    def build_coupling(self, target_id: str, time: float, estimates: dict[str, DomainState] | None = None):
        """
        Coupling data for the target, valid at `time`, without touching any domain.

        Partners are read from `estimates` when given, otherwise from the history, interpolated
        to `time` when they are not there.

        Returns
        -------
        tuple[CouplingData, list[CouplingOperation]]
        """
        target_state = self.state(target_id)
        data = CouplingData(time)
        operations = []
        for pair in self.partners_of(target_id):
            if estimates is not None and pair.source in estimates:
                source_state = estimates[pair.source]
            else:
                source_state = self.history.at(pair.source, time, self.interpolator, self.time_tolerance)
            transfer = self.interface.transfer_fields(
                source_state, target_state, pair.spec, pair.region, self.spatial_context)
            data.fields.setdefault(pair.source, {}).update(transfer.fields)

            [source_mean, target_mean] = [None, None]
            if transfer.fields:
                field = transfer.fields[pair.spec.fields[0]]
                source_mean = field.mean()
                if field.name in target_state.fields:
                    own = target_state.fields[field.name].values[field.indices]
                    target_mean = field.discretization.integrate(own) / field.discretization.measure
            operations.append(CouplingOperation(
                pair.source, target_id, target_state.current_time, 0.0, pair.mechanism, pair.coefficient,
                pair.area, source_mean, target_mean))
        return data, operations

    # ---- advancing, only ever through these ----

    def _absorb(self, domain_id: str, result: DomainStepResult, operations: list[CouplingOperation]):
        """Attribute what the domain absorbed to the operations that delivered it."""
        attributed = set()
        for op in operations:
            op.dt = result.duration
            if op.source in attributed:
                continue
            attributed.add(op.source)
            op.realized_energy = result.absorbed_energy.get(op.source, 0.0)
            op.realized_momentum = np.asarray(result.absorbed_momentum.get(op.source, np.zeros(3)), dtype=float)
        operations = list(operations)
        if result.external_energy != 0 or np.any(result.external_momentum != 0):
            operations.append(CouplingOperation(
                EXTERNAL_SOURCE, domain_id, result.start_time, result.duration,
                realized_energy=result.external_energy,
                realized_momentum=np.asarray(result.external_momentum, dtype=float)))
        self.operations.extend(operations)

        if domain_id in self.results:
            self.results[domain_id] = self.results[domain_id].merge(result)
        else:
            self.results[domain_id] = result
        self.history.record(self.state(domain_id))
        return result

    def advance(self, domain_id: str, dt: float, data: CouplingData, operations) -> DomainStepResult:
        result = self.domain(domain_id).advance_time_step(dt, data, self.spatial_context)
        return self._absorb(domain_id, result, operations)

    def advance_to(self, domain_id: str, target_time: float, data: CouplingData, operations) -> DomainStepResult:
        result = self.domain(domain_id).advance_to_time_with_coupling(target_time, data, self.spatial_context)
        return self._absorb(domain_id, result, operations)

    def trial(self, domain_id: str, dt: float, data: CouplingData) -> DomainState:
        return self.domain(domain_id).update_with_coupled_solution(dt, data, self.spatial_context)

    def finalize(self, domain_id: str, solution: DomainState, operations) -> DomainStepResult:
        result = self.domain(domain_id).finalize_step_with_solution(solution, self.spatial_context)
        return self._absorb(domain_id, result, operations)

    # ---- prediction ----

    def preferred_prediction(self, domain_id: str) -> PredictionMethod:
        return self.domain(domain_id).get_preferred_prediction_method()

    def predict(self, domain_id: str, time: float, method: PredictionMethod | None = None) -> DomainState:
        method = self.preferred_prediction(domain_id) if method is None else method
        return predict_state(self.history.states(domain_id), time, method, self.domain(domain_id))

    # ---- all or nothing ----

    def checkpoint(self) -> Checkpoint:
        return Checkpoint(
            {domain_id: self.state(domain_id) for domain_id in self.order},
            len(self.operations), dict(self.results), self.history.snapshot())

    def rollback(self, checkpoint: Checkpoint):
        for [domain_id, state] in checkpoint.states.items():
            self.domain(domain_id).restore_state(state)
        del self.operations[checkpoint.nb_operations:]
        self.results = dict(checkpoint.results)
        self.history.rollback(checkpoint.history)
