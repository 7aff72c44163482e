"""
Reference physics domains.

Each domain relaxes its primary field towards the fields its partners deliver, with the
exact solution of du/dt = k (u_partner - u) over a step of frozen coupling data:

    u_new = u + sum_s (u_s - u) * (1 - exp(-k dt)) / count

where `count` is the number of partners delivering at a node. Every change is attributed
to the partner that caused it, so the exchanged energy and momentum are known exactly.
Nodes with no partner relax towards `ambient` (a declared external source) when it is set,
and hold their value otherwise.
"""

import logging
import math
import typing

import numpy as np

from multiphysics.domain import (
    ConservationLaw,
    CorrectionRecord,
    CouplingData,
    Discretization,
    DomainKind,
    DomainState,
    DomainStepResult,
    FieldCollection,
    PhysicsDomain,
    PhysicsField,
    PredictionMethod,
    count_substeps,
)


logger = logging.getLogger(__name__)


class Trial(typing.NamedTuple):
    """A computed but not committed step."""
    values: np.ndarray
    rates: np.ndarray
    time: float
    internal_energy: float
    coupling: CouplingData | None
    result: DomainStepResult


class RelaxationDomain(PhysicsDomain):
    """Common stepping logic. Subclasses define how the field carries energy and momentum."""

    field_name: str
    conservation_law: ConservationLaw | None = None
    lower_bound: float | None = None
    upper_bound: float | None = None
    nb_components: int = 0
    """0 for a scalar field, otherwise the number of vector components"""

    def __init__(self, domain_id: str, kind: str, discretization: Discretization, initial,
                 rate: float = 1.0, capacity: float = 1.0, natural_time_step: float = 1e-2,
                 ambient=None, stiff: bool | None = None, coupled_field: str | None = None,
                 start_time: float = 0.0, record_coupling: bool = False):
        if natural_time_step <= 0:
            raise ValueError(f"Domain '{domain_id}' needs a positive natural time step.")
        if rate < 0 or capacity < 0:
            raise ValueError(f"Domain '{domain_id}' needs a non-negative rate and capacity.")
        self.domain_id = domain_id
        self.kind = DomainKind(kind)
        self.discretization = discretization
        self.rate = float(rate)
        self.capacity = float(capacity)
        self.natural_time_step = float(natural_time_step)
        self.ambient = None if ambient is None else np.asarray(ambient, dtype=float)
        self.coupled_field = coupled_field if coupled_field is not None else self.field_name
        self._stiff = stiff

        self._values = self._broadcast(initial)
        self._rates = np.zeros_like(self._values)
        self._time = float(start_time)
        self._step_index = 0
        self._internal_energy = 0.0
        self._received: CouplingData | None = None
        self._pending: tuple[DomainState, Trial] | None = None
        self.coupling_log: list[tuple[float, dict[str, np.ndarray]]] | None = [] if record_coupling else None

    # ---- properties of the carrier, overridden by subclasses ----

    def _broadcast(self, values) -> np.ndarray:
        n = self.discretization.nb_nodes
        shape = (n,) if self.nb_components == 0 else (n, self.nb_components)
        return np.array(np.broadcast_to(np.asarray(values, dtype=float), shape))

    def _field_energy(self, values: np.ndarray) -> float:
        raise NotImplementedError

    def _energy_moved(self, delta: np.ndarray, old: np.ndarray, partner: np.ndarray) -> float:
        """Energy carried by the change `delta` caused by a partner holding `partner`."""
        raise NotImplementedError

    def _momentum_moved(self, delta: np.ndarray) -> np.ndarray:
        return np.zeros(3)

    def _momentum_of(self, values: np.ndarray) -> np.ndarray:
        return np.zeros(3)

    def _energy_forms(self, values: np.ndarray, internal_energy: float) -> dict[str, float]:
        return {}

    def _capacities(self) -> dict[str, float]:
        raise NotImplementedError

    # ---- state ----

    def _make_state(self, values, rates, time, internal_energy, step_index) -> DomainState:
        field = PhysicsField(self.field_name, values, self.discretization, self.conservation_law,
                             self.lower_bound, self.upper_bound)
        return DomainState(
            domain_id=self.domain_id,
            kind=str(self.kind),
            current_time=time,
            fields={self.field_name: field},
            energy=self._field_energy(values) + internal_energy,
            momentum=self._momentum_of(values),
            rates={self.field_name: rates},
            energy_forms=self._energy_forms(values, internal_energy),
            capacities=self._capacities(),
            stiffness=self.rate,
            step_index=step_index,
        )

    def get_current_state(self) -> DomainState:
        return self._make_state(self._values, self._rates, self._time, self._internal_energy, self._step_index)

    def get_current_time(self) -> float:
        return self._time

    def restore_state(self, state: DomainState) -> None:
        if state.domain_id != self.domain_id:
            raise ValueError(f"Cannot restore '{self.domain_id}' from a state of '{state.domain_id}'.")
        self._values = np.array(state.fields[self.field_name].values)
        self._rates = np.array(state.rates[self.field_name])
        self._time = state.current_time
        self._step_index = state.step_index
        self._internal_energy = state.energy_forms.get("internal", 0.0)
        self._pending = None
        if self.coupling_log is not None:
            # entries past the restored time belong to steps that are undone
            self.coupling_log = [entry for entry in self.coupling_log if entry[0] <= state.current_time + 1e-12]

    @property
    def is_stiff(self) -> bool:
        if self._stiff is not None:
            return self._stiff
        # explicit stability limit of the relaxation
        return self.rate * self.natural_time_step > 2.0

    def calculate_total_energy(self, spatial_context=None) -> float:
        return self._field_energy(self._values) + self._internal_energy

    def calculate_total_momentum(self, spatial_context=None) -> np.ndarray:
        return self._momentum_of(self._values)

    # ---- stepping ----

    def _partners(self, coupling: CouplingData | None):
        """(source, node indices, values at those nodes) for every partner delivering the coupled field."""
        if coupling is None:
            return []
        partners = []
        for [source, field] in sorted(coupling.collect(self.coupled_field).items()):
            idx = field.indices
            if np.any(idx >= self.discretization.nb_nodes):
                raise ValueError(f"Field from '{source}' does not fit on the nodes of '{self.domain_id}'.")
            partners.append((source, idx, self._broadcast_partner(field.values, idx.size)))
        return partners

    def _broadcast_partner(self, values, nb_nodes):
        shape = (nb_nodes,) if self.nb_components == 0 else (nb_nodes, self.nb_components)
        return np.array(np.broadcast_to(values, shape))

    def _integrate(self, dt: float, coupling: CouplingData | None) -> Trial:
        if dt <= 0:
            raise ValueError(f"Domain '{self.domain_id}' cannot advance by a non-positive step {dt}.")
        old = self._values
        alpha = -math.expm1(-self.rate * dt)
        partners = self._partners(coupling)

        count = np.zeros(self.discretization.nb_nodes)
        for [_, idx, _] in partners:
            count[idx] += 1
        covered = count > 0
        per_node = (slice(None),) + (np.newaxis,) * (old.ndim - 1)

        new = np.array(old)
        absorbed_energy = {}
        absorbed_momentum = {}
        for [source, idx, values] in partners:
            delta = np.zeros_like(old)
            delta[idx] = (values - old[idx]) * (alpha / count[idx])[per_node]
            partner = np.array(old)
            partner[idx] = values
            absorbed_energy[source] = absorbed_energy.get(source, 0.0) + self._energy_moved(delta, old, partner)
            absorbed_momentum[source] = absorbed_momentum.get(source, np.zeros(3)) + self._momentum_moved(delta)
            new += delta

        external_energy = 0.0
        external_momentum = np.zeros(3)
        if self.ambient is not None and not np.all(covered):
            delta = np.zeros_like(old)
            partner = np.array(old)
            partner[~covered] = self.ambient
            delta[~covered] = (partner[~covered] - old[~covered]) * alpha
            external_energy = self._energy_moved(delta, old, partner)
            external_momentum = self._momentum_moved(delta)
            new += delta

        internal_energy = self._internal_energy
        if self.nb_components > 0:
            # the received energy not showing up in the field is dissipated
            received = sum(absorbed_energy.values()) + external_energy
            internal_energy += received - (self._field_energy(new) - self._field_energy(old))

        if alpha > 0:
            rates = self.rate * (new - old) * (1 - alpha) / alpha
        else:
            rates = np.zeros_like(old)
        error_estimate = float(np.max(np.abs(new - old), initial=0.0)) * min(1.0, self.rate * dt) / 2

        end_time = self._time + dt
        result = DomainStepResult(
            self.domain_id, self._time, end_time, 1, absorbed_energy, absorbed_momentum,
            external_energy, external_momentum, error_estimate)
        return Trial(new, rates, end_time, internal_energy, coupling, result)

    def _commit(self, trial: Trial) -> DomainStepResult:
        self._values = trial.values
        self._rates = trial.rates
        self._time = trial.time
        self._internal_energy = trial.internal_energy
        self._pending = None
        self._step_index += 1
        if self.coupling_log is not None and trial.coupling is not None:
            self.coupling_log.append((
                trial.coupling.time,
                {source: field.values for [source, field] in trial.coupling.collect(self.coupled_field).items()}))
        return trial.result

    def advance_time_step(self, dt, coupling_data, spatial_context=None) -> DomainStepResult:
        if coupling_data is None:
            coupling_data = self._received
        return self._commit(self._integrate(dt, coupling_data))

    def advance_to_time_with_coupling(self, target_time, coupling_data, spatial_context=None) -> DomainStepResult:
        if coupling_data is None:
            coupling_data = self._received
        start_time = self._time
        nb_steps = count_substeps(target_time - start_time, self.natural_time_step)
        if target_time < start_time - 1e-12:
            raise ValueError(f"Domain '{self.domain_id}' is at {start_time}, ahead of {target_time}.")
        if nb_steps == 0:
            return DomainStepResult(self.domain_id, start_time, start_time, nb_substeps=0)

        result = None
        for index in range(nb_steps):
            end_time = start_time + (index + 1) * self.natural_time_step
            if index == nb_steps - 1:
                end_time = target_time
            step = self._commit(self._integrate(end_time - self._time, coupling_data))
            result = step if result is None else result.merge(step)
        # land exactly on the target, without rounding from the sum of steps
        self._time = float(target_time)
        result.end_time = self._time
        return result

    def update_with_coupled_solution(self, dt, coupling_data, spatial_context=None) -> DomainState:
        trial = self._integrate(dt, coupling_data)
        state = self._make_state(trial.values, trial.rates, trial.time, trial.internal_energy, self._step_index + 1)
        self._pending = (state, trial)
        return state

    def finalize_step_with_solution(self, solution, spatial_context=None) -> DomainStepResult:
        if self._pending is None or solution is not self._pending[0]:
            raise ValueError(f"Domain '{self.domain_id}' got a solution it did not compute.")
        return self._commit(self._pending[1])

    # ---- field exchange ----

    def extract_coupling_fields(self, target_domain_id: str) -> FieldCollection:
        state = self.get_current_state()
        return dict(state.fields)

    def receive_transferred_fields(self, fields: FieldCollection, spec) -> None:
        for field in fields.values():
            if np.any(field.indices >= self.discretization.nb_nodes):
                raise ValueError(f"Field '{field.name}' does not fit on the nodes of '{self.domain_id}'.")
        if self._received is None or self._received.time != self._time:
            self._received = CouplingData(self._time)
        source = getattr(spec, "source", None) or "received"
        self._received.fields.setdefault(source, {}).update(fields)

    @property
    def received(self) -> CouplingData | None:
        return self._received

    def predict_state(self, target_time: float) -> DomainState | None:
        if self.rate == 0:
            return None
        tau = target_time - self._time
        values = self._values + self._rates / self.rate * (-math.expm1(-self.rate * tau))
        rates = self._rates * math.exp(-self.rate * tau)
        return self._make_state(values, rates, target_time, self._internal_energy, self._step_index)


class ScalarRelaxationDomain(RelaxationDomain):
    """A conserved scalar density, e.g. temperature or concentration. E = c * integral(u)."""

    def _field_energy(self, values):
        return self.capacity * self.discretization.integrate(values)

    def _energy_moved(self, delta, old, partner):
        return self.capacity * self.discretization.integrate(delta)

    def _capacities(self):
        return {"energy": self.capacity * self.discretization.measure, "momentum": 0.0}

    def apply_energy_correction(self, delta: float, spatial_context=None) -> CorrectionRecord:
        heat_capacity = self.capacity * self.discretization.measure
        shift = delta / heat_capacity if heat_capacity > 0 else 0.0
        if self.lower_bound is not None:
            shift = max(shift, self.lower_bound - float(np.min(self._values)))
        if self.upper_bound is not None:
            shift = min(shift, self.upper_bound - float(np.max(self._values)))
        self._values = self._values + shift
        applied = shift * heat_capacity
        if not np.isclose(applied, delta):
            logger.info(f"Domain '{self.domain_id}' absorbed {applied:.3e} of a {delta:.3e} energy correction.")
        return CorrectionRecord(self.domain_id, ConservationLaw.energy, float(delta), float(applied))

    def apply_momentum_correction(self, delta, spatial_context=None) -> CorrectionRecord:
        return CorrectionRecord(self.domain_id, ConservationLaw.momentum, np.asarray(delta, dtype=float), np.zeros(3))


class ThermalDomain(ScalarRelaxationDomain):
    field_name = "temperature"
    conservation_law = ConservationLaw.energy
    lower_bound = 0.0

    def __init__(self, domain_id, discretization, initial, kind="thermal", **kwargs):
        super().__init__(domain_id, kind, discretization, initial, **kwargs)


class ChemicalDomain(ScalarRelaxationDomain):
    """`capacity` is the enthalpy carried by a unit of concentration."""
    field_name = "concentration"
    conservation_law = ConservationLaw.mass
    lower_bound = 0.0

    def __init__(self, domain_id, discretization, initial, kind="chemical", **kwargs):
        super().__init__(domain_id, kind, discretization, initial, **kwargs)


class FlowDomain(RelaxationDomain):
    """
    A velocity field carrying momentum m * integral(v) and kinetic energy.

    Exchanged energy is the work done at the mean interface velocity, so the part of it
    that does not show up as kinetic energy is dissipated into internal energy.
    `capacity` is the mass density.
    """

    field_name = "velocity"
    conservation_law = ConservationLaw.momentum
    nb_components = 3

    def __init__(self, domain_id, discretization, initial, kind="fluid", internal_energy: float = 0.0, **kwargs):
        super().__init__(domain_id, kind, discretization, initial, **kwargs)
        self._internal_energy = float(internal_energy)

    @property
    def mass(self) -> float:
        return self.capacity * self.discretization.measure

    def _kinetic(self, values):
        return 0.5 * self.capacity * self.discretization.integrate(np.sum(values**2, axis=-1))

    def _field_energy(self, values):
        return self._kinetic(values)

    def _energy_moved(self, delta, old, partner):
        interface_velocity = 0.5 * (old + partner)
        return self.capacity * self.discretization.integrate(np.sum(delta * interface_velocity, axis=-1))

    def _momentum_moved(self, delta):
        return self.capacity * self.discretization.integrate(delta)

    def _momentum_of(self, values):
        return self.capacity * self.discretization.integrate(values)

    def _energy_forms(self, values, internal_energy):
        return {"kinetic": self._kinetic(values), "internal": internal_energy}

    def _capacities(self):
        return {"energy": self.mass, "momentum": self.mass}

    def apply_energy_correction(self, delta: float, spatial_context=None) -> CorrectionRecord:
        self._internal_energy += delta
        return CorrectionRecord(self.domain_id, ConservationLaw.energy, float(delta), float(delta))

    def apply_momentum_correction(self, delta, spatial_context=None) -> CorrectionRecord:
        """Uniform velocity shift; the kinetic energy it costs is taken from internal energy."""
        delta = np.zeros(3) + np.asarray(delta, dtype=float)
        if self.mass == 0:
            return CorrectionRecord(self.domain_id, ConservationLaw.momentum, delta, np.zeros(3))
        shift = delta / self.mass
        kinetic_before = self._kinetic(self._values)
        self._values = self._values + shift
        self._internal_energy -= self._kinetic(self._values) - kinetic_before
        return CorrectionRecord(self.domain_id, ConservationLaw.momentum, delta, self._momentum_moved(
            np.broadcast_to(shift, self._values.shape)))


class SignalDomain(PhysicsDomain):
    """
    A domain following a prescribed signal f(t), e.g. a measured boundary condition.

    It ignores coupling data and carries no energy or momentum. Rates are the exact f'(t),
    so temporal interpolation between its snapshots is of cubic Hermite order.
    """

    def __init__(self, domain_id: str, discretization: Discretization, signal: typing.Callable[[float], float],
                 derivative: typing.Callable[[float], float], kind: str = "thermal",
                 field_name: str = "temperature", natural_time_step: float = 1e-1, start_time: float = 0.0):
        self.domain_id = domain_id
        self.kind = DomainKind(kind)
        self.discretization = discretization
        self.signal = signal
        self.derivative = derivative
        self.field_name = field_name
        self.natural_time_step = float(natural_time_step)
        self._time = float(start_time)
        self._step_index = 0

    def _state_at(self, time: float) -> DomainState:
        n = self.discretization.nb_nodes
        field = PhysicsField(self.field_name, np.full(n, self.signal(time)), self.discretization)
        return DomainState(
            self.domain_id, str(self.kind), time, {self.field_name: field}, 0.0, np.zeros(3),
            rates={self.field_name: np.full(n, self.derivative(time))},
            capacities={"energy": 0.0, "momentum": 0.0}, step_index=self._step_index)

    def get_current_state(self) -> DomainState:
        return self._state_at(self._time)

    def get_current_time(self) -> float:
        return self._time

    def get_preferred_prediction_method(self) -> PredictionMethod:
        return PredictionMethod.physics_based

    def predict_state(self, target_time: float) -> DomainState:
        return self._state_at(target_time)

    def _move_to(self, end_time: float) -> DomainStepResult:
        if end_time <= self._time:
            raise ValueError(f"Domain '{self.domain_id}' cannot move back from {self._time} to {end_time}.")
        result = DomainStepResult(self.domain_id, self._time, end_time)
        self._time = float(end_time)
        return result

    def advance_time_step(self, dt, coupling_data, spatial_context=None) -> DomainStepResult:
        return self._move_to(self._time + dt)

    def advance_to_time_with_coupling(self, target_time, coupling_data, spatial_context=None) -> DomainStepResult:
        if target_time == self._time:
            return DomainStepResult(self.domain_id, self._time, self._time, nb_substeps=0)
        result = self._move_to(target_time)
        result.nb_substeps = count_substeps(result.duration, self.natural_time_step)
        return result

    def update_with_coupled_solution(self, dt, coupling_data, spatial_context=None) -> DomainState:
        return self._state_at(self._time + dt)

    def finalize_step_with_solution(self, solution, spatial_context=None) -> DomainStepResult:
        return self._move_to(solution.current_time)

    def extract_coupling_fields(self, target_domain_id: str) -> FieldCollection:
        return dict(self.get_current_state().fields)

    def receive_transferred_fields(self, fields, spec) -> None:
        logger.debug(f"Domain '{self.domain_id}' follows a prescribed signal and ignores {sorted(fields)}.")

    def calculate_total_energy(self, spatial_context=None) -> float:
        return 0.0

    def calculate_total_momentum(self, spatial_context=None) -> np.ndarray:
        return np.zeros(3)

    def apply_energy_correction(self, delta, spatial_context=None) -> CorrectionRecord:
        return CorrectionRecord(self.domain_id, ConservationLaw.energy, float(delta), 0.0)

    def apply_momentum_correction(self, delta, spatial_context=None) -> CorrectionRecord:
        return CorrectionRecord(self.domain_id, ConservationLaw.momentum, np.asarray(delta, dtype=float), np.zeros(3))

    def restore_state(self, state: DomainState) -> None:
        self._time = state.current_time
        self._step_index = state.step_index
