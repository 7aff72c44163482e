"""
The narrow interface through which the coupling core drives a physics domain.

The internal solvers (Navier-Stokes, FEM, Maxwell, ...) live behind this interface.
Only the PhysicsDomainManager calls the mutating methods.
"""

import abc
import dataclasses as dc
import math
import sys
if sys.version_info >= (3, 11):
    from enum import StrEnum
else:
    from backports.strenum import StrEnum

import numpy as np

from .field import ConservationLaw, FieldCollection, PhysicsField
from .state import DomainState


class DomainKind(StrEnum):
    fluid = "fluid"
    structural = "structural"
    electromagnetic = "electromagnetic"
    thermal = "thermal"
    chemical = "chemical"
    particle = "particle"


class PredictionMethod(StrEnum):
    linear_extrapolation = "linear_extrapolation"
    taylor_series = "taylor_series"
    historical_trends = "historical_trends"
    physics_based = "physics_based"


@dc.dataclass
class CouplingData:
    """Fields delivered to one domain by its coupled partners, valid at `time`."""

    time: float
    fields: dict[str, FieldCollection] = dc.field(default_factory=dict)
    """keyed by the id of the source domain"""

    @property
    def is_empty(self) -> bool:
        return not any(self.fields.values())

    def collect(self, name: str) -> dict[str, PhysicsField]:
        """The field of the given name from every source providing it."""
        return {source: collection[name] for [source, collection] in self.fields.items() if name in collection}


@dc.dataclass
class DomainStepResult:
    """Outcome of advancing one domain, possibly over several sub-steps."""

    domain_id: str
    start_time: float
    end_time: float
    nb_substeps: int = 1
    absorbed_energy: dict[str, float] = dc.field(default_factory=dict)
    """energy received from each source domain"""
    absorbed_momentum: dict[str, np.ndarray] = dc.field(default_factory=dict)
    """momentum received from each source domain"""
    external_energy: float = 0.0
    """energy received from declared external sources / sinks"""
    external_momentum: np.ndarray = dc.field(default_factory=lambda: np.zeros(3))
    error_estimate: float = 0.0

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def merge(self, later: "DomainStepResult") -> "DomainStepResult":
        """Combine with the result of the step that directly follows this one."""
        absorbed_energy = dict(self.absorbed_energy)
        for [source, value] in later.absorbed_energy.items():
            absorbed_energy[source] = absorbed_energy.get(source, 0.0) + value
        absorbed_momentum = {source: np.array(value) for [source, value] in self.absorbed_momentum.items()}
        for [source, value] in later.absorbed_momentum.items():
            absorbed_momentum[source] = absorbed_momentum.get(source, np.zeros(3)) + value
        return DomainStepResult(
            self.domain_id,
            self.start_time,
            later.end_time,
            self.nb_substeps + later.nb_substeps,
            absorbed_energy,
            absorbed_momentum,
            self.external_energy + later.external_energy,
            self.external_momentum + later.external_momentum,
            max(self.error_estimate, later.error_estimate),
        )


@dc.dataclass
class CorrectionRecord:
    """What a domain actually did with a requested conservation correction."""

    domain_id: str
    quantity: ConservationLaw
    requested: float | np.ndarray
    applied: float | np.ndarray


class PhysicsDomain(abc.ABC):
    """One physics discipline's self-contained state and stepping logic."""

    domain_id: str
    kind: DomainKind
    natural_time_step: float

    @abc.abstractmethod
    def get_current_state(self) -> DomainState:
        """Snapshot of the committed state."""

    @abc.abstractmethod
    def get_current_time(self) -> float: ...

    @abc.abstractmethod
    def advance_time_step(self, dt: float, coupling_data: CouplingData | None,
                          spatial_context=None) -> DomainStepResult: ...

    @abc.abstractmethod
    def advance_to_time_with_coupling(self, target_time: float, coupling_data: CouplingData | None,
                                      spatial_context=None) -> DomainStepResult:
        """Advance until `current_time == target_time` exactly, with frozen coupling data."""

    @abc.abstractmethod
    def extract_coupling_fields(self, target_domain_id: str) -> FieldCollection: ...

    @abc.abstractmethod
    def receive_transferred_fields(self, fields: FieldCollection, spec) -> None: ...

    @abc.abstractmethod
    def calculate_total_energy(self, spatial_context=None) -> float: ...

    @abc.abstractmethod
    def calculate_total_momentum(self, spatial_context=None) -> np.ndarray: ...

    @abc.abstractmethod
    def apply_energy_correction(self, delta: float, spatial_context=None) -> CorrectionRecord: ...

    @abc.abstractmethod
    def apply_momentum_correction(self, delta: np.ndarray, spatial_context=None) -> CorrectionRecord: ...

    @abc.abstractmethod
    def update_with_coupled_solution(self, dt: float, coupling_data: CouplingData,
                                     spatial_context=None) -> DomainState:
        """Compute a trial state at `current_time + dt` without committing it."""

    @abc.abstractmethod
    def finalize_step_with_solution(self, solution: DomainState, spatial_context=None) -> DomainStepResult:
        """Commit the trial state returned by the latest `update_with_coupled_solution`."""

    @abc.abstractmethod
    def restore_state(self, state: DomainState) -> None:
        """Roll back to a snapshot taken by `get_current_state`."""

    def get_preferred_prediction_method(self) -> PredictionMethod:
        return PredictionMethod.linear_extrapolation

    def predict_state(self, target_time: float) -> DomainState | None:
        """Physics-based prediction of the state at `target_time`, if the domain has one."""
        return None

    @property
    def is_stiff(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.domain_id!r}, kind={self.kind!s})"


def count_substeps(duration: float, step: float) -> int:
    """Number of steps of at most `step` that cover `duration`; the last one may be shorter."""
    if duration <= 0:
        return 0
    return max(1, math.ceil(duration / step - 1e-9))
