"""
Immutable snapshots of a domain.

A new snapshot is created each time a domain completes a step. Snapshots are never
mutated; the next one supersedes them. They are used for temporal interpolation,
prediction and rollback.
"""

import dataclasses as dc
import types
from typing import Mapping

import numpy as np

from .field import Discretization, PhysicsField


@dc.dataclass(frozen=True, eq=False)
class DomainState:

    domain_id: str
    kind: str
    current_time: float
    fields: Mapping[str, PhysicsField]
    energy: float
    momentum: np.ndarray
    rates: Mapping[str, np.ndarray] = dc.field(default_factory=dict)
    """time derivatives of the field values, when the domain knows them"""
    energy_forms: Mapping[str, float] = dc.field(default_factory=dict)
    """e.g. kinetic / internal, summing up to `energy`"""
    capacities: Mapping[str, float] = dc.field(default_factory=dict)
    """per conserved quantity, how much of a correction the domain can absorb (mass, heat capacity)"""
    stiffness: float = 1.0
    step_index: int = 0

    def __post_init__(self):
        if not self.fields:
            raise ValueError(f"State of domain '{self.domain_id}' has no field.")
        object.__setattr__(self, "current_time", float(self.current_time))
        object.__setattr__(self, "energy", float(self.energy))
        momentum = np.zeros(3)
        momentum[:np.size(self.momentum)] = np.ravel(self.momentum)
        momentum.setflags(write=False)
        object.__setattr__(self, "momentum", momentum)
        object.__setattr__(self, "fields", types.MappingProxyType(dict(self.fields)))
        rates = {}
        for [name, rate] in self.rates.items():
            rate = np.array(rate, dtype=float)
            rate.setflags(write=False)
            rates[name] = rate
        object.__setattr__(self, "rates", types.MappingProxyType(rates))
        object.__setattr__(self, "energy_forms", types.MappingProxyType(dict(self.energy_forms)))
        object.__setattr__(self, "capacities", types.MappingProxyType(dict(self.capacities)))

    @property
    def field_names(self) -> list[str]:
        return sorted(self.fields)

    @property
    def field_values(self) -> dict[str, np.ndarray]:
        return {name: field.values for [name, field] in self.fields.items()}

    @property
    def discretization(self) -> Discretization:
        return self.fields[self.field_names[0]].discretization

    def has_rates(self, name: str) -> bool:
        return name in self.rates

    def solution_vector(self) -> np.ndarray:
        """All field values flattened, in the order of the sorted field names."""
        return np.concatenate([self.fields[name].values.ravel() for name in self.field_names])

    def with_solution_vector(self, vector: np.ndarray) -> "DomainState":
        """A projection of this state with the field values replaced.

        Derived quantities (energy, momentum, rates) are kept from this state, so the result
        is only meant as a coupling estimate.
        """
        fields = {}
        offset = 0
        for name in self.field_names:
            field = self.fields[name]
            size = field.values.size
            fields[name] = field.with_values(np.reshape(vector[offset:offset + size], field.values.shape))
            offset += size
        if offset != np.size(vector):
            raise ValueError(f"Expect a vector of {offset} values, got {np.size(vector)}.")
        return dc.replace(self, fields=fields)

    def is_identical_to(self, other: "DomainState") -> bool:
        """Bitwise comparison of everything the snapshot holds."""
        if (self.domain_id != other.domain_id or self.current_time != other.current_time
                or self.energy != other.energy or self.step_index != other.step_index
                or not np.array_equal(self.momentum, other.momentum)
                or self.field_names != other.field_names
                or sorted(self.rates) != sorted(other.rates)
                or dict(self.energy_forms) != dict(other.energy_forms)):
            return False
        for name in self.field_names:
            if not np.array_equal(self.fields[name].values, other.fields[name].values):
                return False
        for name in self.rates:
            if not np.array_equal(self.rates[name], other.rates[name]):
                return False
        return True
