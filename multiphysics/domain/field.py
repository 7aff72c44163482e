"""Use NumPy arrays to store field data sampled over a spatial discretization.

Conventions on the array dimensions:
- node coordinates have shape (nb_nodes, nb_dims)
- scalar field values have shape (nb_nodes,)
- vector / tensor field values have shape (nb_nodes, nb_components)

Integrals over the domain are weighted sums over the nodes.
"""

import dataclasses as dc
import sys
if sys.version_info >= (3, 11):
    from enum import StrEnum
else:
    from backports.strenum import StrEnum

import numpy as np


node_ax = 0


class ConservationLaw(StrEnum):
    energy = "energy"
    momentum = "momentum"
    mass = "mass"
    charge = "charge"


def _readonly(array) -> np.ndarray:
    array = np.array(array, dtype=float, copy=True)
    array.setflags(write=False)
    return array


@dc.dataclass(frozen=True, eq=False)
class Discretization:
    """Nodes of a domain together with their integration weights."""

    nodes: np.ndarray
    """(nb_nodes, nb_dims) coordinates"""
    weights: np.ndarray
    """(nb_nodes,) integration weights, e.g. cell volumes"""

    def __post_init__(self):
        nodes = np.array(self.nodes, dtype=float)
        if nodes.ndim == 1:
            nodes = nodes[:, np.newaxis]
        weights = np.ravel(self.weights)
        if nodes.shape[0] != weights.size:
            raise ValueError(f"Got {nodes.shape[0]} nodes but {weights.size} weights.")
        object.__setattr__(self, "nodes", _readonly(nodes))
        object.__setattr__(self, "weights", _readonly(weights))

    @classmethod
    def uniform(cls, origin: float, length: float, nb_nodes: int):
        """Cell-centred nodes of a 1D segment [origin, origin + length]."""
        if nb_nodes < 1:
            raise ValueError("A discretization needs at least one node.")
        h = length / nb_nodes
        nodes = origin + h * (np.arange(nb_nodes) + 0.5)
        return cls(nodes, np.full(nb_nodes, h))

    @property
    def nb_nodes(self) -> int:
        return self.nodes.shape[0]

    @property
    def nb_dims(self) -> int:
        return self.nodes.shape[1]

    @property
    def measure(self) -> float:
        return float(np.sum(self.weights))

    def identical_to(self, other: "Discretization") -> bool:
        return (self.nodes.shape == other.nodes.shape
                and np.array_equal(self.nodes, other.nodes)
                and np.array_equal(self.weights, other.weights))

    def restrict(self, mask: np.ndarray) -> "Discretization":
        return Discretization(self.nodes[mask], self.weights[mask])

    def integrate(self, values: np.ndarray):
        """Weighted sum over nodes. A float for scalar values, an array for vector values."""
        total = np.tensordot(self.weights, values, axes=(0, node_ax))
        if np.ndim(total) == 0:
            return float(total)
        return total


@dc.dataclass(frozen=True)
class InterfaceRegion:
    """Axis-aligned box where two domains exchange fields."""

    name: str
    lower: tuple[float, ...]
    upper: tuple[float, ...]

    def __post_init__(self):
        if len(self.lower) != len(self.upper):
            raise ValueError(f"Region '{self.name}' has bounds of different dimensions.")
        object.__setattr__(self, "lower", tuple(float(v) for v in self.lower))
        object.__setattr__(self, "upper", tuple(float(v) for v in self.upper))

    def contains(self, nodes: np.ndarray) -> np.ndarray:
        nb_dims = len(self.lower)
        coords = np.atleast_2d(nodes)[:, :nb_dims]
        return np.all((coords >= np.asarray(self.lower)) & (coords <= np.asarray(self.upper)), axis=1)


@dc.dataclass(frozen=True, eq=False)
class PhysicsField:
    """A named quantity sampled over the discretization of one domain.

    `support` keeps the indices of the nodes in the owning domain, so that a field
    restricted to an interface region can be put back in place.
    """

    name: str
    values: np.ndarray
    discretization: Discretization
    conservation_law: ConservationLaw | None = None
    lower_bound: float | None = None
    upper_bound: float | None = None
    support: np.ndarray | None = None

    def __post_init__(self):
        values = _readonly(self.values)
        if values.ndim == 0 or values.shape[0] != self.discretization.nb_nodes:
            raise ValueError(
                f"Field '{self.name}' has values of shape {values.shape} "
                f"on {self.discretization.nb_nodes} nodes.")
        object.__setattr__(self, "values", values)
        if self.support is not None:
            support = np.array(self.support, dtype=int)
            support.setflags(write=False)
            object.__setattr__(self, "support", support)
        if self.conservation_law is not None:
            object.__setattr__(self, "conservation_law", ConservationLaw(self.conservation_law))

    @property
    def is_vector(self) -> bool:
        return self.values.ndim > 1

    @property
    def indices(self) -> np.ndarray:
        if self.support is None:
            return np.arange(self.discretization.nb_nodes)
        return self.support

    def total(self):
        """Integral over the domain."""
        return self.discretization.integrate(self.values)

    def mean(self):
        return self.total() / self.discretization.measure

    def norm(self) -> float:
        return float(np.linalg.norm(self.values))

    def sample_at(self, region: InterfaceRegion | None) -> "PhysicsField":
        """Restrict the field to the nodes inside a region. `None` means the whole domain."""
        if region is None:
            return self
        mask = region.contains(self.discretization.nodes)
        if not np.any(mask):
            raise ValueError(f"Field '{self.name}' has no node inside region '{region.name}'.")
        return dc.replace(
            self, values=self.values[mask], discretization=self.discretization.restrict(mask),
            support=self.indices[mask])

    def with_values(self, values: np.ndarray) -> "PhysicsField":
        return dc.replace(self, values=values)

    def violates_bounds(self, atol: float = 0.0) -> bool:
        if self.lower_bound is not None and np.any(self.values < self.lower_bound - atol):
            return True
        if self.upper_bound is not None and np.any(self.values > self.upper_bound + atol):
            return True
        return False


FieldCollection = dict[str, PhysicsField]
