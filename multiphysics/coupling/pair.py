"""
Declarations of where and how two domains exchange fields.
"""

import dataclasses as dc
import sys
if sys.version_info >= (3, 11):
    from enum import StrEnum
else:
    from backports.strenum import StrEnum

from multiphysics.domain import InterfaceRegion


class MappingStrategy(StrEnum):
    auto = "auto"
    direct_transfer = "direct_transfer"
    interpolation_based = "interpolation_based"
    conservation_preserving = "conservation_preserving"
    physics_aware = "physics_aware"


class TransferMechanism(StrEnum):
    heat_conduction = "heat_conduction"
    mechanical_work = "mechanical_work"
    electromagnetic_force = "electromagnetic_force"
    viscous_shear = "viscous_shear"
    chemical_reaction = "chemical_reaction"


@dc.dataclass(frozen=True)
class TransferSpec:
    """What to transfer across one interface and how."""

    fields: tuple[str, ...]
    strategy: MappingStrategy = MappingStrategy.auto
    tolerance: float = 1e-10
    """relative tolerance on the conservation of the field total"""
    lower_bound: float | None = None
    """overrides the bound declared by the field"""
    upper_bound: float | None = None
    source: str | None = None

    def __post_init__(self):
        if isinstance(self.fields, str):
            object.__setattr__(self, "fields", (self.fields,))
        else:
            object.__setattr__(self, "fields", tuple(self.fields))
        object.__setattr__(self, "strategy", MappingStrategy(self.strategy))
        if self.tolerance <= 0:
            raise ValueError("Transfer tolerance must be positive.")


@dc.dataclass(frozen=True)
class CouplingPair:
    """
    The source domain delivers `spec.fields` to the target domain at an interface region.

    `coefficient` and `area` feed the first-principles estimate of what crosses the
    interface (e.g. heat transfer coefficient, contact area).
    """

    source: str
    target: str
    spec: TransferSpec
    region: str | None = None
    mechanism: TransferMechanism | None = None
    coefficient: float = 1.0
    area: float = 1.0

    def __post_init__(self):
        if self.source == self.target:
            raise ValueError(f"Domain '{self.source}' cannot be coupled to itself.")
        if self.mechanism is not None:
            object.__setattr__(self, "mechanism", TransferMechanism(self.mechanism))
        if self.spec.source != self.source:
            object.__setattr__(self, "spec", dc.replace(self.spec, source=self.source))

    @property
    def strength(self) -> float:
        return abs(self.coefficient * self.area)

    @property
    def interface_key(self) -> tuple[str, str]:
        """Identifies the interface regardless of the direction."""
        return tuple(sorted((self.source, self.target)))


class SpatialContext:
    """Geometric information supplied by the caller: the interface regions, by name."""

    regions: dict[str, InterfaceRegion]

    def __init__(self, regions: dict[str, InterfaceRegion] | list[InterfaceRegion] = ()):
        if isinstance(regions, dict):
            self.regions = dict(regions)
        else:
            self.regions = {region.name: region for region in regions}

    def resolve(self, region: str | InterfaceRegion | None) -> InterfaceRegion | None:
        if region is None or isinstance(region, InterfaceRegion):
            return region
        try:
            return self.regions[region]
        except KeyError:
            raise ValueError(f"Unknown interface region: {region}") from None
