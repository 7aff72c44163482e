"""
The only place that knows which class implements which kind of domain.
"""

from multiphysics.domain import Discretization, DomainKind, PhysicsDomain
from .reference import ChemicalDomain, FlowDomain, ThermalDomain


domain_classes = {
    DomainKind.thermal: ThermalDomain,
    DomainKind.chemical: ChemicalDomain,
    DomainKind.fluid: FlowDomain,
    DomainKind.structural: FlowDomain,
    DomainKind.particle: FlowDomain,
    DomainKind.electromagnetic: FlowDomain,
}


def create_domain(kind: str, domain_id: str, discretization: Discretization, initial, **params) -> PhysicsDomain:
    """
    Create a reference domain of the given kind.

    Parameters
    ----------
    kind : str
        One of the `DomainKind` names.
    domain_id : str
        Unique name of the domain.
    discretization : Discretization
        Nodes and integration weights.
    initial : float or array
        Initial value of the primary field.
    **params
        Passed to the domain constructor, e.g. rate, capacity, natural_time_step.
    """
    try:
        kind = DomainKind(kind)
    except ValueError:
        raise ValueError(f"Unknown domain kind: {kind}") from None
    return domain_classes[kind](domain_id, discretization, initial, kind=kind, **params)
