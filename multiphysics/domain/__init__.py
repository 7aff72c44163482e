"""
Domain module: what the coupling core knows about a physics domain.

Provides:
- Discretization, InterfaceRegion, PhysicsField: data living on a domain
- DomainState: immutable snapshots used for interpolation and rollback
- PhysicsDomain: the interface each concrete domain implements
"""

from .field import ConservationLaw, Discretization, FieldCollection, InterfaceRegion, PhysicsField
from .state import DomainState
from .base import (
    CorrectionRecord,
    CouplingData,
    DomainKind,
    DomainStepResult,
    PhysicsDomain,
    PredictionMethod,
    count_substeps,
)
