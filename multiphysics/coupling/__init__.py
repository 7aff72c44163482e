"""
Coupling module: exchanging fields between domains and keeping the books.

Provides:
- CouplingPair, TransferSpec, SpatialContext: where and what is exchanged
- CouplingInterfaceManager: mapping fields across an interface
- ConservationEnforcer (energy, momentum): post-step audits and corrections
- ConservationLedger: append-only audit trail
"""

from .pair import CouplingPair, MappingStrategy, SpatialContext, TransferMechanism, TransferSpec
from .interface import CouplingInterfaceManager, FieldTransferRecord, FieldTransferResult, redistribute_with_bounds
from .ledger import ConservationLedger, LedgerEntry
from .conservation import (
    EXTERNAL_SOURCE,
    ConservationEnforcer,
    ConservationReport,
    CorrectionAction,
    CorrectionStrategy,
    CouplingOperation,
    EnergyConservationEnforcer,
    InterfaceAudit,
    MomentumConservationEnforcer,
    Violation,
    ViolationKind,
)
