"""
Strategies and result records of a coupled step.
"""

import dataclasses as dc
import sys
if sys.version_info >= (3, 11):
    from enum import StrEnum
else:
    from backports.strenum import StrEnum

from multiphysics.coupling.conservation import ConservationReport
from multiphysics.domain import DomainStepResult


class CouplingStrategy(StrEnum):
    explicit = "explicit"
    implicit = "implicit"
    staggered = "staggered"
    adaptive = "adaptive"


class SteppingStrategy(StrEnum):
    uniform = "uniform"
    sub_cycling = "sub_cycling"
    adaptive_multirate = "adaptive_multirate"
    implicit_explicit = "implicit_explicit"


class SyncStrategy(StrEnum):
    direct_advancement = "direct_advancement"
    iterative_convergence = "iterative_convergence"
    predictor_corrector = "predictor_corrector"


class SyncPhase(StrEnum):
    predicting = "predicting"
    correcting = "correcting"
    validating = "validating"
    needs_additional_correction = "needs_additional_correction"
    converged = "converged"
    failed = "failed"


@dc.dataclass
class CouplingStatus:
    is_converged: bool = True
    nb_iterations: int = 0
    residuals: list[float] = dc.field(default_factory=list)

    @property
    def final_residual(self) -> float | None:
        return self.residuals[-1] if self.residuals else None


@dc.dataclass
class StabilityReport:
    """Advisory only, never a reason to reject a step."""

    warnings: list[str] = dc.field(default_factory=list)
    growth_factors: dict[str, float] = dc.field(default_factory=dict)

    @property
    def is_stable(self) -> bool:
        return not self.warnings


@dc.dataclass
class SynchronizationResult:
    target_time: float
    strategy: SyncStrategy
    phases: list[SyncPhase] = dc.field(default_factory=list)
    nb_iterations: int = 0
    divergences: list[float] = dc.field(default_factory=list)
    """max difference between prediction and correction, per correction round"""
    domain_results: dict[str, DomainStepResult] = dc.field(default_factory=dict)

    @property
    def is_converged(self) -> bool:
        return bool(self.phases) and self.phases[-1] == SyncPhase.converged


@dc.dataclass
class TimeStepResult:
    strategy: SteppingStrategy
    start_time: float
    end_time: float
    ratios: dict[str, int] = dc.field(default_factory=dict)
    """number of sub-steps each domain took"""
    domain_results: dict[str, DomainStepResult] = dc.field(default_factory=dict)
    synchronizations: list[SynchronizationResult] = dc.field(default_factory=list)
    implicit_status: CouplingStatus | None = None


@dc.dataclass
class StepResult:
    """Everything the caller learns about one committed global step."""

    step_index: int
    start_time: float
    end_time: float
    strategy: CouplingStrategy
    """the strategy actually used, for adaptive coupling the one it selected"""
    domain_results: dict[str, DomainStepResult]
    coupling_status: CouplingStatus
    conservation: dict[str, ConservationReport] = dc.field(default_factory=dict)
    """per conserved quantity"""
    stability: StabilityReport = dc.field(default_factory=StabilityReport)
    time_step_result: TimeStepResult | None = None

    @property
    def time_step(self) -> float:
        return self.end_time - self.start_time

    @property
    def is_conserved(self) -> bool:
        return all(report.is_conserved for report in self.conservation.values())
