"""
Simulation module: advancing the coupled domains through time.

Provides:
- PhysicsDomainManager: owns the domains, one global step at a time
- MultiScaleTimeStepper: sub-cycling and multi-rate integration
- TemporalSynchronizationManager: bringing domains to a common time
- SimulationIO: persistence of results
"""

from .results import (
    CouplingStatus,
    CouplingStrategy,
    StabilityReport,
    SteppingStrategy,
    StepResult,
    SyncPhase,
    SyncStrategy,
    SynchronizationResult,
    TimeStepResult,
)
from .context import StateHistory, StepContext
from .implicit import CoupledSystemView, solve_coupled_step
from .synchronization import SynchronizationPoint, SynchronizationSchedule, TemporalSynchronizationManager
from .stepper import MultiScaleTimeStepper
from .manager import PhysicsDomainManager
from .io import SimulationIO, NpyIO, Term
