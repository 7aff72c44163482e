"""
Implicit coupling: iterate the domain updates until their exchanged quantities agree.
"""

import logging

import numpy as np

from multiphysics.domain import DomainState
from multiphysics.errors import ConvergenceFailure
from multiphysics.numerics.fixed_point import FixedPointIteration
from .context import StepContext
from .results import CouplingStatus


logger = logging.getLogger(__name__)


class CoupledSystemView:
    """Read-only projection of the exchanged field values of several domains as one vector."""

    def __init__(self, templates: dict[str, DomainState]):
        self.domain_ids = list(templates)
        self.templates = dict(templates)
        self.sizes = [templates[domain_id].solution_vector().size for domain_id in self.domain_ids]

    @property
    def size(self) -> int:
        return sum(self.sizes)

    def pack(self, states: dict[str, DomainState]) -> np.ndarray:
        return np.concatenate([states[domain_id].solution_vector() for domain_id in self.domain_ids])

    def unpack(self, x: np.ndarray) -> dict[str, DomainState]:
        if np.size(x) != self.size:
            raise ValueError(f"Expect a vector of {self.size} values, got {np.size(x)}.")
        states = {}
        offset = 0
        for [domain_id, size] in zip(self.domain_ids, self.sizes):
            states[domain_id] = self.templates[domain_id].with_solution_vector(x[offset:offset + size])
            offset += size
        return states


def solve_coupled_step(context: StepContext, domain_ids: list[str], target_time: float,
                       solver: FixedPointIteration) -> CouplingStatus:
    """
    Advance the domains to `target_time` as one coupled system.

    Each sweep builds the coupling data of every domain from the same estimate before any of
    them is updated, and updates them in the fixed order of `domain_ids`. Nothing is committed
    unless the iteration converges.

    Raises
    ------
    ConvergenceFailure
        With the residual trace, when `solver.max_iterations` sweeps are not enough.
    """
    steps = {}
    for domain_id in domain_ids:
        dt = target_time - context.time(domain_id)
        if dt <= 0:
            raise ValueError(f"Domain '{domain_id}' is already at {context.time(domain_id)}, not before {target_time}.")
        steps[domain_id] = dt

    start = context.states(domain_ids)
    view = CoupledSystemView(start)
    trials: dict[str, DomainState] = {}
    operations = {}

    def update(x: np.ndarray) -> np.ndarray:
        estimates = view.unpack(x)
        couplings = {domain_id: context.build_coupling(domain_id, target_time, estimates) for domain_id in domain_ids}
        for domain_id in domain_ids:
            [data, ops] = couplings[domain_id]
            trials[domain_id] = context.trial(domain_id, steps[domain_id], data)
            operations[domain_id] = ops
        return view.pack(trials)

    logger.info(f"Implicit coupling of {domain_ids} to t={target_time:.6g}")
    result = solver.solve(update, view.pack(start))
    if not result.is_converged:
        raise ConvergenceFailure(
            f"Implicit coupling of {domain_ids} did not converge in {result.nb_iterations} iterations, "
            f"last residual {result.residuals[-1]:.3e}.",
            result.residuals, result.nb_iterations)

    for domain_id in domain_ids:
        context.finalize(domain_id, trials[domain_id], operations[domain_id])
    return CouplingStatus(True, result.nb_iterations, list(result.residuals))
