"""
Errors surfaced to the caller of a coupled step. None of them is retried internally.
"""


class CouplingError(Exception):
    """Base class of the errors raised by the coupling core."""


class DomainNotFound(CouplingError, KeyError):

    def __init__(self, domain_id: str, context: str = ""):
        self.domain_id = domain_id
        message = f"Domain '{domain_id}' does not exist"
        if context:
            message += f" ({context})"
        super().__init__(message)

    def __str__(self):
        return self.args[0]


class ConvergenceFailure(CouplingError):
    """An iterative coupling did not converge. The step was not committed."""

    def __init__(self, message: str, trace: list[float], nb_iterations: int):
        super().__init__(message)
        self.trace = list(trace)
        self.nb_iterations = nb_iterations


class SynchronizationFailure(ConvergenceFailure):
    """Domains could not be brought to a common time within the allowed corrections."""

    def __init__(self, message: str, trace: list[float], nb_iterations: int, phases: list[str] = ()):
        super().__init__(message, trace, nb_iterations)
        self.phases = list(phases)


class ConservationViolation(CouplingError):
    """Drift of a conserved quantity beyond tolerance that correction could not resolve."""

    def __init__(self, message: str, quantity: str, residual: float, violations: list = ()):
        super().__init__(message)
        self.quantity = quantity
        self.residual = residual
        self.violations = list(violations)


class MissingViolationInfo(CouplingError):
    """A violation lacks the metadata needed to correct it. This is a logic bug."""
