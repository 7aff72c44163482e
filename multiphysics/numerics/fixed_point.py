"""
Solving the coupled fixed-point problem. No physics meaning in this file.
"""

import logging
import timeit
import typing

import numpy as np


logger = logging.getLogger(__name__)


class FixedPointMap(typing.Protocol):
    """One sweep of the coupled update.

    x_{k+1} = G(x_k)
    """

    def __call__(self, x: np.ndarray) -> np.ndarray: ...


class FixedPointIteration:
    """
    Relaxed fixed-point iteration

        x_{k+1} = x_k + omega * (G(x_k) - x_k)

    stopping when |x_{k+1} - x_k| <= tolerance or after max_iterations sweeps.
    """

    max_iterations: int
    tolerance: float
    relaxation: float

    def __init__(self, max_iterations=50, tolerance=1e-8, relaxation=1.0):
        if max_iterations < 1:
            raise ValueError("Needs at least one iteration.")
        if tolerance <= 0:
            raise ValueError("Tolerance must be positive.")
        if not (0 < relaxation <= 1):
            raise ValueError("Relaxation factor must be in (0, 1].")
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.relaxation = relaxation

    def solve(self, update: FixedPointMap, x0: np.ndarray) -> "FixedPointResult":
        # print headers
        delta = "Δ"
        table_headers = ["Iter", f"|{delta}x|", f"|{delta}x|/|x|", "omega"]
        separator = "  "
        line_width = 40
        logger.info(separator.join(
            "{:<4}".format(col_name) if col_name in ["Iter"] else "{:<8}".format(col_name)
            for col_name in table_headers))
        logger.info("=" * line_width)

        t_exec = -timeit.default_timer()
        x = np.asarray(x0, dtype=float)
        residuals = []
        is_converged = False
        count = 0
        for count in range(1, self.max_iterations + 1):
            x_plus = x + self.relaxation * (update(x) - x)
            residual = float(np.linalg.norm(x_plus - x))
            relative = residual / max(float(np.linalg.norm(x_plus)), np.finfo(float).tiny)
            residuals.append(residual)
            x = x_plus

            padded_literals = [f"{count:>4d}", f"{residual:>8.1e}", f"{relative:>8.1e}", f"{self.relaxation:>8.1e}"]
            logger.info(separator.join(padded_literals))

            if not np.isfinite(residual):
                logger.warning("WARNING: residual is not finite, stop iterating.")
                break

            # convergence criteria
            if residual <= self.tolerance:
                is_converged = True
                logger.info(f"Notice: achieving required tolerance at iter #{count}")
                break
        t_exec += timeit.default_timer()

        reached_iter_limit = not is_converged and count == self.max_iterations
        # show a warning under necessary conditions
        if not is_converged:
            logger.warning("WARNING: not converged.")
        if reached_iter_limit:
            logger.warning("WARNING: reached iteration limit.")
        logger.info(f"Total time for fixed-point iteration: {t_exec:.1e} seconds.")

        return FixedPointResult(x, is_converged, count, residuals, t_exec, reached_iter_limit)


class FixedPointResult(typing.NamedTuple):
    solution: np.ndarray
    is_converged: bool
    nb_iterations: int
    residuals: list[float]
    time: float
    reached_iter_limit: bool
