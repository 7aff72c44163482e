"""
Heat exchange and fluid drag, coupled.

Usage:
    python -m cases.heat_exchange cases/heat_exchange.toml
"""

import logging
import os
import sys

import numpy as np

from multiphysics.config import load_config
from multiphysics.runtime.dirs import register_run
from multiphysics.runtime.logging import reset_logging
from multiphysics.run import run_simulation
from multiphysics.simulation import SimulationIO, Term


logger = logging.getLogger(__name__)


def main():
    reset_logging()

    if len(sys.argv) < 2:
        print("Usage: python -m cases.heat_exchange config.toml")
        sys.exit(1)

    config_file = sys.argv[1]
    config = load_config(config_file)

    # setup run directory
    case_name = os.path.splitext(os.path.basename(__file__))[0]
    run = register_run(case_name, __file__, config_file)

    io = run_simulation(config, run)
    summarize(io)


def summarize(io: SimulationIO):
    trajectory = io.load_trajectory(single_value_names=[Term.time, Term.energy, Term.energy_drift, Term.momentum_drift])
    logger.info(f"Simulated until t={trajectory[Term.time][-1]:.4g}")
    logger.info(f"Energy {trajectory[Term.energy][0]:.6e} -> {trajectory[Term.energy][-1]:.6e}")
    logger.info(f"Largest relative energy drift: {np.max(trajectory[Term.energy_drift], initial=0.0):.2e}")
    logger.info(f"Largest momentum drift: {np.max(trajectory[Term.momentum_drift], initial=0.0):.2e}")


if __name__ == "__main__":
    main()
