"""
Black-box simulation execution.

Provides run_simulation() - config in, results out.
Helper functions translate config to primitives.
"""

import logging
from typing import Any

import numpy as np

from multiphysics.config import Config, save_config
from multiphysics.coupling import (
    CorrectionStrategy,
    CouplingPair,
    EnergyConservationEnforcer,
    MomentumConservationEnforcer,
    SpatialContext,
    TransferSpec,
)
from multiphysics.domain import Discretization, InterfaceRegion, PhysicsDomain
from multiphysics.numerics.fixed_point import FixedPointIteration
from multiphysics.physics import create_domain
from multiphysics.runtime.dirs import RunDir
from multiphysics.runtime.logging import set_levels, switch_log_file
from multiphysics.simulation import (
    CouplingStrategy,
    MultiScaleTimeStepper,
    PhysicsDomainManager,
    SimulationIO,
    SynchronizationSchedule,
    TemporalSynchronizationManager,
    Term,
)


logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Helpers: config -> primitives
# -----------------------------------------------------------------------------

domain_parameters = ["rate", "capacity", "natural_time_step", "ambient", "stiff", "coupled_field",
                     "internal_energy", "start_time"]


def build_discretization(domain_cfg: dict[str, Any]) -> Discretization:
    """Uniform 1D discretization of [origin, origin + length]."""
    return Discretization.uniform(domain_cfg.get("origin", 0.0), domain_cfg["length"], domain_cfg["nb_nodes"])


def build_domains(config: Config) -> list[PhysicsDomain]:
    """
    Create the domains from the [[domains]] tables.

    Keys other than id, kind, nb_nodes, length, origin and initial are passed to the domain
    constructor; unknown ones are rejected.
    """
    domains = []
    for domain_cfg in config.domains:
        cfg = dict(domain_cfg)  # copy to avoid mutation
        domain_id = cfg.pop("id")
        kind = cfg.pop("kind")
        discretization = build_discretization(cfg)
        for key in ["nb_nodes", "length", "origin"]:
            cfg.pop(key, None)
        initial = cfg.pop("initial")
        unknown = sorted(set(cfg) - set(domain_parameters))
        if unknown:
            raise ValueError(f"Unknown parameters of domain '{domain_id}': {unknown}")
        domains.append(create_domain(kind, domain_id, discretization, initial, **cfg))
    return domains


def build_spatial_context(config: Config) -> SpatialContext:
    return SpatialContext([
        InterfaceRegion(region["name"], tuple(region["lower"]), tuple(region["upper"]))
        for region in config.regions])


def build_couplings(config: Config) -> list[CouplingPair]:
    """
    Create the coupling pairs from the [[couplings]] tables.

    `both_ways = true` declares the reverse exchange as well.
    """
    pairs = []
    for coupling_cfg in config.couplings:
        spec = TransferSpec(
            fields=coupling_cfg["fields"],
            strategy=coupling_cfg.get("strategy", "auto"),
            tolerance=coupling_cfg.get("tolerance", 1e-10),
            lower_bound=coupling_cfg.get("lower_bound"),
            upper_bound=coupling_cfg.get("upper_bound"),
        )
        args = {
            "spec": spec,
            "region": coupling_cfg.get("region"),
            "mechanism": coupling_cfg.get("mechanism"),
            "coefficient": coupling_cfg.get("coefficient", 1.0),
            "area": coupling_cfg.get("area", 1.0),
        }
        pairs.append(CouplingPair(coupling_cfg["source"], coupling_cfg["target"], **args))
        if coupling_cfg.get("both_ways", False):
            pairs.append(CouplingPair(coupling_cfg["target"], coupling_cfg["source"], **args))
    return pairs


def build_solver_args(config: Config) -> dict[str, Any]:
    """
    Build fixed-point solver arguments from the [coupling] section.

    - max_iterations, tolerance, relaxation keep their names
    """
    coupling = config.coupling
    args = {}
    for key in ["max_iterations", "tolerance", "relaxation"]:
        if key in coupling:
            args[key] = coupling[key]
    return args


def build_synchronizer_args(config: Config) -> dict[str, Any]:
    """
    Build synchronization arguments from the [synchronization] section.

    - strategy -> strategy
    - prediction -> prediction_method
    - max_corrections -> max_correction_iterations
    """
    sync = config.synchronization
    args = {}
    renames = {"strategy": "strategy", "prediction": "prediction_method",
               "max_corrections": "max_correction_iterations", "tolerance": "tolerance"}
    for [key, name] in renames.items():
        if key in sync:
            args[name] = sync[key]
    return args


def build_stepper_args(config: Config) -> dict[str, Any]:
    """
    Build stepper arguments from the [time_stepping] section.

    - strategy, ratios, max_ratio keep their names
    - error_tolerance -> error_tolerance
    """
    stepping = config.time_stepping
    args = {}
    for key in ["strategy", "ratios", "max_ratio", "error_tolerance"]:
        if key in stepping:
            args[key] = stepping[key]
    return args


def build_schedule(config: Config) -> SynchronizationSchedule | None:
    points = config.time_stepping.get("synchronization_points", [])
    if not points:
        return None
    return SynchronizationSchedule(points)


def build_enforcers(config: Config):
    """
    Build the conservation enforcers from the [conservation] section.

    - energy_tolerance / momentum_tolerance -> tolerance
    - energy_strategy / momentum_strategy -> strategy
    - flux_tolerance -> flux_tolerance of both
    - enabled = false disables the audits
    """
    conservation = config.conservation
    if not conservation.get("enabled", True):
        return []
    return [
        MomentumConservationEnforcer(
            conservation.get("momentum_tolerance", 1e-8),
            CorrectionStrategy(conservation.get("momentum_strategy", "mass_weighted")),
            flux_tolerance=conservation.get("flux_tolerance", 0.1)),
        EnergyConservationEnforcer(
            conservation.get("energy_tolerance", 1e-8),
            CorrectionStrategy(conservation.get("energy_strategy", "proportional_split")),
            flux_tolerance=conservation.get("flux_tolerance", 0.1)),
    ]


def create_manager(config: Config) -> PhysicsDomainManager:
    """Build the domains, couplings and the coupling core from configuration."""
    solver = FixedPointIteration(**build_solver_args(config))
    synchronizer = TemporalSynchronizationManager(**build_synchronizer_args(config))
    schedule = build_schedule(config)
    stepper = MultiScaleTimeStepper(
        **build_stepper_args(config), synchronizer=synchronizer, schedule=schedule, solver=solver)

    manager = PhysicsDomainManager(
        coupling_strategy=CouplingStrategy(config.coupling.get("strategy", "explicit")),
        stepper=stepper,
        solver=solver,
        enforcers=build_enforcers(config),
        enforce_conservation=config.conservation.get("enforce", True),
        groups=config.coupling.get("groups"),
        schedule=schedule,
        synchronizer=synchronizer,
    )
    for domain in build_domains(config):
        manager.add_domain(domain)
    for pair in build_couplings(config):
        manager.add_coupling(pair)
    return manager


def save_results(io: SimulationIO, index: int, manager: PhysicsDomainManager, nb_iterations: int = 0):
    """Per-step scalars in one file each, fields in one file per step."""
    states = manager.get_states()
    fields = {}
    for [domain_id, state] in states.items():
        for [name, field] in state.fields.items():
            fields[f"{domain_id}-{name}"] = np.asarray(field.values)
    energy = sum(state.energy for state in states.values())
    momentum = sum(state.momentum for state in states.values())
    single_values = {
        Term.time: manager.current_time,
        Term.energy: energy,
        Term.momentum: float(np.linalg.norm(momentum)),
        Term.nb_iterations: nb_iterations,
    }
    ledgers = manager.ledgers
    if ledgers.get("energy") is not None:
        expected = ledgers["energy"].expected_total
        single_values[Term.energy_drift] = abs(energy - expected) / max(abs(expected), np.finfo(float).tiny)
    if ledgers.get("momentum") is not None:
        expected = ledgers["momentum"].expected_total
        single_values[Term.momentum_drift] = float(np.linalg.norm(momentum - expected))
    io.save_step(index, fields=fields, single_values=single_values)


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------

def run_simulation(config: Config, run_dir: RunDir) -> SimulationIO:
    """
    Run a coupled simulation from config.

    This is the black-box interface: config in, results out.

    Parameters
    ----------
    config : Config
        Complete simulation configuration.
    run_dir : RunDir
        Run directory object with results_dir, parameters_dir, etc.

    Returns
    -------
    SimulationIO
        IO object for accessing saved results.
    """
    switch_log_file(run_dir.log_file, config.logging.get("file_level", "INFO"))
    set_levels(config.logging.get("levels", {}))
    save_config(config, run_dir.parameters_dir / "config.toml")

    manager = create_manager(config)
    spatial_context = build_spatial_context(config)
    time_step = config.simulation["time_step"]
    nb_steps = config.simulation["nb_steps"]

    logger.info(f"Starting simulation with output to {run_dir.results_dir}")
    io = SimulationIO(run_dir.results_dir)
    manager.initialize()
    save_results(io, 0, manager)
    for index in range(nb_steps):
        result = manager.step_simulation(time_step, spatial_context)
        save_results(io, index + 1, manager, result.coupling_status.nb_iterations)
    io.save_ledgers(manager.ledgers)
    logger.info(f"Finished {nb_steps} steps at t={manager.current_time:.6g}")
    return io
