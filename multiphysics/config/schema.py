"""
Configuration schema.

Minimal schema that mirrors the parts of a coupled simulation:
- domains: one table per physics domain
- couplings: one table per directed field exchange
- regions: named interface regions
- coupling, time_stepping, synchronization, conservation: settings of the coupling core
- simulation: global time step and number of steps
- logging: level of the run log file and per-module levels

Each section is a raw dict (or a list of them) - semantic knowledge lives in the consuming
code (run.py), not here.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Config:
    """
    Top-level configuration.

    All sections are raw dicts to avoid schema duplication.
    """
    domains: list[dict[str, Any]]
    simulation: dict[str, Any]
    couplings: list[dict[str, Any]] = field(default_factory=list)
    regions: list[dict[str, Any]] = field(default_factory=list)
    coupling: dict[str, Any] = field(default_factory=dict)
    time_stepping: dict[str, Any] = field(default_factory=dict)
    synchronization: dict[str, Any] = field(default_factory=dict)
    conservation: dict[str, Any] = field(default_factory=dict)
    logging: dict[str, Any] = field(default_factory=dict)
