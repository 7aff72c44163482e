"""
TOML configuration loading and saving.

Uses tomllib (Python 3.11+) or tomli (backport) for reading,
and tomli_w for writing.
"""

import sys
from pathlib import Path
from typing import Any

# Import tomllib or backport
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

import tomli_w

from .schema import Config


optional_sections = ["regions", "coupling", "time_stepping", "synchronization", "conservation", "logging"]


def load_config(path: str | Path) -> Config:
    """Load a TOML configuration file and return a Config object."""
    path = Path(path)
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return config_from_dict(data)


def config_from_dict(data: dict[str, Any]) -> Config:
    """Build a Config from parsed TOML. `domains` and `simulation` are required."""
    # TOML uses [[domains]], [[couplings]] and [[regions]] array syntax
    return Config(
        domains=data["domains"],
        simulation=data["simulation"],
        couplings=data.get("couplings", []),
        **{section: data.get(section, [] if section == "regions" else {}) for section in optional_sections},
    )


def save_config(config: Config, path: str | Path) -> None:
    """Save a Config object to a TOML file."""
    path = Path(path)
    data: dict[str, Any] = {"domains": config.domains, "simulation": config.simulation}

    if config.couplings:
        data["couplings"] = config.couplings
    for section in optional_sections:
        if getattr(config, section):
            data[section] = getattr(config, section)

    with open(path, "wb") as f:
        tomli_w.dump(data, f)
