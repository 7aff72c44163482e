"""
Configuration module for TOML-based simulation parameters.

Provides:
- Config: raw-dict sections of a coupled simulation
- TOML loading and saving
"""

from .schema import Config

from .loader import load_config, save_config, config_from_dict

__all__ = [
    "Config",
    "load_config",
    "save_config",
    "config_from_dict",
]
