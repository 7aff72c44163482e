"""
Physics module: reference implementations of the domain interface.
"""

from .reference import (
    ChemicalDomain,
    FlowDomain,
    RelaxationDomain,
    ScalarRelaxationDomain,
    SignalDomain,
    ThermalDomain,
)
from .factory import create_domain
