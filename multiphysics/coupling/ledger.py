"""
Append-only audit trail of one conserved quantity.
"""

import dataclasses as dc
import types
from typing import Any, Mapping

import numpy as np

from multiphysics.domain import ConservationLaw


def _plain(value):
    """JSON friendly copy of a float or a vector."""
    if np.ndim(value) == 0:
        return float(value)
    return [float(v) for v in np.ravel(value)]


@dc.dataclass(frozen=True)
class LedgerEntry:
    step_index: int
    time: float
    domain_totals: Mapping[str, Any]
    system_total: Any
    transfers: tuple[dict[str, Any], ...]
    """realized amount per interface, (source, target, amount)"""
    correction: Any
    """net correction applied during this step"""
    external: Any = 0.0
    """declared external sources / sinks during this step"""

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_index": self.step_index,
            "time": self.time,
            "domain_totals": {k: _plain(v) for [k, v] in self.domain_totals.items()},
            "system_total": _plain(self.system_total),
            "transfers": [{**t, "amount": _plain(t["amount"])} for t in self.transfers],
            "correction": _plain(self.correction),
            "external": _plain(self.external),
        }


class ConservationLedger:
    """
    Running record of a conserved quantity: initial total, totals per domain, transfer log and
    cumulative correction. Entries are only ever appended.
    """

    quantity: ConservationLaw
    initial_total: Any
    initial_domain_totals: Mapping[str, Any]

    def __init__(self, quantity: ConservationLaw, initial_total, domain_totals: Mapping[str, Any]):
        self.quantity = ConservationLaw(quantity)
        self.initial_total = np.copy(initial_total) if np.ndim(initial_total) else float(initial_total)
        self.initial_domain_totals = types.MappingProxyType(dict(domain_totals))
        self._entries: list[LedgerEntry] = []

    @property
    def entries(self) -> tuple[LedgerEntry, ...]:
        return tuple(self._entries)

    def append(self, entry: LedgerEntry):
        if self._entries and entry.step_index <= self._entries[-1].step_index:
            raise ValueError(
                f"Ledger of {self.quantity} already has step {self._entries[-1].step_index}, "
                f"cannot append step {entry.step_index}.")
        self._entries.append(entry)

    @property
    def cumulative_correction(self):
        total = np.zeros_like(np.asarray(self.initial_total, dtype=float))
        for entry in self._entries:
            total = total + entry.correction
        return total if np.ndim(total) else float(total)

    @property
    def cumulative_external(self):
        total = np.zeros_like(np.asarray(self.initial_total, dtype=float))
        for entry in self._entries:
            total = total + entry.external
        return total if np.ndim(total) else float(total)

    @property
    def expected_total(self):
        """What the system total should be: the initial total plus declared external exchange."""
        return self.initial_total + self.cumulative_external

    @property
    def latest_total(self):
        if not self._entries:
            return self.initial_total
        return self._entries[-1].system_total

    def to_dict(self) -> dict[str, Any]:
        return {
            "quantity": str(self.quantity),
            "initial_total": _plain(self.initial_total),
            "initial_domain_totals": {k: _plain(v) for [k, v] in self.initial_domain_totals.items()},
            "entries": [entry.to_dict() for entry in self._entries],
        }
