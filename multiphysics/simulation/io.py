"""
IO of simulation results: per-step scalars and fields as NumPy files, ledgers as JSON.
"""

import json
import pathlib
import sys
if sys.version_info >= (3, 11):
    from enum import StrEnum
else:
    from backports.strenum import StrEnum

import numpy as np

from multiphysics.coupling.ledger import ConservationLedger


class NpyIO:

    root_path: pathlib.Path

    def __init__(self, root_path):
        self.root_path = pathlib.Path(root_path)

    @property
    def extension(self):
        return "npy"

    def load_field(self, name: str):
        try:
            return np.load(self.root_path / f"{name}.{self.extension}", allow_pickle=False)
        except FileNotFoundError:
            return np.array([])

    def save_field(self, name: str, field: np.ndarray):
        np.save(self.root_path / f"{name}.{self.extension}", field)

    def load_value_array(self, name: str):
        try:
            return np.load(self.root_path / f"{name}.{self.extension}", allow_pickle=False)
        except FileNotFoundError:
            return np.array([])

    def save_value_array(self, name: str, array: np.ndarray):
        np.save(self.root_path / f"{name}.{self.extension}", array)


class SimulationIO:

    io: NpyIO

    def __init__(self, store_dir) -> None:
        self.store_dir = pathlib.Path(store_dir)
        self.io = NpyIO(store_dir)

    def save_step(self, index: int, fields: dict[str, np.ndarray] = {}, single_values: dict[str, float] = {}):
        # For field, each step has its own file
        for [name, field] in fields.items():
            self.io.save_field(format_filename(name, index), field)

        # For single values, all steps share one file
        for [name, value] in single_values.items():
            array = self.io.load_value_array(name)
            try:
                array[index] = value
            except IndexError:
                if index == array.size:
                    array = np.append(array, value)
                else:
                    raise ValueError(f"Cannot save step {index} of '{name}' holding {array.size} steps.")
            self.io.save_value_array(name, array)

    def load_step(self, index: int, field_names: list[str] = [], single_value_names: list[str] = []):
        result = {}

        # For field, each step has its own file
        for name in field_names:
            result[name] = self.io.load_field(format_filename(name, index))

        # For single values, all steps shares one file
        for name in single_value_names:
            result[name] = self.io.load_value_array(name)[index]

        return result

    def load_trajectory(self, field_names: list[str] = [], single_value_names: list[str] = []):
        result = {}
        for name in field_names:
            result[name] = FieldArray(self.io, name)
        for name in single_value_names:
            result[name] = self.io.load_value_array(name)
        return result

    def save_ledgers(self, ledgers: dict[str, ConservationLedger]):
        data = {name: ledger.to_dict() for [name, ledger] in ledgers.items() if ledger is not None}
        with open(self.store_dir / "ledgers.json", "w", encoding="utf-8") as fp:
            json.dump(data, fp, indent=2)

    def load_ledgers(self) -> dict:
        with open(self.store_dir / "ledgers.json", "r", encoding="utf-8") as fp:
            return json.load(fp)


class FieldArray:
    """A helper class. It mimics an array but actually reads corresponding files."""

    io: NpyIO
    name: str

    def __init__(self, io, name) -> None:
        self.io = io
        self.name = name

    def __getitem__(self, index: int):
        return self.io.load_field(format_filename(self.name, index))

    def __setitem__(self, index: int, value):
        self.io.save_field(format_filename(self.name, index), value)


def format_filename(name: str, index: int):
    return f"{name}--{index}"


class Term(StrEnum):
    time = "time"
    energy = "energy"
    momentum = "momentum"
    energy_drift = "energy_drift"
    momentum_drift = "momentum_drift"
    nb_iterations = "nb_iterations"
