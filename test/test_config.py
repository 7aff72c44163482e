"""
Tests for TOML configuration loading and saving.
"""

import pytest

from multiphysics.config import Config, config_from_dict, load_config, save_config


@pytest.fixture
def sample_toml_content():
    return """
[simulation]
time_step = 0.1
nb_steps = 5

[[domains]]
id = "wall"
kind = "thermal"
nb_nodes = 8
length = 1.0
initial = 400.0

[[domains]]
id = "coolant"
kind = "thermal"
nb_nodes = 5
length = 1.0
initial = 300.0
natural_time_step = 0.01

[[regions]]
name = "contact"
lower = [0.25]
upper = [0.75]

[[couplings]]
source = "wall"
target = "coolant"
fields = ["temperature"]
region = "contact"
both_ways = true

[time_stepping]
strategy = "sub_cycling"
ratios = { coolant = 10 }

[conservation]
energy_tolerance = 1e-9
"""


@pytest.fixture
def temp_toml_file(tmp_path, sample_toml_content):
    path = tmp_path / "case.toml"
    path.write_text(sample_toml_content, encoding="utf-8")
    return path


def test_load_config(temp_toml_file):
    config = load_config(temp_toml_file)

    assert isinstance(config, Config)
    assert config.simulation == {"time_step": 0.1, "nb_steps": 5}
    assert [d["id"] for d in config.domains] == ["wall", "coolant"]
    assert config.domains[1]["natural_time_step"] == 0.01
    assert config.regions[0]["lower"] == [0.25]
    assert config.couplings[0]["both_ways"]
    assert config.time_stepping["ratios"] == {"coolant": 10}
    assert config.conservation["energy_tolerance"] == 1e-9
    # absent sections are empty
    assert config.coupling == {}
    assert config.synchronization == {}


def test_save_and_reload_config(temp_toml_file, tmp_path):
    config = load_config(temp_toml_file)
    output_path = tmp_path / "saved.toml"
    save_config(config, output_path)
    reloaded = load_config(output_path)

    assert reloaded == config


def test_empty_sections_are_not_written(tmp_path):
    config = Config(domains=[{"id": "a", "kind": "thermal", "nb_nodes": 2, "length": 1.0, "initial": 1.0}],
                    simulation={"time_step": 0.1, "nb_steps": 1})
    path = tmp_path / "minimal.toml"
    save_config(config, path)
    text = path.read_text(encoding="utf-8")
    assert "[coupling]" not in text
    assert "couplings" not in text
    assert load_config(path) == config


@pytest.mark.parametrize("missing", ["domains", "simulation"])
def test_required_sections(missing):
    data = {"domains": [], "simulation": {}}
    del data[missing]
    with pytest.raises(KeyError):
        config_from_dict(data)
