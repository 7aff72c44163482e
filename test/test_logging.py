"""
Tests of the logging setup of the package.
"""

import logging

import pytest

from multiphysics.runtime.logging import (
    as_level,
    close_log_file,
    package_logger,
    reset_logging,
    set_levels,
    switch_log_file,
)


@pytest.fixture
def restore_logging():
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    yield
    close_log_file()
    for h in list(root_logger.handlers):
        if h not in handlers:
            root_logger.removeHandler(h)
    for h in handlers:
        if h not in root_logger.handlers:
            root_logger.addHandler(h)
    root_logger.setLevel(level)
    for module in ("", "numerics.fixed_point", "simulation.stepper"):
        package_logger(module).setLevel(logging.NOTSET)


def test_levels():
    assert as_level(logging.DEBUG) == logging.DEBUG
    assert as_level("warning") == logging.WARNING
    with pytest.raises(ValueError):
        as_level("loud")


def test_package_logger_names():
    assert package_logger().name == "multiphysics"
    assert package_logger("numerics.fixed_point").name == "multiphysics.numerics.fixed_point"
    assert package_logger("multiphysics.simulation.stepper").name == "multiphysics.simulation.stepper"


def test_reset_logging(restore_logging):
    reset_logging(logging.INFO, levels={"numerics.fixed_point": "WARNING"})
    root_logger = logging.getLogger()
    assert len(root_logger.handlers) == 1
    assert root_logger.handlers[0].level == logging.INFO
    assert package_logger().level == logging.INFO
    # the iteration table is quiet, the rest of the package is not
    assert not package_logger("numerics.fixed_point").isEnabledFor(logging.INFO)
    assert package_logger("simulation.manager").isEnabledFor(logging.INFO)

    # calling again does not stack console handlers
    reset_logging(logging.DEBUG)
    assert len(root_logger.handlers) == 1
    assert package_logger("simulation.stepper").isEnabledFor(logging.DEBUG)


def test_switch_log_file(tmp_path, restore_logging):
    first = tmp_path / "first.log"
    second = tmp_path / "second.log"
    package_logger().setLevel(logging.WARNING)

    switch_log_file(first, "DEBUG")
    assert package_logger().level == logging.DEBUG
    logging.getLogger("multiphysics.simulation.stepper").debug("sub-cycling trace")
    logging.getLogger("cases.elsewhere").warning("not a package record")

    switch_log_file(second)
    file_handlers = [h for h in package_logger().handlers if isinstance(h, logging.FileHandler)]
    assert len(file_handlers) == 1
    set_levels({"simulation.stepper": logging.WARNING})
    logging.getLogger("multiphysics.simulation.stepper").info("quiet now")
    logging.getLogger("multiphysics.simulation.manager").info("step done")
    close_log_file()

    text = first.read_text(encoding="utf-8")
    assert "multiphysics.simulation.stepper DEBUG sub-cycling trace" in text
    assert "not a package record" not in text
    text = second.read_text(encoding="utf-8")
    assert "step done" in text
    assert "quiet now" not in text
    assert package_logger().handlers == []
