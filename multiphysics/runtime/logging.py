"""
Logging of the coupling core.

Every logger of the package hangs under `multiphysics`, so a run is tuned from one place:
- the console reads like print(...), for the case scripts;
- each run appends to its own log file, with time stamps and logger names;
- `levels` quiets or opens single modules, e.g. the per-sweep table of
  `numerics.fixed_point` or the sub-cycling trace of `simulation.stepper`.
"""

import sys
import logging


package_name = "multiphysics"


def as_level(level) -> int:
    """Accept 10, "DEBUG" or "debug"."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown logging level: {level}")
    return value


def package_logger(module: str = "") -> logging.Logger:
    """The logger of `module`, given relative to the package; the package logger when empty."""
    if not module:
        return logging.getLogger(package_name)
    if module == package_name or module.startswith(package_name + "."):
        return logging.getLogger(module)
    return logging.getLogger(f"{package_name}.{module}")


def set_levels(levels: dict):
    """Per-module levels, e.g. {"numerics.fixed_point": "WARNING"}."""
    for [module, level] in levels.items():
        package_logger(module).setLevel(as_level(level))


def reset_logging(level=logging.INFO, levels: dict | None = None):
    """
    Print-like console output of `level` and above.

    Handlers of earlier calls are dropped. The console handler sits on the root logger, so the
    loggers of case scripts print as well.
    """
    level = as_level(level)
    root_logger = logging.getLogger()
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter('%(message)s'))
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)
    root_logger.setLevel(level)

    package_logger().setLevel(level)
    set_levels(levels or {})


def switch_log_file(log_file, level=logging.INFO) -> logging.FileHandler:
    """
    Send the records of the package to `log_file`, replacing the file of the previous run.

    The package logger is opened down to `level` when needed; the console handler keeps its
    own level.
    """
    level = as_level(level)
    logger = package_logger()
    close_log_file()

    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    file_handler.setLevel(level)
    logger.addHandler(file_handler)
    if logger.getEffectiveLevel() > level:
        logger.setLevel(level)
    return file_handler


def close_log_file():
    """Detach and close the log file of the package, if any."""
    logger = package_logger()
    for h in list(logger.handlers):
        if isinstance(h, logging.FileHandler):
            logger.removeHandler(h)
            h.close()
