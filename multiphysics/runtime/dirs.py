import os
import time
import subprocess
import shutil
import json
import logging
from pathlib import Path


logger = logging.getLogger(__name__)

repo_root = os.getenv("PYTHONPATH", os.getcwd())
results_dirname = "results"


def register_run(base_dir_path, script_path, *config_paths, runtime_root=None, with_hash: bool = True):
    """
    Each simulation run gets a dedicated folder, named by its start time.
    ---
    base_dir_path: should be a relative path from runtime_root.
    """
    if runtime_root is None:
        runtime_root = os.path.join(repo_root, results_dirname)

    current_time = time.localtime()
    run_id = time.strftime("%y%m%d-%H%M%S", current_time)

    git_hash = get_git_hash() if with_hash else None
    if git_hash:
        run_id += f"-{git_hash[:6]}"

    run_dir = RunDir(os.path.join(runtime_root, base_dir_path, run_id))
    run_dir.setup_directory()
    for each_path in config_paths:
        run_dir.add_config_file(each_path)

    metadata = {
        "run_id": run_id,
        "time": time.strftime("%Y-%m-%dT%H:%M:%S", current_time),
        "script": str(os.path.abspath(script_path)),
    }
    if len(config_paths):
        metadata["configs"] = [str(os.path.abspath(each_path)) for each_path in config_paths]
    if git_hash:
        metadata["git_hash"] = git_hash
    run_dir.update_metadata(metadata)
    return run_dir


def retrieve_run(base_dir_path, run_id, runtime_root=None):
    if runtime_root is None:
        runtime_root = os.path.join(repo_root, results_dirname)
    return RunDir(os.path.join(runtime_root, base_dir_path, run_id))


class RunDir:

    def __init__(self, path):
        self.path = Path(path)
        self.run_id = os.path.basename(self.path)

    def setup_directory(self):
        self.path.mkdir(parents=True, exist_ok=False)
        self.parameters_dir.mkdir()
        self.results_dir.mkdir()
        self.log_file.touch()
        with open(self.metadata_file, "w", encoding="utf-8") as fp:
            json.dump({}, fp)

    @property
    def parameters_dir(self):
        return self.path / "parameters"

    @property
    def results_dir(self):
        return self.path / "results"

    @property
    def log_file(self):
        return self.path / "log.txt"

    @property
    def metadata_file(self):
        return self.path / "METADATA.json"

    def add_config_file(self, file_path):
        shutil.copy2(file_path, self.parameters_dir)

    def update_metadata(self, new_info):
        with open(self.metadata_file, "r", encoding="utf-8") as fp:
            metadata = json.load(fp)
        metadata.update(new_info)
        with open(self.metadata_file, "w", encoding="utf-8") as fp:
            json.dump(metadata, fp, indent=2, sort_keys=True)


def get_git_hash():
    try:
        return subprocess.check_output(
            ["git", "rev-parse", "HEAD"], stderr=subprocess.DEVNULL).decode("utf-8").strip()
    except (OSError, subprocess.CalledProcessError) as e:
        logger.info(f"No git hash for this run: {e}")
        return None
