"""Path arithmetic for the experiment tree.

    <results_dir>/experiments/<session>/<experiment>/
        environment.json
        <config-hash>/
            configuration.json
            repeat-<n>/            completed
            repeat-<n>.running/    running
            repeat-<n>.failed/     failed
        analysis/

Everything here is pure except ``session_roots``, which lists the
``experiments`` directory.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import InvalidName
from .state import RunState

EXPERIMENTS_DIR = "experiments"
ENVIRONMENT_FILE = "environment.json"
CONFIGURATION_FILE = "configuration.json"
ANALYSIS_DIR = "analysis"
REPEAT_PREFIX = "repeat-"
ARTIFACT_DIRS = ("logs", "metrics", "data")

_REPEAT_RE = re.compile(r"^repeat-([1-9][0-9]*)(\.running|\.failed)?$")
_FORBIDDEN = ("/", "\\", "\x00")


def validate_component(field: str, value: str) -> str:
    if not isinstance(value, str):
        raise InvalidName(field, value, "must be a string")
    if not value:
        raise InvalidName(field, value, "must not be empty")
    if value in (".", ".."):
        raise InvalidName(field, value, "must not be a relative path marker")
    for token in _FORBIDDEN:
        if token in value:
            raise InvalidName(field, value, "must not contain path separators")
    return value


def repeat_dir_name(repeat: int, state: RunState) -> str:
    if isinstance(repeat, bool) or not isinstance(repeat, int) or repeat < 1:
        raise InvalidName("repeat", repeat, "must be a positive integer")
    return f"{REPEAT_PREFIX}{repeat}{state.suffix}"


def parse_repeat_dir_name(name: str) -> Optional[Tuple[int, RunState]]:
    match = _REPEAT_RE.match(name)
    if match is None:
        return None
    return int(match.group(1)), RunState.from_suffix(match.group(2) or "")


class RunLayout:
    def __init__(self, results_dir: Path) -> None:
        self.results_dir = Path(results_dir)

    @property
    def experiments_dir(self) -> Path:
        return self.results_dir / EXPERIMENTS_DIR

    def experiment_root(self, name: str) -> Path:
        # Sessions sit above experiments, so an experiment spans every
        # session directory under experiments/.
        validate_component("experiment name", name)
        return self.experiments_dir

    def session_root(self, name: str, timestamp: str) -> Path:
        validate_component("experiment name", name)
        validate_component("session timestamp", timestamp)
        return self.experiments_dir / timestamp / name

    def config_root(self, name: str, timestamp: str, config_hash: str) -> Path:
        validate_component("config hash", config_hash)
        return self.session_root(name, timestamp) / config_hash

    def run_root(
        self, name: str, timestamp: str, config_hash: str, repeat: int, state: RunState
    ) -> Path:
        return self.config_root(name, timestamp, config_hash) / repeat_dir_name(repeat, state)

    def environment_path(self, name: str, timestamp: str) -> Path:
        return self.session_root(name, timestamp) / ENVIRONMENT_FILE

    def configuration_path(self, name: str, timestamp: str, config_hash: str) -> Path:
        return self.config_root(name, timestamp, config_hash) / CONFIGURATION_FILE

    def analysis_root(self, name: str, timestamp: str) -> Path:
        return self.session_root(name, timestamp) / ANALYSIS_DIR

    def session_roots(self, name: str) -> List[Tuple[str, Path]]:
        root = self.experiment_root(name)
        if not root.is_dir():
            return []
        found: List[Tuple[str, Path]] = []
        for entry in sorted(root.iterdir()):
            candidate = entry / name
            if candidate.is_dir():
                found.append((entry.name, candidate))
        return found
