"""Lifecycle of a single run directory.

A run's state is the suffix on its ``repeat-<n>`` directory name and
nothing else. Creation is an exclusive ``mkdir`` and every transition is a
``rename`` inside the config directory, so an observer listing that
directory sees exactly one name per run.

    (none) --create--> running --success--> completed
                               --failure--> failed
"""

from __future__ import annotations

import errno
import logging
import os
from enum import Enum
from pathlib import Path
from typing import List

from .errors import IoFailure, RunAlreadyExists, RunNotRunning, StateTransitionConflict

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def suffix(self) -> str:
        return _SUFFIXES[self]

    @property
    def is_terminal(self) -> bool:
        return self is not RunState.RUNNING

    @classmethod
    def from_suffix(cls, suffix: str) -> "RunState":
        for state, known in _SUFFIXES.items():
            if known == suffix:
                return state
        raise ValueError(f"unknown run state suffix {suffix!r}")


# Completed runs carry the bare name; analysis tooling relies on it.
_SUFFIXES = {
    RunState.COMPLETED: "",
    RunState.RUNNING: ".running",
    RunState.FAILED: ".failed",
}


def create_running(path: Path) -> None:
    """Create ``path`` exclusively; the parent directory must already exist."""
    try:
        os.mkdir(path)
    except FileExistsError as exc:
        raise RunAlreadyExists(path) from exc
    except OSError as exc:
        raise IoFailure(path, exc) from exc
    logger.debug("created run directory %s", path)


def transition(src: Path, dst: Path) -> None:
    """Rename a running directory to its terminal name.

    ``os.rename`` silently replaces an empty destination directory on
    POSIX, so an existing destination is rejected up front as well as
    through the errno of a racing rename.
    """
    if src.parent != dst.parent:
        raise StateTransitionConflict(dst, "transition must stay within one directory")
    if os.path.lexists(dst):
        raise StateTransitionConflict(dst, "destination already exists")
    try:
        os.rename(src, dst)
    except FileNotFoundError as exc:
        raise RunNotRunning(src) from exc
    except OSError as exc:
        if exc.errno in (errno.EEXIST, errno.ENOTEMPTY):
            raise StateTransitionConflict(dst, "destination already exists") from exc
        raise IoFailure(src, exc) from exc
    logger.debug("renamed %s -> %s", src.name, dst.name)


def sibling_states(config_root: Path, repeat: int) -> List[RunState]:
    """Return which of the three names for ``repeat`` currently exist."""
    return [
        state
        for state in RunState
        if os.path.lexists(config_root / f"repeat-{repeat}{state.suffix}")
    ]
