from __future__ import annotations

from pathlib import Path
from typing import Optional


class StoreError(Exception):
    """Base class for every error raised by the run store."""


class InvalidName(StoreError, ValueError):
    def __init__(self, field: str, value: object, reason: str) -> None:
        super().__init__(f"invalid {field} {value!r}: {reason}")
        self.field = field
        self.value = value


class UnhashableConfig(StoreError, TypeError):
    def __init__(self, location: str, reason: str) -> None:
        where = location or "<root>"
        super().__init__(f"configuration value at {where} cannot be hashed: {reason}")
        self.location = location


class _PathError(StoreError):
    message = "run store error"

    def __init__(self, path: Path, detail: Optional[str] = None) -> None:
        text = f"{self.message}: {path}"
        if detail:
            text = f"{text} ({detail})"
        super().__init__(text)
        self.path = path


class RunAlreadyExists(_PathError):
    message = "run already exists"


class StateTransitionConflict(_PathError):
    message = "state transition conflict"


class RunNotRunning(_PathError):
    message = "run is not running"


class IoFailure(_PathError):
    message = "filesystem operation failed"

    def __init__(self, path: Path, error: OSError) -> None:
        super().__init__(path, f"{type(error).__name__}: {error}")
        self.error = error
