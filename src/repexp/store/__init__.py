from .errors import (
    InvalidName,
    IoFailure,
    RunAlreadyExists,
    RunNotRunning,
    StateTransitionConflict,
    StoreError,
    UnhashableConfig,
)
from .hashing import ConfigHasher, config_hash
from .layout import RunLayout, parse_repeat_dir_name, repeat_dir_name
from .runstore import RunHandle, RunListing, RunStore, RunSummary
from .sink import ArtifactDir, ArtifactSink
from .state import RunState

__all__ = [
    "ArtifactDir",
    "ArtifactSink",
    "ConfigHasher",
    "config_hash",
    "InvalidName",
    "IoFailure",
    "RunAlreadyExists",
    "RunHandle",
    "RunLayout",
    "RunListing",
    "RunNotRunning",
    "RunState",
    "RunStore",
    "RunSummary",
    "StateTransitionConflict",
    "StoreError",
    "UnhashableConfig",
    "parse_repeat_dir_name",
    "repeat_dir_name",
]
