from __future__ import annotations

import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel

from ..config import Settings
from ..environment import capture_environment
from ..schemas import Environment
from ..utils import atomic_write_bytes, pretty_dumps, read_json
from .errors import IoFailure, RunAlreadyExists, RunNotRunning, StateTransitionConflict
from .hashing import ConfigHasher
from .layout import (
    ANALYSIS_DIR,
    ARTIFACT_DIRS,
    RunLayout,
    parse_repeat_dir_name,
    repeat_dir_name,
    validate_component,
)
from .sink import ArtifactSink
from .state import RunState, create_running, sibling_states, transition

logger = logging.getLogger(__name__)

FAILURE_FILE = "failure.txt"

# A rename caught mid-flight by readdir can surface both names once.
_STATE_PRECEDENCE = {RunState.RUNNING: 0, RunState.FAILED: 1, RunState.COMPLETED: 2}


class RunSummary(BaseModel):
    experiment: str
    session: str
    config_hash: str
    repeat: int
    state: RunState
    path: str


@dataclass(eq=False)
class RunHandle:
    experiment: str
    session: str
    config_hash: str
    repeat: int
    path: Path
    sink: ArtifactSink
    state: RunState = RunState.RUNNING
    config: Any = field(default=None, repr=False)

    @property
    def config_root(self) -> Path:
        return self.path.parent

    def summary(self) -> RunSummary:
        return RunSummary(
            experiment=self.experiment,
            session=self.session,
            config_hash=self.config_hash,
            repeat=self.repeat,
            state=self.state,
            path=str(self.path),
        )


class RunListing:
    """Re-iterable view over the runs of one experiment.

    Each iteration walks the tree afresh and classifies runs by directory
    name only.
    """

    def __init__(self, store: "RunStore", experiment: str, session: Optional[str]) -> None:
        self.store = store
        self.experiment = experiment
        self.session = session

    def __iter__(self) -> Iterator[RunSummary]:
        return self.store._walk(self.experiment, self.session)


class RunStore:
    def __init__(
        self,
        results_dir: Optional[Path] = None,
        *,
        settings: Optional[Settings] = None,
        hasher: Optional[ConfigHasher] = None,
    ) -> None:
        self.settings = settings or Settings()
        root = Path(results_dir) if results_dir is not None else self.settings.results_path
        self.layout = RunLayout(root)
        self.hasher = hasher or ConfigHasher.from_settings(self.settings)
        self._lock = threading.Lock()
        self._active: Dict[Path, RunHandle] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "RunStore":
        return cls(settings.results_path, settings=settings)

    # lifecycle

    def begin_run(
        self,
        experiment: str,
        session: str,
        config: Any,
        *,
        repeat: Optional[int] = None,
    ) -> RunHandle:
        config_hash = self.hasher.hash(config)
        config_root = self.layout.config_root(experiment, session, config_hash)
        if repeat is not None:
            repeat_dir_name(repeat, RunState.RUNNING)
        _mkdirs(config_root)
        self._write_configuration(experiment, session, config_hash, config)
        if repeat is None:
            path, repeat = self._allocate(config_root)
        else:
            path = self._claim(config_root, repeat)
        for name in ARTIFACT_DIRS:
            _mkdirs(path / name)
        handle = RunHandle(
            experiment=experiment,
            session=session,
            config_hash=config_hash,
            repeat=repeat,
            path=path,
            sink=ArtifactSink(path, fsync=self.settings.fsync),
            config=config,
        )
        with self._lock:
            self._active[path] = handle
        logger.info(
            "started run %s/%s/%s repeat %d", session, experiment, config_hash[:12], repeat
        )
        return handle

    def complete(self, handle: RunHandle) -> RunSummary:
        self._require_running(handle)
        handle.sink.close()
        self._finish(handle, RunState.COMPLETED)
        logger.info("completed run %s", handle.path)
        return handle.summary()

    def fail(self, handle: RunHandle, reason: Optional[str] = None) -> RunSummary:
        self._require_running(handle)
        if reason and not handle.sink.closed:
            try:
                handle.sink.logs.write_text(FAILURE_FILE, reason)
            except IoFailure:
                logger.warning("could not record failure reason for %s", handle.path, exc_info=True)
        try:
            handle.sink.close()
        finally:
            self._finish(handle, RunState.FAILED)
        logger.info("failed run %s", handle.path)
        return handle.summary()

    def _require_running(self, handle: RunHandle) -> None:
        if handle.state is not RunState.RUNNING:
            raise RunNotRunning(handle.path, f"run is {handle.state.value}")

    def _finish(self, handle: RunHandle, target_state: RunState) -> None:
        source = handle.path
        target = self.layout.run_root(
            handle.experiment, handle.session, handle.config_hash, handle.repeat, target_state
        )
        try:
            transition(source, target)
        except RunNotRunning:
            # Another process reconciled this run while we held it.
            handle.state = self._observed_state(source.parent, handle.repeat) or handle.state
            with self._lock:
                self._active.pop(source, None)
            raise
        with self._lock:
            self._active.pop(source, None)
        handle.state = target_state
        handle.path = target
        handle.sink.relocate(target)

    # allocation

    def _allocate(self, config_root: Path) -> Tuple[Path, int]:
        attempts = self.settings.max_allocation_attempts
        for attempt in range(attempts):
            repeat = _smallest_free(self._taken_repeats(config_root))
            try:
                return self._claim(config_root, repeat), repeat
            except RunAlreadyExists:
                logger.debug(
                    "repeat %d under %s was taken concurrently (attempt %d)",
                    repeat,
                    config_root,
                    attempt + 1,
                )
        raise RunAlreadyExists(config_root, f"no free repeat after {attempts} attempts")

    def _claim(self, config_root: Path, repeat: int) -> Path:
        path = config_root / repeat_dir_name(repeat, RunState.RUNNING)
        existing = sibling_states(config_root, repeat)
        if existing:
            raise RunAlreadyExists(path, f"repeat {repeat} is {existing[0].value}")
        create_running(path)
        # A competitor may have created and finished this slot between our
        # scan and our mkdir; the bare .running name alone cannot tell.
        if any(state.is_terminal for state in sibling_states(config_root, repeat)):
            try:
                os.rmdir(path)
            except FileNotFoundError:
                logger.debug("%s was moved by a concurrent reconcile", path)
            except OSError as exc:
                raise IoFailure(path, exc) from exc
            raise RunAlreadyExists(path, f"repeat {repeat} finished concurrently")
        return path

    def _observed_state(self, config_root: Path, repeat: int) -> Optional[RunState]:
        states = sibling_states(config_root, repeat)
        if not states:
            return None
        return max(states, key=lambda state: _STATE_PRECEDENCE[state])

    def _taken_repeats(self, config_root: Path) -> set[int]:
        taken: set[int] = set()
        for name in _listdir(config_root):
            parsed = parse_repeat_dir_name(name)
            if parsed is not None:
                taken.add(parsed[0])
        return taken

    # metadata

    def _write_configuration(
        self, experiment: str, session: str, config_hash: str, config: Any
    ) -> Path:
        path = self.layout.configuration_path(experiment, session, config_hash)
        if path.exists():
            return path
        payload = pretty_dumps(self.hasher.canonicalize(config))
        try:
            atomic_write_bytes(path, payload)
        except OSError as exc:
            raise IoFailure(path, exc) from exc
        return path

    def load_configuration(self, experiment: str, session: str, config_hash: str) -> Any:
        path = self.layout.configuration_path(experiment, session, config_hash)
        try:
            return read_json(path)
        except OSError as exc:
            raise IoFailure(path, exc) from exc

    def write_environment(
        self, experiment: str, session: str, environment: Optional[Environment] = None
    ) -> Path:
        """Publish ``environment.json`` once per session directory.

        The file is staged under a temporary name and hard-linked into
        place, so the first complete writer wins and later calls leave it
        untouched.
        """
        path = self.layout.environment_path(experiment, session)
        if path.exists():
            return path
        _mkdirs(path.parent)
        environment = environment or capture_environment()
        payload = pretty_dumps(environment.model_dump(mode="json"))
        fd, tmp_name = tempfile.mkstemp(prefix=".environment.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            try:
                os.link(tmp_name, path)
            except FileExistsError:
                logger.debug("environment for %s/%s already written", session, experiment)
        except OSError as exc:
            raise IoFailure(path, exc) from exc
        finally:
            Path(tmp_name).unlink(missing_ok=True)
        return path

    def load_environment(self, experiment: str, session: str) -> Optional[Environment]:
        path = self.layout.environment_path(experiment, session)
        if not path.exists():
            return None
        try:
            return Environment(**read_json(path))
        except OSError as exc:
            raise IoFailure(path, exc) from exc

    def analysis_dir(self, experiment: str, session: str) -> Path:
        path = self.layout.analysis_root(experiment, session)
        _mkdirs(path)
        return path

    # reading

    def sessions(self, experiment: str) -> List[str]:
        return [name for name, _ in self.layout.session_roots(experiment)]

    def latest_session(self, experiment: str) -> Optional[str]:
        sessions = self.sessions(experiment)
        return sessions[-1] if sessions else None

    def config_hashes(self, experiment: str, session: str) -> List[str]:
        root = self.layout.session_root(experiment, session)
        return [name for name in _listdir(root) if _is_config_dir(root / name)]

    def list_runs(self, experiment: str, session: Optional[str] = None) -> RunListing:
        validate_component("experiment name", experiment)
        if session is not None:
            validate_component("session timestamp", session)
        return RunListing(self, experiment, session)

    def completed_repeats(self, experiment: str, session: str, config_hash: str) -> int:
        config_root = self.layout.config_root(experiment, session, config_hash)
        return sum(
            1 for _, state in self._classify(config_root) if state is RunState.COMPLETED
        )

    def _walk(self, experiment: str, session: Optional[str]) -> Iterator[RunSummary]:
        if session is None:
            sessions = self.layout.session_roots(experiment)
        else:
            sessions = [(session, self.layout.session_root(experiment, session))]
        for session_name, session_root in sessions:
            for config_hash in _listdir(session_root):
                config_root = session_root / config_hash
                if not _is_config_dir(config_root):
                    continue
                for repeat, state in self._classify(config_root):
                    yield RunSummary(
                        experiment=experiment,
                        session=session_name,
                        config_hash=config_hash,
                        repeat=repeat,
                        state=state,
                        path=str(config_root / repeat_dir_name(repeat, state)),
                    )

    def _classify(self, config_root: Path) -> List[Tuple[int, RunState]]:
        found: Dict[int, RunState] = {}
        for name in _listdir(config_root):
            parsed = parse_repeat_dir_name(name)
            if parsed is None:
                continue
            repeat, state = parsed
            current = found.get(repeat)
            if current is None or _STATE_PRECEDENCE[state] > _STATE_PRECEDENCE[current]:
                found[repeat] = state
        return sorted(found.items())

    # recovery

    def active_runs(self) -> List[RunHandle]:
        with self._lock:
            return list(self._active.values())

    def reconcile(self, experiment: str, session: Optional[str] = None) -> int:
        """Mark every ``.running`` directory not owned by this store as failed.

        Raw directory names are scanned rather than the de-duplicated listing.
        A ``.running`` name beside a terminal sibling is left in place and
        reported as ``StateTransitionConflict`` once the sweep finishes.
        """
        with self._lock:
            owned = set(self._active)
        transitioned = 0
        conflicts: List[StateTransitionConflict] = []
        for source, repeat in list(self._stale_running(experiment, session)):
            if source in owned:
                continue
            terminal = [s for s in sibling_states(source.parent, repeat) if s.is_terminal]
            if terminal:
                logger.error("stale run %s sits beside a %s sibling", source, terminal[0].value)
                conflicts.append(
                    StateTransitionConflict(source, f"repeat {repeat} is also {terminal[0].value}")
                )
                continue
            target = source.with_name(repeat_dir_name(repeat, RunState.FAILED))
            try:
                transition(source, target)
            except RunNotRunning:
                logger.debug("run %s left running state before reconcile reached it", source)
                continue
            except StateTransitionConflict as exc:
                conflicts.append(exc)
                continue
            logger.warning("reconciled stale run %s as failed", source)
            transitioned += 1
        logger.info("reconciled %d stale runs for %s", transitioned, experiment)
        if conflicts:
            # The rest of the sweep has already been applied.
            raise conflicts[0]
        return transitioned

    def _stale_running(
        self, experiment: str, session: Optional[str]
    ) -> Iterator[Tuple[Path, int]]:
        validate_component("experiment name", experiment)
        if session is None:
            sessions = self.layout.session_roots(experiment)
        else:
            validate_component("session timestamp", session)
            sessions = [(session, self.layout.session_root(experiment, session))]
        for _, session_root in sessions:
            for config_hash in _listdir(session_root):
                config_root = session_root / config_hash
                if not _is_config_dir(config_root):
                    continue
                for name in _listdir(config_root):
                    parsed = parse_repeat_dir_name(name)
                    if parsed is not None and parsed[1] is RunState.RUNNING:
                        yield config_root / name, parsed[0]


def _smallest_free(taken: set[int]) -> int:
    repeat = 1
    while repeat in taken:
        repeat += 1
    return repeat


def _mkdirs(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise IoFailure(path, exc) from exc


def _listdir(path: Path) -> List[str]:
    try:
        return sorted(os.listdir(path))
    except (FileNotFoundError, NotADirectoryError):
        return []
    except OSError as exc:
        raise IoFailure(path, exc) from exc


def _is_config_dir(path: Path) -> bool:
    if path.name == ANALYSIS_DIR or path.name.startswith("."):
        return False
    return path.is_dir()

