from __future__ import annotations

import logging
import os
import threading
from pathlib import Path, PurePosixPath
from typing import IO, Any, Dict, List, Optional

from ..schemas import ArtifactRecord
from ..utils import canonical_dumps, hash_bytes
from .errors import InvalidName, IoFailure, RunNotRunning

logger = logging.getLogger(__name__)


class ArtifactDir:
    """One of the ``logs``/``metrics``/``data`` trees of a running run."""

    def __init__(self, sink: "ArtifactSink", kind: str) -> None:
        self.sink = sink
        self.kind = kind
        self._appenders: Dict[Path, IO[bytes]] = {}

    @property
    def root(self) -> Path:
        return self.sink.run_path / self.kind

    def path(self, rel_path: str) -> Path:
        rel = PurePosixPath(rel_path)
        if not rel.parts or rel.is_absolute() or ".." in rel.parts:
            raise InvalidName("artifact path", rel_path, "must stay inside the artifact directory")
        return self.root.joinpath(*rel.parts)

    def open(self, rel_path: str, mode: str = "w", **kwargs: Any) -> IO[Any]:
        path = self.path(rel_path)
        self.sink._ensure_open()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(path, mode, **kwargs)
        except OSError as exc:
            raise IoFailure(path, exc) from exc
        self.sink._track(handle)
        return handle

    def write_bytes(self, rel_path: str, data: bytes) -> ArtifactRecord:
        path = self.path(rel_path)
        with self.open(rel_path, "wb") as handle:
            handle.write(data)
            self.sink._sync(handle)
        return ArtifactRecord(
            path=str(path), content_hash=hash_bytes(data), bytes=len(data), kind=self.kind
        )

    def write_text(self, rel_path: str, text: str) -> ArtifactRecord:
        return self.write_bytes(rel_path, text.encode("utf-8"))

    def write_json(self, rel_path: str, data: Any) -> ArtifactRecord:
        payload = canonical_dumps(data)
        if not payload.endswith(b"\n"):
            payload += b"\n"
        return self.write_bytes(rel_path, payload)

    def append_jsonl(self, rel_path: str, data: Any) -> None:
        path = self.path(rel_path)
        with self.sink._lock:
            handle = self._appenders.get(path)
            if handle is None or handle.closed:
                handle = self.open(rel_path, "ab")
                self._appenders[path] = handle
            handle.write(canonical_dumps(data) + b"\n")


class ArtifactSink:
    """Scoped write handles for one run.

    Every handle opened through the sink is tracked and closed by
    ``close()``. ``RunStore.complete`` and ``RunStore.fail`` call it before
    renaming the run, so buffered artifact data lands inside the run
    directory whichever frame ends the run.
    """

    def __init__(self, run_path: Path, fsync: bool = True) -> None:
        self.run_path = Path(run_path)
        self.fsync = fsync
        self._lock = threading.RLock()
        self._handles: List[IO[Any]] = []
        self._closed = False
        self.logs = ArtifactDir(self, "logs")
        self.metrics = ArtifactDir(self, "metrics")
        self.data = ArtifactDir(self, "data")

    @property
    def closed(self) -> bool:
        return self._closed

    def dirs(self) -> List[ArtifactDir]:
        return [self.logs, self.metrics, self.data]

    def _ensure_open(self) -> None:
        if self._closed:
            raise RunNotRunning(self.run_path, "artifact sink is closed")

    def _track(self, handle: IO[Any]) -> None:
        with self._lock:
            if self._closed:
                handle.close()
                raise RunNotRunning(self.run_path, "artifact sink is closed")
            self._handles = [item for item in self._handles if not item.closed]
            self._handles.append(handle)

    def _sync(self, handle: IO[Any]) -> None:
        handle.flush()
        if self.fsync:
            os.fsync(handle.fileno())

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            handles, self._handles = self._handles, []
        first_error: Optional[IoFailure] = None
        for handle in handles:
            if handle.closed:
                continue
            try:
                if handle.writable():
                    self._sync(handle)
            except OSError as exc:
                if first_error is None:
                    first_error = IoFailure(Path(getattr(handle, "name", self.run_path)), exc)
            finally:
                handle.close()
        logger.debug("closed %d artifact handles under %s", len(handles), self.run_path)
        if first_error is not None:
            raise first_error from first_error.error

    def relocate(self, run_path: Path) -> None:
        self.run_path = Path(run_path)

    def __enter__(self) -> "ArtifactSink":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()
