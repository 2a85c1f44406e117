from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil

from .config import Settings
from .schemas import ProcessSample
from .utils import utc_now_iso, write_jsonl_line

logger = logging.getLogger(__name__)

MIN_INTERVAL_S = 0.1


class ProcessMonitor:
    """Samples a process tree into a JSON-lines file on a background thread.

    One line is appended per process (the root and each live descendant)
    per tick. Sampling stops when the root process exits or ``stop()`` is
    called.
    """

    def __init__(self, pid: int, path: Path, interval_s: float = 1.0) -> None:
        if interval_s < MIN_INTERVAL_S:
            raise ValueError(
                f"monitor interval must be >= {MIN_INTERVAL_S}s, got {interval_s}s"
            )
        self.pid = pid
        self.path = Path(path)
        self.interval_s = interval_s
        self.samples_written = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._procs: Dict[int, psutil.Process] = {}

    @classmethod
    def from_settings(cls, pid: int, path: Path, settings: Settings) -> "ProcessMonitor":
        return cls(pid, path, interval_s=settings.monitor_interval_s)

    def start(self) -> "ProcessMonitor":
        if self._thread is not None:
            raise RuntimeError("monitor already started")
        self._thread = threading.Thread(
            target=self.run, name=f"process-monitor-{self.pid}", daemon=True
        )
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()

    def run(self) -> None:
        while not self._stop.is_set():
            started = time.monotonic()
            samples = self.sample()
            if not samples:
                logger.debug("process %d exited, stopping monitor", self.pid)
                return
            for sample in samples:
                write_jsonl_line(self.path, sample.model_dump(mode="json"))
            self.samples_written += len(samples)
            elapsed = time.monotonic() - started
            self._stop.wait(max(0.0, self.interval_s - elapsed))

    def sample(self) -> List[ProcessSample]:
        root = self._process(self.pid)
        if root is None:
            return []
        try:
            tree = [root] + root.children(recursive=True)
        except psutil.NoSuchProcess:
            return []
        except psutil.AccessDenied:
            tree = [root]
        now = utc_now_iso()
        samples: List[ProcessSample] = []
        for proc in tree:
            tracked = self._process(proc.pid) or proc
            try:
                samples.append(self._measure(tracked, now))
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                self._procs.pop(proc.pid, None)
            except psutil.AccessDenied:
                logger.debug("access denied sampling pid %d, skipping", proc.pid)
        return samples

    def _process(self, pid: int) -> Optional[psutil.Process]:
        proc = self._procs.get(pid)
        if proc is None:
            try:
                proc = psutil.Process(pid)
            except psutil.NoSuchProcess:
                return None
            self._procs[pid] = proc
        if not proc.is_running():
            self._procs.pop(pid, None)
            return None
        return proc

    @staticmethod
    def _measure(proc: psutil.Process, now: str) -> ProcessSample:
        with proc.oneshot():
            memory = proc.memory_info()
            io: Any = None
            try:
                io = proc.io_counters() if hasattr(proc, "io_counters") else None
            except psutil.AccessDenied:
                io = None
            return ProcessSample(
                time=now,
                pid=proc.pid,
                parent=proc.ppid(),
                name=proc.name(),
                cpu_usage_percentage=proc.cpu_percent(interval=None),
                memory_usage_bytes=int(memory.rss),
                virtual_memory_usage_bytes=int(memory.vms),
                disk_bytes_read=int(io.read_bytes) if io is not None else None,
                disk_bytes_written=int(io.write_bytes) if io is not None else None,
            )

    def __enter__(self) -> "ProcessMonitor":
        return self.start()

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.stop()
