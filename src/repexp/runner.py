from __future__ import annotations

import contextlib
import logging
import os
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, ContextManager, List, Optional, Protocol, Sequence, Tuple

from .config import Settings
from .monitor import ProcessMonitor
from .schemas import Environment
from .store.runstore import RunHandle, RunStore, RunSummary
from .store.sink import ArtifactSink
from .utils import utc_session_timestamp

logger = logging.getLogger(__name__)

PROCESS_SAMPLES_FILE = "process.jsonl"

AnalyseFn = Callable[[Path, Optional[Environment], List[Tuple[Any, Path]]], None]


class Experiment(Protocol):
    name: str

    def configurations(self) -> Sequence[Any]:
        ...

    def repeats(self, config: Any) -> int:
        ...

    def pre_run(self, config: Any) -> None:
        ...

    def run(self, config: Any, sink: ArtifactSink) -> None:
        ...

    def post_run(self, config: Any) -> None:
        ...

    def analyse(
        self,
        experiment_dir: Path,
        environment: Optional[Environment],
        configurations: List[Tuple[Any, Path]],
    ) -> None:
        ...


class FunctionExperiment:
    """Adapts a plain ``fn(config, sink)`` into an ``Experiment``."""

    def __init__(
        self,
        name: str,
        configs: Sequence[Any],
        fn: Callable[[Any, ArtifactSink], None],
        repeats: int = 1,
        analyse_fn: Optional[AnalyseFn] = None,
    ) -> None:
        self.name = name
        self.configs = list(configs)
        self.fn = fn
        self.repeat_count = repeats
        self.analyse_fn = analyse_fn

    def configurations(self) -> Sequence[Any]:
        return self.configs

    def repeats(self, config: Any) -> int:
        _ = config
        return self.repeat_count

    def pre_run(self, config: Any) -> None:
        _ = config

    def run(self, config: Any, sink: ArtifactSink) -> None:
        self.fn(config, sink)

    def post_run(self, config: Any) -> None:
        _ = config

    def analyse(
        self,
        experiment_dir: Path,
        environment: Optional[Environment],
        configurations: List[Tuple[Any, Path]],
    ) -> None:
        if self.analyse_fn is not None:
            self.analyse_fn(experiment_dir, environment, configurations)


@dataclass
class RunReport:
    session: str
    completed: List[RunSummary] = field(default_factory=list)
    failed: List[RunSummary] = field(default_factory=list)
    skipped_configurations: int = 0
    reconciled: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "session": self.session,
            "completed": len(self.completed),
            "failed": len(self.failed),
            "skipped_configurations": self.skipped_configurations,
            "reconciled": self.reconciled,
        }


def _repeats_for(experiment: Experiment, config: Any, settings: Settings) -> int:
    repeats = getattr(experiment, "repeats", None)
    if repeats is None:
        return settings.default_repeats
    return int(repeats(config))


def _monitored(handle: RunHandle, settings: Settings) -> ContextManager[Any]:
    if not settings.monitor_runs:
        return contextlib.nullcontext()
    path = handle.sink.metrics.path(PROCESS_SAMPLES_FILE)
    return ProcessMonitor.from_settings(os.getpid(), path, settings)


def run_experiments(
    experiments: Sequence[Experiment],
    store: RunStore,
    session: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> RunReport:
    settings = settings or store.settings
    report = RunReport(session=session or utc_session_timestamp())
    for experiment in experiments:
        if settings.reconcile_on_start:
            report.reconciled += store.reconcile(experiment.name)
        _run_single(experiment, store, report, settings)
    logger.info("session %s finished: %s", report.session, report.to_payload())
    return report


def _run_single(
    experiment: Experiment, store: RunStore, report: RunReport, settings: Settings
) -> None:
    name = experiment.name
    store.write_environment(name, report.session)
    configurations = list(experiment.configurations())
    logger.debug("experiment %s has %d configurations", name, len(configurations))
    for index, config in enumerate(configurations):
        config_hash = store.hasher.hash(config)
        wanted = _repeats_for(experiment, config, settings)
        done = store.completed_repeats(name, report.session, config_hash)
        if done >= wanted:
            logger.debug("configuration %s already has %d repeats, skipping", config_hash, done)
            report.skipped_configurations += 1
            continue
        logger.info(
            "running configuration %d/%d of %s (%d repeats)",
            index + 1,
            len(configurations),
            name,
            wanted - done,
        )
        experiment.pre_run(config)
        for _ in range(wanted - done):
            handle = store.begin_run(name, report.session, config)
            try:
                with _monitored(handle, settings):
                    experiment.run(config, handle.sink)
            except Exception:
                logger.warning("run %s raised, marking failed", handle.path, exc_info=True)
                report.failed.append(store.fail(handle, traceback.format_exc()))
                continue
            report.completed.append(store.complete(handle))
        experiment.post_run(config)


def analyse_experiments(
    experiments: Sequence[Experiment],
    store: RunStore,
    session: Optional[str] = None,
) -> List[str]:
    analysed: List[str] = []
    for experiment in experiments:
        name = experiment.name
        chosen = session or store.latest_session(name)
        if chosen is None:
            logger.warning("no sessions recorded for experiment %r", name)
            continue
        experiment_dir = store.layout.session_root(name, chosen)
        if not experiment_dir.is_dir():
            logger.warning("no directory for experiment %r in session %s", name, chosen)
            continue
        logger.info("analysing %s using session %s", name, chosen)
        configurations = [
            (store.load_configuration(name, chosen, config_hash), experiment_dir / config_hash)
            for config_hash in store.config_hashes(name, chosen)
        ]
        store.analysis_dir(name, chosen)
        experiment.analyse(experiment_dir, store.load_environment(name, chosen), configurations)
        analysed.append(name)
    return analysed
