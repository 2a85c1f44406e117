from __future__ import annotations

import math
from pathlib import Path

import pytest

from repexp.config import Settings
from repexp.schemas import Environment
from repexp.store import (
    IoFailure,
    RunAlreadyExists,
    RunListing,
    RunNotRunning,
    RunState,
    RunStore,
    StateTransitionConflict,
    UnhashableConfig,
    config_hash,
    parse_repeat_dir_name,
)
from repexp.utils import read_json

SESSION = "20240101T000000Z"


def _store(tmp_path: Path) -> RunStore:
    return RunStore(tmp_path, settings=Settings(fsync=False))


def _entries(path: Path) -> list[str]:
    return sorted(entry.name for entry in path.iterdir())


def _assert_single_state(config_root: Path) -> None:
    seen: dict[int, str] = {}
    for name in _entries(config_root):
        parsed = parse_repeat_dir_name(name)
        if parsed is None:
            continue
        assert parsed[0] not in seen, f"{name} and {seen[parsed[0]]} both visible"
        seen[parsed[0]] = name


def _environment() -> Environment:
    return Environment(
        hostname="host",
        os="Linux",
        release="6.0",
        version="#1",
        architecture="x86_64",
        python_version="3.12.0",
        captured_at="2024-01-01T00:00:00+00:00",
    )


def test_begin_and_complete_scenario(tmp_path: Path) -> None:
    store = _store(tmp_path)
    handle = store.begin_run("exp", SESSION, {"rate": 10})
    hash_a = config_hash({"rate": 10})
    config_root = tmp_path / "experiments" / SESSION / "exp" / hash_a
    assert handle.path == config_root / "repeat-1.running"
    assert handle.repeat == 1
    assert handle.state is RunState.RUNNING
    assert _entries(handle.path) == ["data", "logs", "metrics"]
    assert read_json(config_root / "configuration.json") == {"rate": 10}

    summary = store.complete(handle)
    assert summary.state is RunState.COMPLETED
    assert handle.path == config_root / "repeat-1"
    assert _entries(config_root) == ["configuration.json", "repeat-1"]
    assert _entries(config_root / "repeat-1") == ["data", "logs", "metrics"]


def test_repeats_are_dense_after_failures(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.begin_run("exp", SESSION, {"rate": 10})
    store.fail(first)
    second = store.begin_run("exp", SESSION, {"rate": 10})
    third = store.begin_run("exp", SESSION, {"rate": 10})
    assert (second.repeat, third.repeat) == (2, 3)
    store.complete(third)
    store.complete(second)
    states = {(s.repeat, s.state) for s in store.list_runs("exp")}
    assert states == {
        (1, RunState.FAILED),
        (2, RunState.COMPLETED),
        (3, RunState.COMPLETED),
    }
    _assert_single_state(first.config_root)


def test_repeat_fills_smallest_gap(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.complete(store.begin_run("exp", SESSION, {"rate": 1}, repeat=2))
    handle = store.begin_run("exp", SESSION, {"rate": 1})
    assert handle.repeat == 1
    assert store.begin_run("exp", SESSION, {"rate": 1}).repeat == 3


def test_explicit_repeat_taken_raises(tmp_path: Path) -> None:
    store = _store(tmp_path)
    handle = store.begin_run("exp", SESSION, {"rate": 10}, repeat=1)
    with pytest.raises(RunAlreadyExists):
        store.begin_run("exp", SESSION, {"rate": 10}, repeat=1)
    store.complete(handle)
    with pytest.raises(RunAlreadyExists):
        store.begin_run("exp", SESSION, {"rate": 10}, repeat=1)
    _assert_single_state(handle.config_root)


def test_distinct_configs_get_distinct_groups(tmp_path: Path) -> None:
    store = _store(tmp_path)
    a = store.begin_run("exp", SESSION, {"rate": 10})
    b = store.begin_run("exp", SESSION, {"rate": 20})
    c = store.begin_run("exp", SESSION, {"rate": 10, "comment": "again"})
    assert a.config_hash != b.config_hash
    assert c.config_hash == a.config_hash
    assert (a.repeat, b.repeat, c.repeat) == (1, 1, 2)


def test_terminal_twice_raises_and_leaves_directory(tmp_path: Path) -> None:
    store = _store(tmp_path)
    handle = store.begin_run("exp", SESSION, {"rate": 10})
    store.complete(handle)
    before = _entries(handle.config_root)
    with pytest.raises(RunNotRunning):
        store.complete(handle)
    with pytest.raises(RunNotRunning):
        store.fail(handle)
    assert _entries(handle.config_root) == before
    assert handle.state is RunState.COMPLETED


def test_fail_records_reason(tmp_path: Path) -> None:
    store = _store(tmp_path)
    handle = store.begin_run("exp", SESSION, {"rate": 10})
    store.fail(handle, "harness exited with 3")
    assert handle.path.name == "repeat-1.failed"
    assert (handle.path / "logs" / "failure.txt").read_text(encoding="utf-8") == (
        "harness exited with 3"
    )


def test_fail_still_finishes_when_reason_cannot_be_written(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = _store(tmp_path)
    handle = store.begin_run("exp", SESSION, {"rate": 10})

    def _broken(rel_path: str, text: str) -> None:
        raise IoFailure(handle.path / "logs" / rel_path, OSError(28, "No space left on device"))

    monkeypatch.setattr(handle.sink.logs, "write_text", _broken)
    summary = store.fail(handle, "harness exited with 3")
    assert summary.state is RunState.FAILED
    assert handle.path.name == "repeat-1.failed"
    assert not (handle.path / "logs" / "failure.txt").exists()
    assert store.active_runs() == []


def test_unhashable_config_creates_nothing(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(UnhashableConfig):
        store.begin_run("exp", SESSION, {"rate": math.nan})
    assert not (tmp_path / "experiments").exists()


def test_conflicting_terminal_directory_is_left_alone(tmp_path: Path) -> None:
    store = _store(tmp_path)
    handle = store.begin_run("exp", SESSION, {"rate": 10})
    tampered = handle.config_root / "repeat-1"
    tampered.mkdir()
    (tampered / "keep.txt").write_text("operator data", encoding="utf-8")
    with pytest.raises(StateTransitionConflict):
        store.complete(handle)
    assert handle.state is RunState.RUNNING
    assert (handle.config_root / "repeat-1.running").is_dir()
    assert (tampered / "keep.txt").read_text(encoding="utf-8") == "operator data"


def test_list_runs_is_lazy_and_restartable(tmp_path: Path) -> None:
    store = _store(tmp_path)
    handle = store.begin_run("exp", SESSION, {"rate": 10})
    listing = store.list_runs("exp")
    assert isinstance(listing, RunListing)
    first = [summary.state for summary in listing]
    assert first == [RunState.RUNNING]
    store.complete(handle)
    assert [summary.state for summary in listing] == [RunState.COMPLETED]
    assert list(listing) == list(listing)


def test_list_runs_ignores_foreign_entries(tmp_path: Path) -> None:
    store = _store(tmp_path)
    handle = store.begin_run("exp", SESSION, {"rate": 10})
    store.complete(handle)
    store.analysis_dir("exp", SESSION)
    (handle.config_root / "notes.txt").write_text("x", encoding="utf-8")
    (handle.config_root / "repeat-x").mkdir()
    store.write_environment("exp", SESSION, _environment())
    runs = list(store.list_runs("exp"))
    assert len(runs) == 1
    assert runs[0].config_hash == handle.config_hash
    assert runs[0].session == SESSION
    assert runs[0].path == str(handle.path)


def test_list_runs_filters_sessions(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.complete(store.begin_run("exp", "20240101T000000Z", {"rate": 1}))
    store.complete(store.begin_run("exp", "20240102T000000Z", {"rate": 1}))
    store.complete(store.begin_run("other", "20240102T000000Z", {"rate": 1}))
    assert [s.session for s in store.list_runs("exp")] == [
        "20240101T000000Z",
        "20240102T000000Z",
    ]
    assert [s.session for s in store.list_runs("exp", "20240102T000000Z")] == [
        "20240102T000000Z"
    ]
    assert list(store.list_runs("missing")) == []
    assert store.sessions("exp") == ["20240101T000000Z", "20240102T000000Z"]
    assert store.latest_session("exp") == "20240102T000000Z"
    assert store.latest_session("missing") is None


def test_configuration_file_is_canonical(tmp_path: Path) -> None:
    store = _store(tmp_path)
    handle = store.begin_run("exp", SESSION, {"b": [1, 2], "a": 1.5, "comment": "skip"})
    stored = store.load_configuration("exp", SESSION, handle.config_hash)
    assert stored == {"a": 1.5, "b": [1, 2]}
    text = (handle.config_root / "configuration.json").read_text(encoding="utf-8")
    assert text.endswith("\n")
    assert text.index('"a"') < text.index('"b"')


def test_environment_written_once(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = _environment()
    second = first.model_copy(update={"hostname": "other"})
    path = store.write_environment("exp", SESSION, first)
    assert store.write_environment("exp", SESSION, second) == path
    loaded = store.load_environment("exp", SESSION)
    assert loaded is not None
    assert loaded.hostname == "host"
    assert [p.name for p in path.parent.iterdir()] == ["environment.json"]
    assert store.load_environment("exp", "20990101T000000Z") is None


def test_completed_repeats_and_config_hashes(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.complete(store.begin_run("exp", SESSION, {"rate": 1}))
    store.fail(store.begin_run("exp", SESSION, {"rate": 1}))
    store.complete(store.begin_run("exp", SESSION, {"rate": 1}))
    store.begin_run("exp", SESSION, {"rate": 2})
    store.analysis_dir("exp", SESSION)
    hash_1 = config_hash({"rate": 1})
    assert store.completed_repeats("exp", SESSION, hash_1) == 2
    assert sorted(store.config_hashes("exp", SESSION)) == sorted(
        [hash_1, config_hash({"rate": 2})]
    )
