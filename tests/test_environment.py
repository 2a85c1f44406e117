from pathlib import Path

import pytest
from pydantic import ValidationError

from repexp.config import Settings, load_settings
from repexp.environment import capture_environment
from repexp.store import RunStore
from repexp.utils import read_json, write_json


def test_capture_environment_fields() -> None:
    env = capture_environment()
    assert env.hostname
    assert env.os
    assert env.python_version.count(".") == 2
    assert env.cpu_count >= 1
    assert env.memory_total_bytes > 0
    assert env.captured_at


def test_store_captures_environment_by_default(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    path = store.write_environment("exp", "20240101T000000Z")
    data = read_json(path)
    assert data["schema_version"] == "v1"
    assert data["hostname"] == capture_environment().hostname


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REPEXP_DEFAULT_REPEATS", "3")
    monkeypatch.setenv("REPEXP_RESULTS_DIR", "/tmp/elsewhere")
    settings = Settings()
    assert settings.default_repeats == 3
    assert settings.results_path == Path("/tmp/elsewhere")


def test_settings_from_file(tmp_path: Path) -> None:
    config = tmp_path / "settings.json"
    write_json(config, {"results_dir": str(tmp_path / "out"), "fsync": False})
    settings = load_settings(config)
    assert settings.results_dir == str(tmp_path / "out")
    assert settings.fsync is False
    assert load_settings(None).results_dir == "results"


@pytest.mark.parametrize(
    "overrides",
    [{"default_repeats": 0}, {"max_allocation_attempts": 0}, {"monitor_interval_s": 0.01}],
)
def test_settings_validation(overrides: dict) -> None:
    with pytest.raises(ValidationError):
        Settings(**overrides)
