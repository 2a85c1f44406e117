from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .utils import read_json


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REPEXP_")

    results_dir: str = "results"
    default_repeats: int = 1
    excluded_config_keys: List[str] = Field(
        default_factory=lambda: ["comment", "_comment", "_meta"]
    )
    max_allocation_attempts: int = 64
    reconcile_on_start: bool = True
    monitor_runs: bool = False
    monitor_interval_s: float = 1.0
    fsync: bool = True

    @field_validator("default_repeats", "max_allocation_attempts")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("monitor_interval_s")
    @classmethod
    def _interval_floor(cls, value: float) -> float:
        if value < 0.1:
            raise ValueError("monitor interval must be >= 0.1 seconds")
        return value

    @property
    def results_path(self) -> Path:
        return Path(self.results_dir)


def load_settings(config: Optional[Path]) -> Settings:
    if config is None:
        return Settings()
    data = read_json(config)
    return Settings(**data)
