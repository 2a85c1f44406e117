from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


class ArtifactRecord(BaseModel):
    path: str
    content_hash: str
    bytes: int
    kind: Literal["logs", "metrics", "data"]


class Environment(BaseModel):
    schema_version: str = "v1"
    hostname: str
    os: str
    release: str
    version: str
    architecture: str
    python_version: str
    cpu_model: str = ""
    cpu_count: int = 0
    memory_total_bytes: int = 0
    captured_at: str
    extra: Dict[str, Any] = Field(default_factory=dict)


class ProcessSample(BaseModel):
    time: str
    pid: int
    parent: Optional[int] = None
    name: str = ""
    cpu_usage_percentage: float = 0.0
    memory_usage_bytes: int = 0
    virtual_memory_usage_bytes: int = 0
    disk_bytes_read: Optional[int] = None
    disk_bytes_written: Optional[int] = None
