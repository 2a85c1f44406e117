from __future__ import annotations

import dataclasses
import math
from typing import Any, Iterable, Mapping, Optional

import orjson
from pydantic import BaseModel

from ..config import Settings
from ..utils import canonical_dumps, hash_bytes
from .errors import UnhashableConfig

DEFAULT_EXCLUDED_KEYS = frozenset({"comment", "_comment", "_meta"})
CONFIG_HASH_LENGTH = 64


class ConfigHasher:
    """Derives the directory name of a configuration's run group.

    Mapping keys are sorted, the configured comment keys are dropped at
    every nesting level, and only JSON-shaped values are accepted so that
    ``1``, ``1.0`` and ``True`` keep distinct encodings.
    """

    def __init__(self, excluded_keys: Optional[Iterable[str]] = None) -> None:
        if excluded_keys is None:
            excluded_keys = DEFAULT_EXCLUDED_KEYS
        self.excluded_keys = frozenset(excluded_keys)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConfigHasher":
        return cls(settings.excluded_config_keys)

    def canonicalize(self, config: Any) -> Any:
        return self._canonical(config, "")

    def canonical_bytes(self, config: Any) -> bytes:
        value = self.canonicalize(config)
        try:
            return canonical_dumps(value)
        except orjson.JSONEncodeError as exc:
            raise UnhashableConfig("", str(exc)) from exc

    def hash(self, config: Any) -> str:
        return hash_bytes(self.canonical_bytes(config))

    def _canonical(self, value: Any, location: str) -> Any:
        if value is None or isinstance(value, (bool, str)):
            return value
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            if math.isnan(value) or math.isinf(value):
                raise UnhashableConfig(location, f"non-finite float {value!r}")
            return value
        if isinstance(value, BaseModel):
            return self._canonical(value.model_dump(mode="python"), location)
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return self._canonical(dataclasses.asdict(value), location)
        if isinstance(value, Mapping):
            return self._canonical_mapping(value, location)
        if isinstance(value, (list, tuple)):
            return [
                self._canonical(item, f"{location}[{idx}]") for idx, item in enumerate(value)
            ]
        if isinstance(value, (set, frozenset)):
            raise UnhashableConfig(location, "sets have no deterministic order")
        raise UnhashableConfig(location, f"unsupported type {type(value).__name__}")

    def _canonical_mapping(self, value: Mapping[Any, Any], location: str) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise UnhashableConfig(
                    location, f"mapping key {key!r} is {type(key).__name__}, not str"
                )
            if key in self.excluded_keys:
                continue
            child = f"{location}.{key}" if location else key
            result[key] = self._canonical(item, child)
        return result


_default_hasher = ConfigHasher()


def config_hash(config: Any) -> str:
    return _default_hasher.hash(config)
