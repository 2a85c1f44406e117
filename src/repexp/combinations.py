"""Expansion of parameter sweeps into concrete configurations."""

from __future__ import annotations

import copy
import itertools
from typing import Any, Dict, Iterator, List, Mapping, Optional


def expand(value: Any) -> List[Any]:
    """Flatten ``value`` into the list of alternatives it stands for.

    Scalars and mappings stand for themselves, ranges for their items and
    lists for the concatenation of their items' expansions, so
    ``[[2, 5], range(2)]`` expands to ``[2, 5, 0, 1]``.
    """
    if isinstance(value, range):
        return list(value)
    if isinstance(value, list):
        expanded: List[Any] = []
        for item in value:
            expanded.extend(expand(item))
        return expanded
    return [value]


def grid(
    parameters: Mapping[str, Any], base: Optional[Mapping[str, Any]] = None
) -> Iterator[Dict[str, Any]]:
    names = list(parameters.keys())
    choices = [expand(parameters[name]) for name in names]
    for values in itertools.product(*choices):
        config: Dict[str, Any] = copy.deepcopy(dict(base or {}))
        config.update(zip(names, values))
        yield config
