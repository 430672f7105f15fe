"""Dotted-path access into JSON-like payloads (``"issue.user.login"``, ``"items.0.id"``)."""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from typing import Any


class _Missing:
    """Sentinel for a path that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def get_path(data: Any, path: str) -> Any:
    """Return the value at ``path`` or ``MISSING``.

    Integer segments index into lists. An empty path returns ``data``.
    """
    if not path:
        return data

    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


def has_path(data: Any, path: str) -> bool:
    return get_path(data, path) is not MISSING


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    """Set ``value`` at ``path``, creating intermediate dicts."""
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def without_paths(data: Mapping[str, Any], paths: Sequence[str]) -> dict[str, Any]:
    """Deep copy of ``data`` with every listed path removed (missing paths are ignored)."""
    result = copy.deepcopy(dict(data))
    for path in paths:
        parts = path.split(".")
        parent = get_path(result, ".".join(parts[:-1])) if len(parts) > 1 else result
        if isinstance(parent, dict):
            parent.pop(parts[-1], None)
    return result
