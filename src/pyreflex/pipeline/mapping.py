"""
Data mapping - trigger payload to reaction input, just before dispatch.

A link's ``mapping`` is a dict of ``target_field -> rule``:

    "title"   : "issue.title"                        dotted path
    "title"   : "{{issue.title}}"                    same, braces optional
    "body"    : {"type": "template",
                 "template": "#{{issue.number}}: {{issue.title}}"}
    "count"   : {"type": "number", "source": "stats.count", "default": 0}
    "is_bot"  : {"type": "boolean", "source": "sender.bot"}
    "label"   : {"type": "format", "source": "label", "format": "uppercase"}
    "channel" : 42                                   literal

Transform types: ``string``, ``number``, ``boolean``, ``template``,
``format`` and ``direct`` (default). A rule whose source is missing yields
its ``default``. Dotted target fields (``"embed.title"``) build nested input.

Without a mapping the trigger payload is passed through unchanged.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from pyreflex.pipeline.conditions import as_text
from pyreflex.pipeline.paths import MISSING, get_path, set_path

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")


class MappingError(ValueError):
    """A mapping rule could not be applied to the payload."""

    pass


@runtime_checkable
class PayloadMapper(Protocol):
    """Maps a trigger payload into a reaction's input."""

    def map(self, payload: Mapping[str, Any], mapping: Mapping[str, Any] | None) -> dict[str, Any]:
        ...


def _strip_braces(path: str) -> str:
    path = path.strip()
    if path.startswith("{{") and path.endswith("}}"):
        return path[2:-2].strip()
    return path


def _lookup(payload: Mapping[str, Any], path: Any) -> Any:
    if not isinstance(path, str) or not path.strip():
        return None
    value = get_path(payload, _strip_braces(path))
    return None if value is MISSING else value


def to_number(value: Any) -> int | float:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError as e:
        raise MappingError(f"Cannot convert to number: {value!r}") from e


def to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    if isinstance(value, (int, float)):
        return value != 0
    return False


def render_template(template: str | None, payload: Mapping[str, Any]) -> str | None:
    """Replace each ``{{path}}`` with the rendered value (empty when missing)."""
    if template is None:
        return None

    def replace(match: re.Match) -> str:
        return as_text(_lookup(payload, match.group(1))) or ""

    return _PLACEHOLDER.sub(replace, template)


def _apply_format(value: Any, fmt: str | None) -> str:
    if fmt is None:
        return str(value)
    match fmt.lower():
        case "uppercase":
            return str(value).upper()
        case "lowercase":
            return str(value).lower()
        case "trim":
            return str(value).strip()
    try:
        return fmt.format(value)
    except (IndexError, KeyError, ValueError) as e:
        logger.warning(f"Failed to apply format {fmt!r} to {value!r}: {e}")
        return str(value)


class DataMapper:
    """Default PayloadMapper."""

    def map(self, payload: Mapping[str, Any], mapping: Mapping[str, Any] | None) -> dict[str, Any]:
        """
        Apply ``mapping`` to ``payload``.

        Raises:
            MappingError: If a typed transform cannot convert its source
        """
        if not mapping:
            return dict(payload)

        result: dict[str, Any] = {}
        for target, rule in mapping.items():
            if isinstance(rule, str):
                value = _lookup(payload, rule)
            elif isinstance(rule, Mapping):
                value = self._transform(payload, rule)
            else:
                value = rule
            set_path(result, target, value)
        return result

    @staticmethod
    def _transform(payload: Mapping[str, Any], rule: Mapping[str, Any]) -> Any:
        kind = str(rule.get("type") or "direct").lower()

        if kind == "template":
            return render_template(rule.get("template"), payload)

        value = _lookup(payload, rule.get("source"))
        if value is None:
            return rule.get("default")

        match kind:
            case "string":
                return as_text(value)
            case "number":
                return to_number(value)
            case "boolean":
                return to_boolean(value)
            case "format":
                return _apply_format(value, rule.get("format"))
            case _:
                return value
