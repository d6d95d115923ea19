"""
Object metadata and wire helpers shared by every stored model.

Stored objects use camelCase keys on the wire; Python code uses
snake_case attributes. ``WireModel`` bridges the two so that
``model_dump(by_alias=True)`` produces the stored representation and
``model_validate`` accepts it back.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Current UTC time (timezone-aware)."""
    return datetime.now(UTC)


# ── Durations ───────────────────────────────────────────────────

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: Any) -> Any:
    """Parse a Go-style duration (``30s``, ``5m``, ``1h30m``) or seconds.

    Non-string values are passed through for pydantic to coerce.
    """
    if not isinstance(value, str):
        return value

    text = value.strip()
    if not text:
        raise ValueError("empty duration")
    try:
        return timedelta(seconds=float(text))
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration '{value}'")
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration '{value}'")
    return timedelta(seconds=total)


def format_duration(value: timedelta) -> str:
    """Render a duration the way it is stored (``90s`` → ``1m30s``).

    Fractions stay on the seconds part, never in exponent form.
    """
    micros = value // timedelta(microseconds=1)
    seconds, micros = divmod(micros, 1_000_000)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    out = ""
    if hours:
        out += f"{hours}h"
    if minutes:
        out += f"{minutes}m"
    if secs or micros or not out:
        out += str(secs)
        if micros:
            out += f".{micros:06d}".rstrip("0")
        out += "s"
    return out


Duration = Annotated[
    timedelta,
    BeforeValidator(parse_duration),
    PlainSerializer(format_duration, return_type=str, when_used="json"),
]


# ── Base model ──────────────────────────────────────────────────


class WireModel(BaseModel):
    """Base for stored models: camelCase on the wire, snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


@dataclass(frozen=True, order=True)
class NamespacedName:
    """Identity of a namespaced object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, key: str, default_namespace: str = "default") -> NamespacedName:
        """Parse ``namespace/name`` (or a bare ``name``)."""
        if "/" in key:
            namespace, name = key.split("/", 1)
            return cls(namespace=namespace or default_namespace, name=name)
        return cls(namespace=default_namespace, name=key)


class ObjectMeta(WireModel):
    """Identity and lifecycle metadata of a stored object."""

    name: str
    namespace: str = "default"
    generation: int = 1
    resource_version: str = ""
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(namespace=self.namespace, name=self.name)

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers
