"""In-memory representation and validation of connection events."""
from __future__ import annotations

import copy
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from connwatch.errors import InvalidEvent

JSONScalar = Union[None, bool, int, float, str]
JSONValue = Union[JSONScalar, List["JSONValue"], Dict[str, "JSONValue"]]
JSONDocument = Dict[str, JSONValue]

MAX_DOCUMENT_DEPTH = 32


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Any, field: str = "event_time") -> datetime:
    """Coerce a datetime or ISO-8601 string into an aware UTC datetime."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError as exc:
            raise InvalidEvent(field, f"not an ISO-8601 timestamp: {value!r}") from exc
    raise InvalidEvent(field, f"expected a timestamp, got {type(value).__name__}")


def _normalize_document(value: Any, path: str, depth: int) -> JSONValue:
    if depth > MAX_DOCUMENT_DEPTH:
        raise InvalidEvent("object_data", f"nesting deeper than {MAX_DOCUMENT_DEPTH} levels at {path}")
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidEvent("object_data", f"non-finite number at {path}")
        return value
    if isinstance(value, Mapping):
        result: Dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise InvalidEvent("object_data", f"non-string key {key!r} at {path}")
            result[key] = _normalize_document(item, f"{path}.{key}", depth + 1)
        return result
    if isinstance(value, (list, tuple)):
        return [
            _normalize_document(item, f"{path}[{index}]", depth + 1)
            for index, item in enumerate(value)
        ]
    raise InvalidEvent("object_data", f"unsupported value of type {type(value).__name__} at {path}")


def normalize_document(value: Any) -> Optional[JSONDocument]:
    """Return a detached, JSON-safe copy of ``value`` or raise InvalidEvent."""
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise InvalidEvent("object_data", "must be a JSON object")
    return _normalize_document(value, "$", 1)  # type: ignore[return-value]


@dataclass(frozen=True, slots=True)
class ConnectionEvent:
    """One immutable report of an agent's connectivity at a point in time.

    ``id`` stays ``None`` until the storage layer assigns one.
    """

    agent_name: str
    status_ok: bool
    event_time: datetime
    object_data: Optional[JSONDocument] = None
    id: Optional[int] = None

    def with_id(self, event_id: int) -> "ConnectionEvent":
        return replace(self, id=event_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_time": self.event_time.isoformat(),
            "agent_name": self.agent_name,
            "status_ok": self.status_ok,
            "object_data": copy.deepcopy(self.object_data),
        }


def validate(
    candidate: Union[Mapping[str, Any], ConnectionEvent],
    *,
    default_time: Optional[datetime] = None,
) -> ConnectionEvent:
    """Check ``candidate`` and return a normalized :class:`ConnectionEvent`.

    ``default_time`` is used when the candidate carries no ``event_time``;
    without it a missing timestamp is an error. Any ``id`` on the candidate
    is ignored because ids are only assigned by storage.
    """
    if isinstance(candidate, ConnectionEvent):
        raw: Mapping[str, Any] = {
            "agent_name": candidate.agent_name,
            "status_ok": candidate.status_ok,
            "event_time": candidate.event_time,
            "object_data": candidate.object_data,
        }
    elif isinstance(candidate, Mapping):
        raw = candidate
    else:
        raise InvalidEvent("event", f"expected a mapping, got {type(candidate).__name__}")

    agent_name = raw.get("agent_name")
    if not isinstance(agent_name, str):
        raise InvalidEvent("agent_name", "required string")
    agent_name = agent_name.strip()
    if not agent_name:
        raise InvalidEvent("agent_name", "must not be empty")

    status_ok = raw.get("status_ok")
    if not isinstance(status_ok, bool):
        raise InvalidEvent("status_ok", "required boolean")

    event_time = raw.get("event_time")
    if event_time is None:
        if default_time is None:
            raise InvalidEvent("event_time", "required when no default time is available")
        event_time = default_time
    when = parse_timestamp(event_time)

    return ConnectionEvent(
        agent_name=agent_name,
        status_ok=status_ok,
        event_time=when,
        object_data=normalize_document(raw.get("object_data")),
    )


__all__ = [
    "ConnectionEvent",
    "JSONDocument",
    "JSONValue",
    "MAX_DOCUMENT_DEPTH",
    "ensure_utc",
    "normalize_document",
    "parse_timestamp",
    "validate",
]
