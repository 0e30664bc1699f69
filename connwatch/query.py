"""Read-only, paginated access to stored connection events."""
from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from connwatch.errors import InvalidQuery
from connwatch.models.connection_event import ConnectionEvent, ensure_utc
from connwatch.storage import EventFilter, EventStore

logger = logging.getLogger(__name__)

MAX_EVENT_ID = 2**63 - 1


def encode_cursor(event: ConnectionEvent, descending: bool) -> str:
    if event.id is None:
        raise ValueError("cannot build a cursor from an unsaved event")
    payload = {"t": ensure_utc(event.event_time).isoformat(), "i": event.id, "d": descending}
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("ascii")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> Tuple[Tuple[datetime, int], bool]:
    """Return ``((event_time, id), descending)`` for a token from :func:`encode_cursor`."""
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        when = ensure_utc(datetime.fromisoformat(payload["t"]))
        event_id = payload["i"]
        descending = payload["d"]
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as exc:
        raise InvalidQuery("malformed cursor") from exc
    if not isinstance(event_id, int) or isinstance(event_id, bool) or not isinstance(descending, bool):
        raise InvalidQuery("malformed cursor")
    if not 0 <= event_id <= MAX_EVENT_ID:
        raise InvalidQuery("malformed cursor")
    return (when, event_id), descending


@dataclass(slots=True)
class EventPage:
    events: List[ConnectionEvent] = field(default_factory=list)
    next_cursor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events": [event.to_dict() for event in self.events],
            "next_cursor": self.next_cursor,
        }


class QueryLayer:
    """Bounded, cursor-paginated reads over :class:`EventStore`.

    Cursors are keyset positions, so a page boundary stays stable even when
    new events arrive between calls.
    """

    def __init__(self, store: EventStore, *, default_page_size: int = 100, max_page_size: int = 1000) -> None:
        if max_page_size < 1:
            raise ValueError("max_page_size must be at least 1")
        self._store = store
        self.max_page_size = max_page_size
        self.default_page_size = min(max(1, default_page_size), max_page_size)

    def fetch(
        self,
        event_filter: Optional[EventFilter] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> EventPage:
        event_filter = event_filter or EventFilter()
        page_size = self._page_size(limit)
        position = None
        if cursor:
            position, descending = decode_cursor(cursor)
            if descending != event_filter.descending:
                raise InvalidQuery("cursor was issued for the opposite sort order")

        # One extra row tells us whether another page exists.
        window = replace(event_filter, after=position, limit=page_size + 1)
        rows = list(self._store.query_range(window, timeout=timeout))
        events = rows[:page_size]
        next_cursor = None
        if len(rows) > page_size:
            next_cursor = encode_cursor(events[-1], event_filter.descending)
        logger.debug("fetch returned %d event(s), more=%s", len(events), next_cursor is not None)
        return EventPage(events=events, next_cursor=next_cursor)

    def iter_all(
        self,
        event_filter: Optional[EventFilter] = None,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[ConnectionEvent]:
        cursor: Optional[str] = None
        while True:
            page = self.fetch(event_filter, cursor=cursor, limit=page_size, timeout=timeout)
            yield from page.events
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    def get(self, event_id: int, timeout: Optional[float] = None) -> Optional[ConnectionEvent]:
        return self._store.get(event_id, timeout=timeout)

    def _page_size(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.default_page_size
        if limit < 1:
            raise InvalidQuery("limit must be at least 1")
        return min(limit, self.max_page_size)


__all__ = ["MAX_EVENT_ID", "EventPage", "QueryLayer", "decode_cursor", "encode_cursor"]
