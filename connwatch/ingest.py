"""Ingestion service: validate agent reports and hand them to storage."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional, Union

from connwatch.errors import ConstraintViolation, InvalidEvent, StorageUnavailable
from connwatch.models.connection_event import ConnectionEvent, validate
from connwatch.storage import EventStore

logger = logging.getLogger(__name__)

RawEvent = Union[Mapping[str, Any], ConnectionEvent]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IngestionService:
    """Accepts event submissions and writes one row per accepted event.

    Storage failures are surfaced unchanged and never retried here: without
    idempotency keys a silent retry could duplicate a row.
    """

    def __init__(
        self,
        store: EventStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self._clock = clock or _utc_now

    def submit(self, raw_event: RawEvent, timeout: Optional[float] = None) -> int:
        event = self._validate(raw_event)
        try:
            event_id = self.store.append(event, timeout=timeout)
        except ConstraintViolation:
            logger.error("constraint violation storing event from %s", event.agent_name)
            raise
        except StorageUnavailable as exc:
            logger.warning("could not store event from %s: %s", event.agent_name, exc)
            raise
        logger.debug(
            "accepted event %d from %s (ok=%s)", event_id, event.agent_name, event.status_ok
        )
        return event_id

    def submit_many(self, raw_events: Iterable[RawEvent], timeout: Optional[float] = None) -> List[int]:
        """Validate a whole batch up front, then store it atomically."""
        events: List[ConnectionEvent] = []
        for index, raw in enumerate(raw_events):
            try:
                events.append(self._validate(raw))
            except InvalidEvent as exc:
                raise InvalidEvent(f"events[{index}].{exc.field}", exc.message) from exc
        if not events:
            return []
        try:
            ids = self.store.append_many(events, timeout=timeout)
        except ConstraintViolation:
            logger.error("constraint violation storing batch of %d events", len(events))
            raise
        except StorageUnavailable as exc:
            logger.warning("could not store batch of %d events: %s", len(events), exc)
            raise
        logger.debug("accepted batch of %d events", len(ids))
        return ids

    def _validate(self, raw_event: RawEvent) -> ConnectionEvent:
        try:
            return validate(raw_event, default_time=self._clock())
        except InvalidEvent as exc:
            logger.info("rejected event: %s", exc)
            raise


__all__ = ["IngestionService", "RawEvent"]
