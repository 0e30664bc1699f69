"""SQLAlchemy table mapping for persisted connection events."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, Sequence, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

from connwatch.models.connection_event import ConnectionEvent, ensure_utc

Base = declarative_base()

EVENT_ID_SEQUENCE = Sequence("connection_events_id_seq")


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite drops offsets, so values are normalised before binding and the
    UTC zone is re-attached on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value)


class ConnectionEventRow(Base):  # type: ignore[misc, valid-type]
    """Database row for a single connection event."""
    __tablename__ = "connection_events"
    __table_args__ = (
        Index("ix_connection_events_agent_time", "agent_name", "event_time"),
        Index("ix_connection_events_time", "event_time"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, EVENT_ID_SEQUENCE, primary_key=True, autoincrement=True)
    event_time = Column(UTCDateTime(), nullable=False)
    agent_name = Column(Text, nullable=False)
    status_ok = Column(Boolean, nullable=False)
    object_data = Column(JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql"), nullable=True)

    @classmethod
    def from_event(cls, event: ConnectionEvent) -> "ConnectionEventRow":
        row = cls()
        row.event_time = event.event_time
        row.agent_name = event.agent_name
        row.status_ok = event.status_ok
        row.object_data = event.object_data
        return row

    def to_event(self) -> ConnectionEvent:
        return ConnectionEvent(
            id=self.id,
            event_time=self.event_time,
            agent_name=self.agent_name,
            status_ok=self.status_ok,
            object_data=self.object_data,
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.to_event().to_dict()

    def __repr__(self) -> str:
        return f"<ConnectionEventRow #{self.id} {self.agent_name} ok={self.status_ok} at {self.event_time}>"


__all__ = ["Base", "ConnectionEventRow", "EVENT_ID_SEQUENCE", "UTCDateTime"]
