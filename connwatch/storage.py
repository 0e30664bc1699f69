"""Append-only SQLAlchemy storage for connection events."""
from __future__ import annotations

import contextlib
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from time import monotonic
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import and_, create_engine, func, or_, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from connwatch.errors import (
    ConnwatchError,
    ConstraintViolation,
    InvalidQuery,
    StorageUnavailable,
    Timeout,
)
from connwatch.models.connection_event import ConnectionEvent, ensure_utc
from connwatch.models.db_models import Base, ConnectionEventRow

logger = logging.getLogger(__name__)

STREAM_BATCH_SIZE = 500

_TIMEOUT_MARKERS = (
    "timeout",
    "timed out",
    "canceling statement",
    "database is locked",
)


@dataclass(slots=True)
class EventFilter:
    """Selection and ordering for :meth:`EventStore.query_range`.

    ``start`` is inclusive and ``end`` exclusive. ``after`` is a keyset
    position ``(event_time, id)``; only rows strictly past it in the chosen
    direction are returned.
    """

    agent_name: Optional[str] = None
    status_ok: Optional[bool] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    descending: bool = False
    after: Optional[Tuple[datetime, int]] = None
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        if self.start is not None:
            self.start = ensure_utc(self.start)
        if self.end is not None:
            self.end = ensure_utc(self.end)
        if self.start is not None and self.end is not None and self.start > self.end:
            raise InvalidQuery("start of range is after its end")
        if self.after is not None:
            when, event_id = self.after
            self.after = (ensure_utc(when), int(event_id))
        if self.limit is not None and self.limit < 1:
            raise InvalidQuery("limit must be at least 1")


def _looks_like_timeout(exc: BaseException) -> bool:
    message = str(getattr(exc, "orig", None) or exc).lower()
    return any(marker in message for marker in _TIMEOUT_MARKERS)


class EventRange:
    """Lazy, restartable view over the events matching a filter.

    Nothing touches the database until iteration starts, and every new
    iteration runs the query again.
    """

    def __init__(self, store: "EventStore", event_filter: EventFilter, timeout: Optional[float] = None) -> None:
        self._store = store
        self._filter = replace(event_filter)
        self._timeout = timeout

    @property
    def filter(self) -> EventFilter:
        return replace(self._filter)

    def __iter__(self) -> Iterator[ConnectionEvent]:
        return self._store._stream(self._filter, self._timeout)

    def __repr__(self) -> str:
        return f"<EventRange {self._filter!r}>"


class EventStore:
    """Owns the engine, the id sequence and every write to the event table."""

    def __init__(
        self,
        engine: Engine,
        *,
        default_timeout: Optional[float] = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.engine = engine
        self.default_timeout = default_timeout
        self._clock = clock
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        # StaticPool hands every thread the same connection.
        self._shared_lock = threading.RLock() if isinstance(engine.pool, StaticPool) else None

    @classmethod
    def from_url(cls, url: str, *, default_timeout: Optional[float] = None, **engine_kwargs: Any) -> "EventStore":
        """Build a store for ``url``.

        ``sqlite://`` keeps the whole database on one shared connection and
        serialises every operation on it; use it for tests and throwaway runs.
        """
        kwargs: dict = dict(engine_kwargs)
        if url.startswith("sqlite"):
            kwargs.setdefault("connect_args", {"check_same_thread": False})
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs.setdefault("poolclass", StaticPool)
        else:
            kwargs.setdefault("pool_pre_ping", True)
        try:
            engine = create_engine(url, **kwargs)
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"cannot create engine for {url}: {exc}") from exc
        return cls(engine, default_timeout=default_timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def create_schema(self) -> None:
        with self._translate_errors("create_schema"):
            Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def append(self, event: ConnectionEvent, timeout: Optional[float] = None) -> int:
        """Persist ``event`` and return its newly assigned id."""
        return self.append_many([event], timeout=timeout)[0]

    def append_many(self, events: Iterable[ConnectionEvent], timeout: Optional[float] = None) -> List[int]:
        """Persist a batch in one transaction; either every row lands or none."""
        rows = [ConnectionEventRow.from_event(event) for event in events]
        if not rows:
            return []
        timeout = self._effective_timeout(timeout)
        deadline = self._clock() + timeout if timeout else None
        with self._translate_errors("append", timeout):
            with self._session() as session:
                with session.begin():
                    self._apply_engine_timeout(session, timeout)
                    session.add_all(rows)
                    session.flush()
                    # Checked before commit so a late write is rolled back.
                    self._check_deadline(deadline, timeout, "append")
                    ids = [int(row.id) for row in rows]
        logger.debug("appended %d event(s), ids %s", len(ids), ids)
        return ids

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def query_range(self, event_filter: Optional[EventFilter] = None, timeout: Optional[float] = None) -> EventRange:
        return EventRange(self, event_filter or EventFilter(), timeout=timeout)

    def get(self, event_id: int, timeout: Optional[float] = None) -> Optional[ConnectionEvent]:
        timeout = self._effective_timeout(timeout)
        with self._translate_errors("get", timeout):
            with self._session() as session:
                self._apply_engine_timeout(session, timeout)
                row = session.get(ConnectionEventRow, event_id)
                return row.to_event() if row is not None else None

    def count(self, event_filter: Optional[EventFilter] = None, timeout: Optional[float] = None) -> int:
        event_filter = event_filter or EventFilter()
        stmt = select(func.count()).select_from(ConnectionEventRow).where(*self._conditions(event_filter))
        timeout = self._effective_timeout(timeout)
        with self._translate_errors("count", timeout):
            with self._session() as session:
                self._apply_engine_timeout(session, timeout)
                return int(session.execute(stmt).scalar_one())

    def _stream(self, event_filter: EventFilter, timeout: Optional[float]) -> Iterator[ConnectionEvent]:
        stmt = self._select(event_filter)
        timeout = self._effective_timeout(timeout)
        deadline = self._clock() + timeout if timeout else None
        if self._shared_lock is None:
            yield from self._read(stmt, timeout, deadline)
            return
        # The shared connection must not stay checked out between yields.
        with self._shared_lock:
            events = list(self._read(stmt, timeout, deadline))
        yield from events

    def _read(self, stmt: Any, timeout: Optional[float], deadline: Optional[float]) -> Iterator[ConnectionEvent]:
        with self._translate_errors("query_range", timeout):
            with self._sessions() as session:
                self._apply_engine_timeout(session, timeout)
                result = session.execute(stmt.execution_options(yield_per=STREAM_BATCH_SIZE))
                for row in result.scalars():
                    self._check_deadline(deadline, timeout, "query_range")
                    yield row.to_event()

    @contextlib.contextmanager
    def _session(self) -> Iterator[Session]:
        with self._shared_lock or contextlib.nullcontext():
            with self._sessions() as session:
                yield session

    def _select(self, event_filter: EventFilter):
        stmt = select(ConnectionEventRow).where(*self._conditions(event_filter))
        if event_filter.descending:
            stmt = stmt.order_by(ConnectionEventRow.event_time.desc(), ConnectionEventRow.id.desc())
        else:
            stmt = stmt.order_by(ConnectionEventRow.event_time.asc(), ConnectionEventRow.id.asc())
        if event_filter.limit is not None:
            stmt = stmt.limit(event_filter.limit)
        return stmt

    @staticmethod
    def _conditions(event_filter: EventFilter) -> Sequence[Any]:
        table = ConnectionEventRow
        conditions: List[Any] = []
        if event_filter.agent_name is not None:
            conditions.append(table.agent_name == event_filter.agent_name)
        if event_filter.status_ok is not None:
            conditions.append(table.status_ok.is_(event_filter.status_ok))
        if event_filter.start is not None:
            conditions.append(table.event_time >= event_filter.start)
        if event_filter.end is not None:
            conditions.append(table.event_time < event_filter.end)
        if event_filter.after is not None:
            when, event_id = event_filter.after
            if event_filter.descending:
                conditions.append(
                    or_(table.event_time < when, and_(table.event_time == when, table.id < event_id))
                )
            else:
                conditions.append(
                    or_(table.event_time > when, and_(table.event_time == when, table.id > event_id))
                )
        return conditions

    # ------------------------------------------------------------------
    # Timeout and error helpers
    # ------------------------------------------------------------------
    def _effective_timeout(self, timeout: Optional[float]) -> Optional[float]:
        if timeout is None:
            timeout = self.default_timeout
        if timeout is not None and timeout <= 0:
            return None
        return timeout

    def _apply_engine_timeout(self, session: Session, timeout: Optional[float]) -> None:
        if not timeout:
            return
        millis = max(1, int(timeout * 1000))
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            session.execute(text(f"PRAGMA busy_timeout = {millis}"))
        elif dialect == "postgresql":
            session.execute(text(f"SET LOCAL statement_timeout = {millis}"))

    def _check_deadline(self, deadline: Optional[float], timeout: Optional[float], operation: str) -> None:
        if deadline is not None and self._clock() > deadline:
            raise Timeout(f"{operation} exceeded {timeout:.3f}s", timeout=timeout)

    @contextlib.contextmanager
    def _translate_errors(self, operation: str, timeout: Optional[float] = None) -> Iterator[None]:
        try:
            yield
        except ConnwatchError as exc:
            if isinstance(exc, Timeout):
                logger.warning("%s timed out after %ss", operation, timeout)
            raise
        except IntegrityError as exc:
            logger.error("%s rejected by a storage constraint: %s", operation, exc.orig)
            raise ConstraintViolation(f"{operation}: {exc.orig}") from exc
        except PoolTimeoutError as exc:
            logger.warning("%s timed out waiting for a connection", operation)
            raise Timeout(f"{operation}: {exc}", timeout=timeout) from exc
        except OperationalError as exc:
            if _looks_like_timeout(exc):
                logger.warning("%s timed out: %s", operation, exc.orig)
                raise Timeout(f"{operation}: {exc.orig}", timeout=timeout) from exc
            logger.warning("%s failed, storage unavailable: %s", operation, exc.orig)
            raise StorageUnavailable(f"{operation}: {exc.orig}") from exc
        except (InterfaceError, DisconnectionError) as exc:
            logger.warning("%s lost its storage connection: %s", operation, exc)
            raise StorageUnavailable(f"{operation}: {exc}") from exc
        except DBAPIError as exc:
            logger.exception("%s failed in the database driver", operation)
            raise StorageUnavailable(f"{operation}: {exc.orig}") from exc


__all__ = ["EventFilter", "EventRange", "EventStore", "STREAM_BATCH_SIZE"]
