"""Storage layer behaviour against in-memory SQLite."""
from __future__ import annotations

import itertools
from concurrent.futures import ThreadPoolExecutor
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from connwatch.errors import ConstraintViolation, InvalidQuery, StorageUnavailable, Timeout
from connwatch.models.connection_event import ConnectionEvent
from connwatch.storage import EventFilter, EventStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _event(agent: str = "agent-1", ok: bool = True, minutes: int = 0, data=None) -> ConnectionEvent:
    return ConnectionEvent(agent_name=agent, status_ok=ok, event_time=T0 + timedelta(minutes=minutes), object_data=data)


def _memory_store(**kwargs) -> EventStore:
    store = EventStore.from_url("sqlite://", **kwargs)
    store.create_schema()
    return store


class AppendTest(unittest.TestCase):
    def setUp(self) -> None:
        self.store = _memory_store()

    def tearDown(self) -> None:
        self.store.dispose()

    def test_ids_are_unique_and_increasing(self) -> None:
        ids = [self.store.append(_event(minutes=i)) for i in range(5)]
        self.assertEqual(ids, sorted(ids))
        self.assertEqual(len(set(ids)), 5)
        self.assertEqual(ids[0], 1)

    def test_round_trip_preserves_every_field(self) -> None:
        data = {"network_id": "dns", "nested": {"list": [1, 2.5, None, True]}}
        event_id = self.store.append(_event(ok=False, minutes=3, data=data))
        stored = self.store.get(event_id)
        self.assertIsNotNone(stored)
        assert stored is not None
        self.assertEqual(stored.id, event_id)
        self.assertEqual(stored.agent_name, "agent-1")
        self.assertFalse(stored.status_ok)
        self.assertEqual(stored.event_time, T0 + timedelta(minutes=3))
        self.assertEqual(stored.event_time.tzinfo, timezone.utc)
        self.assertEqual(stored.object_data, data)

    def test_get_missing_returns_none(self) -> None:
        self.assertIsNone(self.store.get(404))

    def test_caller_supplied_id_is_ignored(self) -> None:
        first = self.store.append(_event())
        second = self.store.append(_event().with_id(first))
        self.assertNotEqual(first, second)

    def test_batch_is_all_or_nothing(self) -> None:
        bad = ConnectionEvent(agent_name=None, status_ok=True, event_time=T0)  # type: ignore[arg-type]
        with self.assertRaises(ConstraintViolation):
            self.store.append_many([_event(), bad, _event()])
        self.assertEqual(self.store.count(), 0)

        ids = self.store.append_many([_event(minutes=1), _event(minutes=2)])
        self.assertEqual(len(ids), 2)
        self.assertEqual(self.store.count(), 2)

    def test_empty_batch_is_a_no_op(self) -> None:
        self.assertEqual(self.store.append_many([]), [])

    def test_not_null_breach_is_a_constraint_violation(self) -> None:
        bad = ConnectionEvent(agent_name="a", status_ok=None, event_time=T0)  # type: ignore[arg-type]
        with self.assertRaises(ConstraintViolation):
            self.store.append(bad)
        self.assertEqual(self.store.count(), 0)

    def test_timed_out_write_leaves_no_row(self) -> None:
        ticks = itertools.count(0.0, 10.0)
        slow = EventStore(self.store.engine, clock=lambda: next(ticks))
        with self.assertRaises(Timeout) as ctx:
            slow.append(_event(), timeout=1.0)
        self.assertIsInstance(ctx.exception, StorageUnavailable)
        self.assertEqual(self.store.count(), 0)

    def test_default_timeout_applies_when_none_given(self) -> None:
        ticks = itertools.count(0.0, 10.0)
        slow = EventStore(self.store.engine, default_timeout=1.0, clock=lambda: next(ticks))
        with self.assertRaises(Timeout):
            slow.append(_event())

    def test_shared_memory_store_serialises_worker_threads(self) -> None:
        def work(n: int) -> int:
            event_id = self.store.append(_event(f"agent-{n % 3}", n % 2 == 0, minutes=n))
            list(self.store.query_range(EventFilter(agent_name=f"agent-{n % 3}")))
            return event_id

        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(pool.map(work, range(40)))
        self.assertEqual(sorted(ids), list(range(1, 41)))
        self.assertEqual(self.store.count(), 40)

    def test_unreachable_database_is_storage_unavailable(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            url = f"sqlite:///{Path(tmp, 'missing', 'nested', 'events.sqlite3')}"
            store = EventStore.from_url(url)
            with self.assertRaises(StorageUnavailable) as ctx:
                store.append(_event())
            self.assertNotIsInstance(ctx.exception, Timeout)
            store.dispose()


class QueryRangeTest(unittest.TestCase):
    def setUp(self) -> None:
        self.store = _memory_store()
        # Inserted out of event_time order on purpose.
        self.store.append(_event("agent-1", True, minutes=20))
        self.store.append(_event("agent-2", False, minutes=30))
        self.store.append(_event("agent-1", False, minutes=10))
        self.store.append(_event("agent-2", True, minutes=10))

    def tearDown(self) -> None:
        self.store.dispose()

    def test_orders_by_event_time_then_id(self) -> None:
        events = list(self.store.query_range())
        self.assertEqual([e.event_time for e in events], sorted(e.event_time for e in events))
        self.assertEqual([e.id for e in events], [3, 4, 1, 2])

    def test_descending_reverses_both_keys(self) -> None:
        events = list(self.store.query_range(EventFilter(descending=True)))
        self.assertEqual([e.id for e in events], [2, 1, 4, 3])

    def test_filters_combine(self) -> None:
        by_agent = list(self.store.query_range(EventFilter(agent_name="agent-1")))
        self.assertEqual([e.id for e in by_agent], [3, 1])

        failing = list(self.store.query_range(EventFilter(status_ok=False)))
        self.assertEqual([e.id for e in failing], [3, 2])

        window = EventFilter(start=T0 + timedelta(minutes=10), end=T0 + timedelta(minutes=30))
        self.assertEqual([e.id for e in self.store.query_range(window)], [3, 4, 1])

        both = EventFilter(agent_name="agent-2", status_ok=True)
        self.assertEqual([e.id for e in self.store.query_range(both)], [4])

    def test_naive_bounds_are_treated_as_utc(self) -> None:
        window = EventFilter(start=datetime(2024, 1, 1, 0, 15))
        self.assertEqual([e.id for e in self.store.query_range(window)], [1, 2])

    def test_range_is_lazy_and_restartable(self) -> None:
        events = self.store.query_range(EventFilter(agent_name="agent-2"))
        first = [e.id for e in events]
        self.store.append(_event("agent-2", True, minutes=40))
        second = [e.id for e in events]
        self.assertEqual(first, [4, 2])
        self.assertEqual(second, [4, 2, 5])

    def test_lazy_range_defers_storage_errors(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = EventStore.from_url(f"sqlite:///{Path(tmp, 'no', 'such', 'db.sqlite3')}")
            events = store.query_range()
            with self.assertRaises(StorageUnavailable):
                list(events)
            store.dispose()

    def test_keyset_position_and_limit(self) -> None:
        after = EventFilter(after=(T0 + timedelta(minutes=10), 3), limit=2)
        self.assertEqual([e.id for e in self.store.query_range(after)], [4, 1])

    def test_count_respects_filter(self) -> None:
        self.assertEqual(self.store.count(), 4)
        self.assertEqual(self.store.count(EventFilter(agent_name="agent-1")), 2)

    def test_inverted_range_is_rejected(self) -> None:
        with self.assertRaises(InvalidQuery):
            EventFilter(start=T0 + timedelta(hours=1), end=T0)

    def test_limit_below_one_is_rejected(self) -> None:
        with self.assertRaises(InvalidQuery):
            EventFilter(limit=0)


if __name__ == "__main__":
    unittest.main()
