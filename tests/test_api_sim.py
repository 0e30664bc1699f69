"""Integration-style tests for the FastAPI layer over an in-memory store."""
from __future__ import annotations

import asyncio
import base64
import json
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

import connwatch.api as api_module
from connwatch.config import Settings
from connwatch.errors import ConstraintViolation, StorageUnavailable, Timeout
from connwatch.storage import EventStore


class ApiSimulationTest(unittest.TestCase):
    def setUp(self) -> None:
        self.store = EventStore.from_url("sqlite://")
        self.store.create_schema()
        settings = Settings(database_url="sqlite://", default_page_size=2, max_page_size=10, agent_name="test")
        api_module.configure(self.store, settings=settings)
        self.client = TestClient(api_module.app)

    def tearDown(self) -> None:
        self.client.close()
        api_module.reset()
        self.store.dispose()

    def _post(self, **payload):
        return self.client.post("/events", json=payload)

    def test_health_endpoint_returns_ok(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "ok")
        self.assertIn("time", payload)

    def test_submit_and_fetch_scenario(self) -> None:
        response = self._post(agent_name="agent-1", status_ok=True)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json(), {"id": 1})

        rejected = self._post(agent_name="", status_ok=False)
        self.assertEqual(rejected.status_code, 422)
        self.assertEqual(rejected.json()["error"], "invalid_event")
        self.assertEqual(rejected.json()["field"], "agent_name")

        listing = self.client.get("/events", params={"agent_name": "agent-1"})
        self.assertEqual(listing.status_code, 200)
        body = listing.json()
        self.assertEqual([event["id"] for event in body["events"]], [1])
        self.assertIsNone(body["next_cursor"])
        self.assertEqual(self.store.count(), 1)

    def test_round_trip_preserves_fields(self) -> None:
        data = {"network_id": "dns", "network_address": "8.8.8.8:53", "latency_ms": 12.5}
        event_id = self._post(
            agent_name="probe-a",
            status_ok=False,
            event_time="2024-01-01T10:00:00Z",
            object_data=data,
        ).json()["id"]

        response = self.client.get(f"/events/{event_id}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {
                "id": event_id,
                "event_time": "2024-01-01T10:00:00+00:00",
                "agent_name": "probe-a",
                "status_ok": False,
                "object_data": data,
            },
        )

    def test_missing_event_is_404(self) -> None:
        response = self.client.get("/events/99")
        self.assertEqual(response.status_code, 404)

    def test_schema_level_rejections_name_the_field(self) -> None:
        cases = [
            ({"agent_name": "a", "status_ok": "yes"}, "status_ok"),
            ({"agent_name": "a"}, "status_ok"),
            ({"agent_name": "a", "status_ok": True, "event_time": "later"}, "event_time"),
            ({"agent_name": "a", "status_ok": True, "object_data": [1, 2]}, "object_data"),
        ]
        for payload, field in cases:
            with self.subTest(field=field, payload=payload):
                response = self.client.post("/events", json=payload)
                self.assertEqual(response.status_code, 422)
                self.assertEqual(response.json()["error"], "invalid_event")
                self.assertEqual(response.json()["field"], field)
        self.assertEqual(self.store.count(), 0)

    def test_pagination_through_cursors(self) -> None:
        for minute in (5, 1, 4, 2, 3):
            self._post(agent_name="a", status_ok=True, event_time=f"2024-01-01T00:0{minute}:00Z")

        times = []
        cursor = None
        while True:
            params = {"limit": 2}
            if cursor:
                params["cursor"] = cursor
            body = self.client.get("/events", params=params).json()
            times.extend(event["event_time"] for event in body["events"])
            cursor = body["next_cursor"]
            if cursor is None:
                break
        self.assertEqual(times, sorted(times))
        self.assertEqual(len(times), 5)

    def test_descending_order_and_filters(self) -> None:
        self._post(agent_name="a", status_ok=True, event_time="2024-01-01T00:00:00Z")
        self._post(agent_name="a", status_ok=False, event_time="2024-01-01T01:00:00Z")
        self._post(agent_name="b", status_ok=False, event_time="2024-01-01T02:00:00Z")

        body = self.client.get("/events", params={"order": "desc", "limit": 10}).json()
        self.assertEqual([event["id"] for event in body["events"]], [3, 2, 1])

        body = self.client.get(
            "/events",
            params={"status_ok": "false", "from": "2024-01-01T00:30:00Z", "to": "2024-01-01T02:00:00Z"},
        ).json()
        self.assertEqual([event["id"] for event in body["events"]], [2])

    def test_bad_queries_are_400(self) -> None:
        for params in (
            {"limit": 0},
            {"cursor": "garbage"},
            {"cursor": base64.urlsafe_b64encode(json.dumps({"t": "2024-01-01T00:00:00+00:00", "i": 10**30, "d": False}).encode()).decode()},
            {"from": "2024-01-02T00:00:00Z", "to": "2024-01-01T00:00:00Z"},
            {"order": "sideways"},
        ):
            with self.subTest(params=params):
                response = self.client.get("/events", params=params)
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["error"], "invalid_query")

    def test_batch_endpoint(self) -> None:
        response = self.client.post(
            "/events/batch",
            json={"events": [{"agent_name": "a", "status_ok": True}, {"agent_name": "b", "status_ok": False}]},
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json(), {"ids": [1, 2]})

        rejected = self.client.post(
            "/events/batch",
            json={"events": [{"agent_name": "c", "status_ok": True}, {"agent_name": " ", "status_ok": True}]},
        )
        self.assertEqual(rejected.status_code, 422)
        self.assertEqual(rejected.json()["field"], "events[1].agent_name")
        self.assertEqual(self.store.count(), 2)

    def test_storage_failures_map_to_http_statuses(self) -> None:
        cases = [
            (Timeout("append exceeded 1.000s", timeout=1.0), 504, "timeout"),
            (StorageUnavailable("connection refused"), 503, "storage_unavailable"),
            (ConstraintViolation("NOT NULL constraint failed"), 500, "constraint_violation"),
        ]
        for exc, status, error in cases:
            with self.subTest(error=error):
                with patch.object(self.store, "append", side_effect=exc):
                    response = self._post(agent_name="a", status_ok=True)
                self.assertEqual(response.status_code, status)
                self.assertEqual(response.json()["error"], error)


class LazyConfigurationTest(unittest.TestCase):
    def setUp(self) -> None:
        api_module.reset()

    def tearDown(self) -> None:
        if api_module._store is not None:
            api_module._store.dispose()
        api_module.reset()

    def test_first_request_configures_in_a_worker_thread(self) -> None:
        calls = []
        real_configure = api_module.configure

        def recording_configure(*args, **kwargs):
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                calls.append("worker")
            else:
                calls.append("event-loop")
            real_configure(*args, **kwargs)

        settings = Settings(database_url="sqlite://", agent_name="test")
        with patch.object(api_module, "configure", side_effect=recording_configure), patch.object(
            Settings, "from_env", return_value=settings
        ):
            with TestClient(api_module.app) as client:
                first = client.get("/events")
                second = client.post("/events", json={"agent_name": "a", "status_ok": True})

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json(), {"events": [], "next_cursor": None})
        self.assertEqual(second.status_code, 201)
        self.assertEqual(calls, ["worker"])

    def test_unbound_services_are_storage_unavailable(self) -> None:
        with patch.object(api_module, "configure"):
            with TestClient(api_module.app) as client:
                response = client.get("/events")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error"], "storage_unavailable")


if __name__ == "__main__":
    unittest.main()
