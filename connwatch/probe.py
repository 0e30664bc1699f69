"""TCP reachability probe agent that reports into the event store."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from time import monotonic, perf_counter
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

import requests
from requests import RequestException

from connwatch.errors import ConnwatchError, ConstraintViolation, InvalidEvent, StorageUnavailable, Timeout
from connwatch.ingest import IngestionService
from connwatch.metrics import MetricsLogger

logger = logging.getLogger(__name__)

DEFAULT_PORT = 443


@dataclass(slots=True, frozen=True)
class ProbeTarget:
	"""A ``host:port`` pair to check, optionally with a display label."""

	host: str
	port: int
	label: Optional[str] = None

	@property
	def network_id(self) -> str:
		return self.label or self.address

	@property
	def address(self) -> str:
		if ":" in self.host:
			return f"[{self.host}]:{self.port}"
		return f"{self.host}:{self.port}"


@dataclass(slots=True)
class ProbeResult:
	target: ProbeTarget
	open: bool
	checked_at: datetime
	latency_ms: Optional[float] = None
	error: Optional[str] = None

	def to_payload(self, agent_name: str) -> Dict[str, Any]:
		"""Render as an ingestion request body."""
		return {
			"agent_name": agent_name,
			"status_ok": self.open,
			"event_time": self.checked_at.isoformat(),
			"object_data": {
				"network_id": self.target.network_id,
				"network_address": self.target.address,
				"latency_ms": self.latency_ms,
				"error": self.error,
			},
		}


def parse_target(text: str, default_port: int = DEFAULT_PORT) -> ProbeTarget:
	"""Parse ``[label=]host:port`` (or ``[v6]:port``).

	A missing, non-numeric, out-of-range or zero port falls back to
	``default_port`` with a warning rather than rejecting the target.
	"""
	raw = (text or "").strip()
	if not raw:
		raise ValueError("empty probe target")
	label: Optional[str] = None
	if "=" in raw:
		label, _, raw = (part.strip() for part in raw.partition("="))
		label = label or None

	if raw.startswith("["):
		host, sep, rest = raw[1:].partition("]")
		port_text = rest[1:] if rest.startswith(":") else ""
		if not sep:
			raise ValueError(f"unterminated IPv6 address in {text!r}")
	elif raw.count(":") == 1:
		host, _, port_text = raw.partition(":")
	else:
		host, port_text = raw, ""
	host = host.strip()
	if not host:
		raise ValueError(f"missing host in {text!r}")

	port_text = port_text.strip()
	if not port_text:
		logger.warning("No port given for %s, using %d", host, default_port)
		return ProbeTarget(host, default_port, label)
	try:
		port = int(port_text)
	except ValueError:
		logger.warning("Invalid port %r for %s, using %d", port_text, host, default_port)
		return ProbeTarget(host, default_port, label)
	if not 0 < port < 65536:
		logger.warning("Port %d for %s is not usable, using %d", port, host, default_port)
		return ProbeTarget(host, default_port, label)
	return ProbeTarget(host, port, label)


def _utc_now() -> datetime:
	return datetime.now(timezone.utc)


async def probe_port(
	target: ProbeTarget,
	timeout: float = 1.0,
	*,
	clock: Callable[[], datetime] = _utc_now,
) -> ProbeResult:
	"""Try a TCP connect to ``target`` and report whether it succeeded."""
	checked_at = clock()
	start = perf_counter()
	try:
		_, writer = await asyncio.wait_for(asyncio.open_connection(target.host, target.port), timeout=timeout)
	except asyncio.TimeoutError:
		return ProbeResult(target, False, checked_at, error=f"timed out after {timeout}s")
	except (OSError, UnicodeError, ValueError) as exc:
		return ProbeResult(target, False, checked_at, error=str(exc) or type(exc).__name__)
	latency = (perf_counter() - start) * 1000.0
	writer.close()
	with contextlib.suppress(OSError):
		await writer.wait_closed()
	return ProbeResult(target, True, checked_at, latency_ms=latency)


ProbeFunc = Callable[[ProbeTarget, float], Awaitable[ProbeResult]]


class Reporter(Protocol):
	def report(self, payload: Mapping[str, Any]) -> int: ...


class LocalReporter:
	"""Submit straight into an in-process :class:`IngestionService`."""

	def __init__(self, service: IngestionService, *, timeout: Optional[float] = None) -> None:
		self.service = service
		self.timeout = timeout

	def report(self, payload: Mapping[str, Any]) -> int:
		return self.service.submit(payload, timeout=self.timeout)


class HttpReporter:
	"""POST events to a running connwatch API."""

	def __init__(
		self,
		base_url: str,
		*,
		timeout: float = 10.0,
		session: Optional[requests.Session] = None,
	) -> None:
		self.base_url = base_url.rstrip("/")
		self.timeout = timeout
		self._session = session or requests.Session()

	def report(self, payload: Mapping[str, Any]) -> int:
		url = f"{self.base_url}/events"
		try:
			response = self._session.post(url, json=dict(payload), timeout=self.timeout)
		except requests.Timeout as exc:
			raise Timeout(f"POST {url} timed out", timeout=self.timeout) from exc
		except RequestException as exc:
			raise StorageUnavailable(f"POST {url} failed: {exc}") from exc

		body = self._body(response)
		if response.status_code in (200, 201):
			try:
				return int(body["id"])
			except (KeyError, TypeError, ValueError) as exc:
				raise StorageUnavailable(f"POST {url} returned no event id: {response.text[:200]!r}") from exc
		detail = str(body.get("detail") or response.text or response.reason)
		if response.status_code == 422:
			raise InvalidEvent(str(body.get("field") or "event"), detail)
		if response.status_code == 504:
			raise Timeout(detail)
		if response.status_code == 500 and body.get("error") == "constraint_violation":
			raise ConstraintViolation(detail)
		if response.status_code >= 500:
			raise StorageUnavailable(f"{response.status_code}: {detail}")
		raise ConnwatchError(f"unexpected response {response.status_code}: {detail}")

	def close(self) -> None:
		self._session.close()

	@staticmethod
	def _body(response: requests.Response) -> Dict[str, Any]:
		try:
			body = response.json()
		except ValueError:
			return {}
		return body if isinstance(body, dict) else {}


class Prober:
	"""Probe every target each round and report one event per target.

	Reports that fail with :class:`StorageUnavailable` are retried with
	exponential backoff; any other rejection is logged and dropped.
	"""

	def __init__(
		self,
		targets: Sequence[ProbeTarget],
		reporter: Reporter,
		*,
		agent_name: str,
		interval: float = 60.0,
		timeout: float = 1.0,
		base_backoff: float = 2.0,
		max_backoff: float = 60.0,
		report_attempts: int = 5,
		metrics: Optional[MetricsLogger] = None,
		probe_func: Optional[ProbeFunc] = None,
	) -> None:
		if not targets:
			raise ValueError("at least one probe target is required")
		self.targets = list(targets)
		self.reporter = reporter
		self.agent_name = agent_name
		self.interval = max(0.0, interval)
		self.timeout = max(0.01, timeout)
		self.base_backoff = max(0.0, base_backoff)
		self.max_backoff = max(self.base_backoff, max_backoff)
		self.report_attempts = max(1, report_attempts)
		self.metrics = metrics
		self._probe: ProbeFunc = probe_func or probe_port
		self._stop_event: Optional[asyncio.Event] = None

	async def run(self, runtime: Optional[float] = None) -> int:
		"""Loop until stopped or ``runtime`` elapses; return rounds completed."""
		stop_event = asyncio.Event()
		self._stop_event = stop_event
		deadline = monotonic() + runtime if runtime else None
		rounds = 0
		logger.info("Probing %d target(s) as %s", len(self.targets), self.agent_name)
		try:
			while not stop_event.is_set():
				await self.probe_once(stop_event=stop_event, deadline=deadline)
				rounds += 1
				if stop_event.is_set() or (deadline and monotonic() >= deadline):
					break
				await self._sleep_with_stop(self.interval, stop_event, deadline)
				if deadline and monotonic() >= deadline:
					break
		finally:
			stop_event.set()
			logger.info("Probe loop stopped after %d round(s)", rounds)
		return rounds

	def request_stop(self) -> None:
		if self._stop_event:
			self._stop_event.set()

	async def probe_once(
		self,
		*,
		stop_event: Optional[asyncio.Event] = None,
		deadline: Optional[float] = None,
	) -> List[ProbeResult]:
		stop_event = stop_event or asyncio.Event()
		results = await asyncio.gather(*(self._probe(target, self.timeout) for target in self.targets))
		for result in results:
			status = "open" if result.open else "closed"
			logger.debug("%s is %s", result.target.address, status)
			await self._log(
				"probe",
				target=result.target.address,
				status=status,
				latency_ms=result.latency_ms,
				message=result.error,
			)
			await self._report(result, stop_event, deadline)
		return list(results)

	async def _report(
		self,
		result: ProbeResult,
		stop_event: asyncio.Event,
		deadline: Optional[float],
	) -> Optional[int]:
		payload = result.to_payload(self.agent_name)
		backoff = self.base_backoff
		for attempt in range(1, self.report_attempts + 1):
			start = perf_counter()
			try:
				event_id = await asyncio.to_thread(self.reporter.report, payload)
			except StorageUnavailable as exc:
				await self._log(
					"report",
					target=result.target.address,
					status="retry",
					latency_ms=(perf_counter() - start) * 1000.0,
					message=str(exc),
					extra={"attempt": attempt},
				)
				logger.warning("Report for %s failed (attempt %d): %s", result.target.address, attempt, exc)
			except (InvalidEvent, ConstraintViolation) as exc:
				await self._log("report", target=result.target.address, status="rejected", message=str(exc))
				logger.error("Report for %s rejected: %s", result.target.address, exc)
				return None
			except ConnwatchError as exc:
				await self._log("report", target=result.target.address, status="dropped", message=str(exc))
				logger.error("Report for %s failed: %s", result.target.address, exc)
				return None
			else:
				await self._log(
					"report",
					target=result.target.address,
					status="ok",
					latency_ms=(perf_counter() - start) * 1000.0,
					extra={"id": event_id, "attempt": attempt},
				)
				return event_id

			if attempt == self.report_attempts or stop_event.is_set():
				break
			if deadline and monotonic() >= deadline:
				break
			await self._sleep_with_stop(backoff, stop_event, deadline)
			backoff = min(backoff * 2, self.max_backoff)

		await self._log("report", target=result.target.address, status="dropped")
		logger.warning("Dropping report for %s after retries", result.target.address)
		return None

	async def _sleep_with_stop(
		self,
		duration: float,
		stop_event: asyncio.Event,
		deadline: Optional[float],
	) -> None:
		if duration <= 0:
			return
		wait_time = duration
		if deadline:
			wait_time = min(wait_time, max(0.0, deadline - monotonic()))
			if wait_time <= 0:
				return
		try:
			await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
		except asyncio.TimeoutError:
			pass

	async def _log(self, event: str, **fields: Any) -> None:
		if not self.metrics:
			return
		extra = {"agent": self.agent_name, **(fields.pop("extra", None) or {})}
		try:
			await self.metrics.log_async(event, extra=extra, **fields)
		except OSError:  # pragma: no cover - disk failure must not stop probing
			logger.debug("Metrics logging failed for %s", event, exc_info=True)


__all__ = [
	"DEFAULT_PORT",
	"HttpReporter",
	"LocalReporter",
	"ProbeResult",
	"ProbeTarget",
	"Prober",
	"Reporter",
	"parse_target",
	"probe_port",
]
