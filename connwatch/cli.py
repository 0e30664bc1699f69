"""connwatch command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table
import uvicorn

from connwatch.config import Settings
from connwatch.errors import ConnwatchError
from connwatch.ingest import IngestionService
from connwatch.metrics import MetricsLogger
from connwatch.models.connection_event import ConnectionEvent, parse_timestamp
from connwatch.probe import HttpReporter, LocalReporter, Prober, Reporter, parse_target
from connwatch.query import QueryLayer
from connwatch.storage import EventFilter, EventStore

logger = logging.getLogger("connwatch.cli")


def _parse_data(raw: Optional[str]) -> Optional[Dict[str, Any]]:
	if not raw:
		return None
	try:
		value = json.loads(raw)
	except json.JSONDecodeError as exc:
		raise ValueError(f"invalid --data JSON: {exc}") from exc
	if not isinstance(value, dict):
		raise ValueError("--data must be a JSON object")
	return value


def _parse_time(raw: Optional[str], flag: str):
	if raw is None:
		return None
	try:
		return parse_timestamp(raw, field=flag)
	except ConnwatchError as exc:
		raise ValueError(str(exc)) from exc


def _status_flag(args: argparse.Namespace) -> Optional[bool]:
	if args.ok:
		return True
	if args.fail:
		return False
	return None


def _open_store(settings: Settings) -> EventStore:
	store = EventStore.from_url(settings.database_url, default_timeout=settings.storage_timeout)
	store.create_schema()
	return store


def _render_events(events: List[ConnectionEvent], console: Console) -> None:
	table = Table(title="Connection Events", show_lines=False)
	for column in ("id", "event_time", "agent", "ok", "data"):
		table.add_column(column.upper())
	for event in events:
		table.add_row(
			str(event.id),
			event.event_time.isoformat(timespec="seconds"),
			event.agent_name,
			"[green]yes[/green]" if event.status_ok else "[red]no[/red]",
			json.dumps(event.object_data, sort_keys=True) if event.object_data else "",
		)
	console.print(table)


async def _cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
	os.environ["CONNWATCH_DATABASE_URL"] = settings.database_url
	config = uvicorn.Config(
		"connwatch.api:app",
		host=args.host,
		port=args.port,
		log_level=settings.log_level.lower(),
	)
	await uvicorn.Server(config).serve()
	return 0


async def _cmd_init_db(args: argparse.Namespace, settings: Settings) -> int:
	store = _open_store(settings)
	store.dispose()
	sys.stdout.write(f"schema ready at {settings.database_url}\n")
	return 0


async def _cmd_submit(args: argparse.Namespace, settings: Settings) -> int:
	raw: Dict[str, Any] = {"agent_name": args.agent, "status_ok": _status_flag(args)}
	when = _parse_time(args.time, "event_time")
	if when is not None:
		raw["event_time"] = when
	data = _parse_data(args.data)
	if data is not None:
		raw["object_data"] = data
	store = _open_store(settings)
	try:
		event_id = IngestionService(store).submit(raw)
	finally:
		store.dispose()
	sys.stdout.write(json.dumps({"id": event_id}) + "\n")
	return 0


async def _cmd_query(args: argparse.Namespace, settings: Settings) -> int:
	event_filter = EventFilter(
		agent_name=args.agent,
		status_ok=_status_flag(args),
		start=_parse_time(args.start, "from"),
		end=_parse_time(args.end, "to"),
		descending=args.desc,
	)
	store = _open_store(settings)
	query = QueryLayer(
		store,
		default_page_size=settings.default_page_size,
		max_page_size=settings.max_page_size,
	)
	try:
		next_cursor = None
		if args.all:
			events = list(query.iter_all(event_filter, page_size=args.limit))
		else:
			page = query.fetch(event_filter, cursor=args.cursor, limit=args.limit)
			events, next_cursor = page.events, page.next_cursor
	finally:
		store.dispose()

	if args.json:
		json.dump(
			{"events": [event.to_dict() for event in events], "next_cursor": next_cursor},
			sys.stdout,
			indent=2,
		)
		sys.stdout.write("\n")
		return 0
	console = Console()
	_render_events(events, console)
	if next_cursor:
		console.print(f"next cursor: {next_cursor}")
	return 0


async def _cmd_probe(args: argparse.Namespace, settings: Settings) -> int:
	targets = [parse_target(item, default_port=args.default_port) for item in args.targets]
	store: Optional[EventStore] = None
	reporter: Reporter
	if args.api or args.remote:
		reporter = HttpReporter(args.api or settings.api_base, timeout=settings.storage_timeout or 10.0)
	else:
		store = _open_store(settings)
		reporter = LocalReporter(IngestionService(store))

	metrics = MetricsLogger(args.log, static_extra={"agent": args.agent or settings.agent_name}) if args.log else None
	prober = Prober(
		targets,
		reporter,
		agent_name=args.agent or settings.agent_name,
		interval=args.interval,
		timeout=args.timeout,
		base_backoff=args.base_backoff,
		max_backoff=args.max_backoff,
		metrics=metrics,
	)

	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, prober.request_stop)

	try:
		await prober.run(runtime=args.runtime)
	finally:
		prober.request_stop()
		if isinstance(reporter, HttpReporter):
			reporter.close()
		if store is not None:
			store.dispose()
	return 0


def _add_status_flags(parser: argparse.ArgumentParser, required: bool) -> None:
	group = parser.add_mutually_exclusive_group(required=required)
	group.add_argument("--ok", action="store_true", help="Healthy / reachable")
	group.add_argument("--fail", action="store_true", help="Unhealthy / unreachable")


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="connwatch connection-status event store")
	parser.add_argument("--database", help="SQLAlchemy database URL (overrides CONNWATCH_DATABASE_URL)")
	parser.add_argument("--log-level", help="Logging level (overrides CONNWATCH_LOG_LEVEL)")
	sub = parser.add_subparsers(dest="command", required=True)

	serve = sub.add_parser("serve", help="Run the HTTP API")
	serve.add_argument("--host", default="127.0.0.1")
	serve.add_argument("--port", type=int, default=8000)
	serve.set_defaults(handler=_cmd_serve)

	init_db = sub.add_parser("init-db", help="Create the event table")
	init_db.set_defaults(handler=_cmd_init_db)

	submit = sub.add_parser("submit", help="Record one event")
	submit.add_argument("agent", help="Reporting agent name")
	_add_status_flags(submit, required=True)
	submit.add_argument("--time", help="ISO-8601 event time (default: now)")
	submit.add_argument("--data", help="JSON object attached as object_data")
	submit.set_defaults(handler=_cmd_submit)

	query = sub.add_parser("query", help="List stored events")
	query.add_argument("--agent", help="Filter by agent name")
	_add_status_flags(query, required=False)
	query.add_argument("--from", dest="start", help="Inclusive lower bound (ISO-8601)")
	query.add_argument("--to", dest="end", help="Exclusive upper bound (ISO-8601)")
	query.add_argument("--limit", type=int, help="Page size")
	query.add_argument("--cursor", help="Cursor from a previous page")
	query.add_argument("--desc", action="store_true", help="Newest first")
	query.add_argument("--all", action="store_true", help="Follow cursors to the end")
	query.add_argument("--json", action="store_true", help="Output JSON")
	query.set_defaults(handler=_cmd_query)

	probe = sub.add_parser("probe", help="Probe TCP targets and report their reachability")
	probe.add_argument("targets", nargs="+", help="[label=]host:port to probe")
	probe.add_argument("--agent", help="Agent name (default: CONNWATCH_AGENT_NAME or host name)")
	probe.add_argument("--interval", type=float, default=60.0, help="Seconds between rounds")
	probe.add_argument("--timeout", type=float, default=1.0, help="Connect timeout seconds")
	probe.add_argument("--default-port", type=int, default=443, help="Port used when a target has none")
	probe.add_argument("--runtime", type=float, help="Optional run duration seconds")
	probe.add_argument("--api", help="Report to this API base URL instead of the database")
	probe.add_argument("--remote", action="store_true", help="Report to CONNWATCH_API_BASE instead of the database")
	probe.add_argument("--log", help="Path to a probe metrics CSV")
	probe.add_argument("--base-backoff", type=float, default=2.0, help="Initial report retry backoff")
	probe.add_argument("--max-backoff", type=float, default=60.0, help="Maximum report retry backoff")
	probe.set_defaults(handler=_cmd_probe)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	try:
		settings = Settings.from_env().override(database_url=args.database, log_level=args.log_level)
	except ValueError as exc:
		parser.error(str(exc))
	logging.basicConfig(
		level=getattr(logging, settings.log_level.upper(), logging.INFO),
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	try:
		return asyncio.run(args.handler(args, settings))
	except ValueError as exc:
		parser.error(str(exc))
	except ConnwatchError as exc:
		logger.debug("command failed", exc_info=True)
		sys.stderr.write(f"error: {exc}\n")
		return 1


if __name__ == "__main__":
	sys.exit(main())
