from __future__ import annotations
import asyncio, logging, time
from datetime import datetime
from typing import Literal, Optional, Tuple
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from connwatch.config import Settings
from connwatch.errors import ConstraintViolation, InvalidEvent, InvalidQuery, StorageUnavailable, Timeout
from connwatch.ingest import IngestionService
from connwatch.query import QueryLayer
from connwatch.schemas import EventBatchIn, EventIn
from connwatch.storage import EventFilter, EventStore

logger = logging.getLogger(__name__)

app = FastAPI(title="connwatch API", version="0.1.0")

_settings: Optional[Settings] = None
_store: Optional[EventStore] = None
_ingestion: Optional[IngestionService] = None
_query: Optional[QueryLayer] = None


def configure(store: Optional[EventStore] = None, settings: Optional[Settings] = None) -> None:
    """Bind the API to a store; builds one from settings when none is given."""
    global _settings, _store, _ingestion, _query
    _settings = settings or Settings.from_env()
    if store is None:
        store = EventStore.from_url(_settings.database_url, default_timeout=_settings.storage_timeout)
        store.create_schema()
    _store = store
    _ingestion = IngestionService(store)
    _query = QueryLayer(
        store,
        default_page_size=_settings.default_page_size,
        max_page_size=_settings.max_page_size,
    )
    logger.info("API bound to %s", store.engine.url.render_as_string(hide_password=True))


def reset() -> None:
    global _settings, _store, _ingestion, _query
    _settings = _store = _ingestion = _query = None


async def _services() -> Tuple[IngestionService, QueryLayer]:
    if _ingestion is None or _query is None:
        await asyncio.to_thread(configure)
    if _ingestion is None or _query is None:
        raise StorageUnavailable("event store is not configured")
    return _ingestion, _query


@app.exception_handler(InvalidEvent)
async def _invalid_event(request: Request, exc: InvalidEvent):
    return JSONResponse(
        status_code=422,
        content={"error": "invalid_event", "field": exc.field, "detail": exc.message},
    )


@app.exception_handler(InvalidQuery)
async def _invalid_query(request: Request, exc: InvalidQuery):
    return JSONResponse(status_code=400, content={"error": "invalid_query", "detail": str(exc)})


@app.exception_handler(Timeout)
async def _timeout(request: Request, exc: Timeout):
    return JSONResponse(status_code=504, content={"error": "timeout", "detail": str(exc)})


@app.exception_handler(StorageUnavailable)
async def _storage_unavailable(request: Request, exc: StorageUnavailable):
    return JSONResponse(status_code=503, content={"error": "storage_unavailable", "detail": str(exc)})


@app.exception_handler(ConstraintViolation)
async def _constraint_violation(request: Request, exc: ConstraintViolation):
    logger.error("constraint violation on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "constraint_violation", "detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def _request_invalid(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ())]
    detail = first.get("msg", "invalid request")
    if location and location[0] == "body":
        field = ".".join(location[1:]) or "event"
        return JSONResponse(
            status_code=422,
            content={"error": "invalid_event", "field": field, "detail": detail},
        )
    return JSONResponse(
        status_code=400,
        content={"error": "invalid_query", "detail": f"{'.'.join(location[1:])}: {detail}"},
    )


@app.get("/health")
async def health():
    return {"status": "ok", "time": time.time()}


@app.post("/events", status_code=201)
async def submit_event(event: EventIn):
    ingestion, _ = await _services()
    event_id = await asyncio.to_thread(ingestion.submit, event.to_raw())
    return {"id": event_id}


@app.post("/events/batch", status_code=201)
async def submit_batch(batch: EventBatchIn):
    ingestion, _ = await _services()
    ids = await asyncio.to_thread(ingestion.submit_many, [item.to_raw() for item in batch.events])
    return {"ids": ids}


@app.get("/events")
async def list_events(
    agent_name: Optional[str] = Query(None, description="Only events from this agent"),
    status_ok: Optional[bool] = Query(None, description="Only healthy (true) or failing (false) events"),
    start: Optional[datetime] = Query(None, alias="from", description="Inclusive lower bound on event_time"),
    end: Optional[datetime] = Query(None, alias="to", description="Exclusive upper bound on event_time"),
    cursor: Optional[str] = Query(None, description="next_cursor from a previous page"),
    limit: Optional[int] = Query(None, ge=1, description="Page size, capped by the server"),
    order: Literal["asc", "desc"] = Query("asc", description="Sort by event_time"),
):
    _, query = await _services()
    event_filter = EventFilter(
        agent_name=agent_name,
        status_ok=status_ok,
        start=start,
        end=end,
        descending=order == "desc",
    )
    page = await asyncio.to_thread(query.fetch, event_filter, cursor, limit)
    return page.to_dict()


@app.get("/events/{event_id}")
async def get_event(event_id: int):
    _, query = await _services()
    event = await asyncio.to_thread(query.get, event_id)
    if event is None:
        return JSONResponse(status_code=404, content={"error": "not_found", "detail": f"no event {event_id}"})
    return event.to_dict()
