"""CSV log of probe outcomes kept locally by the reporting agent."""
from __future__ import annotations

import asyncio
import csv
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from connwatch.models.connection_event import ensure_utc

COLUMNS = ("timestamp", "event", "target", "status", "latency_ms", "message", "extra")


class MetricsLogger:
    """One flushed CSV row per probe attempt or report attempt.

    ``event`` is ``probe`` or ``report``; ``status`` is ``open``/``closed``
    for probes and ``ok``/``retry``/``rejected``/``dropped`` for reports.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        static_extra: Mapping[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self._static_extra: Dict[str, Any] = dict(static_extra or {})
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists() or self.path.stat().st_size == 0:
            self._append(dict(zip(COLUMNS, COLUMNS)))

    def log(
        self,
        event: str,
        *,
        target: Optional[str] = None,
        status: Optional[str] = None,
        latency_ms: Optional[float] = None,
        message: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._append(
            {
                "timestamp": ensure_utc(self._clock()).isoformat(timespec="milliseconds"),
                "event": event,
                "target": target or "",
                "status": status or "",
                "latency_ms": "" if latency_ms is None else round(latency_ms, 3),
                "message": message or "",
                "extra": self._encode_extra(extra),
            }
        )

    async def log_async(self, event: str, **fields: Any) -> None:
        await asyncio.to_thread(self.log, event, **fields)

    def _encode_extra(self, extra: Optional[Mapping[str, Any]]) -> str:
        payload = {**self._static_extra, **(extra or {})}
        if not payload:
            return ""
        return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)

    def _append(self, row: Mapping[str, Any]) -> None:
        with self._lock, self.path.open("a", newline="", encoding="utf-8") as handle:
            csv.DictWriter(handle, fieldnames=COLUMNS).writerow(row)
            handle.flush()


__all__ = ["COLUMNS", "MetricsLogger"]
