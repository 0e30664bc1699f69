"""Request bodies accepted by the HTTP API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, StrictBool


class EventIn(BaseModel):
    """One agent report.

    Field presence and emptiness are checked by the event model so that the
    API and in-process submissions reject the same inputs the same way.
    """

    agent_name: Optional[str] = Field(default=None, examples=["edge-router-1"])
    status_ok: Optional[StrictBool] = Field(default=None, examples=[True])
    event_time: Optional[datetime] = Field(
        default=None,
        description="When the status was observed; defaults to receipt time",
    )
    object_data: Optional[Dict[str, Any]] = Field(
        default=None,
        examples=[{"network_id": "dns", "network_address": "8.8.8.8:53"}],
    )

    def to_raw(self) -> Dict[str, Any]:
        return {key: value for key, value in self.model_dump().items() if value is not None}


class EventBatchIn(BaseModel):
    events: List[EventIn] = Field(default_factory=list)


__all__ = ["EventIn", "EventBatchIn"]
