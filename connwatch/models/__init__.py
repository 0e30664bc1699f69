"""Event model and its database mapping.

``connection_event`` holds the in-memory event and its validation rules;
``db_models`` maps it onto the ``connection_events`` table.
"""
from .connection_event import ConnectionEvent, JSONDocument, JSONValue, validate
from .db_models import Base, ConnectionEventRow

__all__ = [
    "ConnectionEvent",
    "JSONDocument",
    "JSONValue",
    "validate",
    "Base",
    "ConnectionEventRow",
]
