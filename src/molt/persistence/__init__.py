"""Persistence layer — record arena, audit event log and projection storage."""

from molt.persistence.event_log import EventLog, EventRecord, EventKind
from molt.persistence.projection_store import Projection, ProjectionKind, ProjectionStore
from molt.persistence.record_store import RecordStore

__all__ = [
    "EventLog",
    "EventRecord",
    "EventKind",
    "Projection",
    "ProjectionKind",
    "ProjectionStore",
    "RecordStore",
]
