"""Record store — arena of indexed records keyed by reference.

Stands in for the external storage collaborator: insert, point lookup
and relationship-indexed lookup ("every record whose reference field
equals X"). Relationships are resolved through a reverse index, never
through pointers embedded in records.

Results of relationship lookups are always ordered by (created_at, uri)
so every derivation sees referencing records in causal order no matter
the order they were ingested in.

Thread-safety: this class is not thread-safe. The caller must
synchronise access if used from multiple threads.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from molt.models.records import (
    Appeal,
    AppealResolution,
    Collection,
    ModerationAction,
    Post,
    PublishedStanding,
    Record,
    RecordRef,
    Submolt,
    Testimony,
    Vote,
    WindowClosure,
)


def outgoing_refs(record: Record) -> list[RecordRef]:
    """Every reference a record makes to another record."""
    if isinstance(record, ModerationAction):
        refs = [record.subject_post, record.appeals_to, record.reverses]
    elif isinstance(record, Appeal):
        refs = [record.subject]
    elif isinstance(record, AppealResolution):
        refs = [record.appeal, record.mod_action]
    elif isinstance(record, Testimony):
        refs = [record.subject_ref]
    elif isinstance(record, WindowClosure):
        refs = [record.subject]
    elif isinstance(record, Post):
        refs = [record.reply_root, record.reply_parent]
    elif isinstance(record, Vote):
        refs = [record.subject]
    elif isinstance(record, (Submolt, PublishedStanding)):
        refs = []
    else:
        raise TypeError(f"Unhandled record type: {type(record).__name__}")
    return [r for r in refs if r is not None]


def _order_key(record: Record) -> tuple[datetime, str]:
    return (record.created_at, record.ref.uri)


class RecordStore:
    """In-memory record arena with a reverse reference index."""

    def __init__(self) -> None:
        self._records: dict[RecordRef, Record] = {}
        self._received: dict[RecordRef, datetime] = {}
        self._referrers: dict[RecordRef, set[RecordRef]] = {}
        self._actor_testimony: dict[str, set[RecordRef]] = {}
        self._actor_actions: dict[str, set[RecordRef]] = {}

    def put(self, record: Record, received_at: datetime) -> None:
        """Index a record. Raises ValueError if the reference is taken."""
        if record.ref in self._records:
            raise ValueError(f"Record already indexed: {record.ref.uri}")
        self._records[record.ref] = record
        self._received[record.ref] = received_at
        for target in outgoing_refs(record):
            self._referrers.setdefault(target, set()).add(record.ref)
        if isinstance(record, Testimony) and record.subject_actor is not None:
            self._actor_testimony.setdefault(record.subject_actor, set()).add(record.ref)
        if isinstance(record, ModerationAction):
            self._actor_actions.setdefault(record.affected_actor_id, set()).add(record.ref)

    def remove(self, ref: RecordRef) -> Optional[Record]:
        """Drop a record from prospective lookups."""
        record = self._records.pop(ref, None)
        if record is None:
            return None
        self._received.pop(ref, None)
        for target in outgoing_refs(record):
            self._referrers.get(target, set()).discard(ref)
        if isinstance(record, Testimony) and record.subject_actor is not None:
            self._actor_testimony.get(record.subject_actor, set()).discard(ref)
        if isinstance(record, ModerationAction):
            self._actor_actions.get(record.affected_actor_id, set()).discard(ref)
        return record

    def get(self, ref: RecordRef) -> Optional[Record]:
        return self._records.get(ref)

    def contains(self, ref: RecordRef) -> bool:
        return ref in self._records

    def received_at(self, ref: RecordRef) -> Optional[datetime]:
        return self._received.get(ref)

    def referencing(
        self,
        ref: RecordRef,
        collection: Collection | None = None,
    ) -> list[Record]:
        """Records that reference `ref`, optionally limited to one collection."""
        found = [self._records[r] for r in self._referrers.get(ref, ())]
        if collection is not None:
            found = [rec for rec in found if rec.ref.collection == collection.value]
        return sorted(found, key=_order_key)

    def by_collection(self, collection: Collection) -> list[Record]:
        found = [
            rec for ref, rec in self._records.items()
            if ref.collection == collection.value
        ]
        return sorted(found, key=_order_key)

    def testimonies_about_actor(
        self,
        actor_id: str,
        context_id: str | None = None,
    ) -> list[Testimony]:
        """Standing testimony about an actor, optionally scoped to a context."""
        found = [self._records[r] for r in self._actor_testimony.get(actor_id, ())]
        if context_id is not None:
            found = [t for t in found if t.context_id == context_id]
        return sorted(found, key=_order_key)  # type: ignore[arg-type]

    def actions_about_actor(self, actor_id: str) -> list[ModerationAction]:
        found = [self._records[r] for r in self._actor_actions.get(actor_id, ())]
        return sorted(found, key=_order_key)  # type: ignore[arg-type]

    @property
    def count(self) -> int:
        return len(self._records)
