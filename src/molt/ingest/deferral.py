"""Deferral queue — holds records whose references have not resolved yet.

A record referencing a target the indexer has not seen (a resolution
arriving before its appeal, a testimony before the action it speaks
to) is parked here instead of being rejected. It comes back:
- immediately, when the missing target is ingested, or
- on the next tick after its backoff elapses.

Backoff doubles per attempt from the configured base up to the cap.
Once an entry has been waiting longer than the deferral window it is
moved to the dead-letter set, from which an operator may resubmit it.

The original received_at of a parked record is preserved, so authority
is still judged at the time the record first reached the indexer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from molt.errors import InvalidReference
from molt.models.records import InboundRecord, RecordRef, format_timestamp, parse_timestamp
from molt.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeferredRecord:
    """An inbound item waiting for a reference to resolve."""
    item: InboundRecord
    missing: RecordRef
    first_deferred_at: datetime
    next_attempt_at: datetime
    attempts: int
    reason: str = ""


@dataclass(frozen=True)
class DeadLetter:
    """An inbound item whose reference never resolved within the window."""
    item: InboundRecord
    missing: RecordRef
    first_deferred_at: datetime
    dead_lettered_at: datetime
    attempts: int
    reason: str = ""

    @property
    def uri(self) -> str:
        return self.item.ref.uri

    def to_dict(self) -> dict[str, Any]:
        return {
            "uri": self.uri,
            "record_type": self.item.record_type,
            "owner_id": self.item.owner_id,
            "key": self.item.key,
            "content_hash": self.item.content_hash,
            "payload": self.item.payload,
            "created_at": format_timestamp(self.item.created_at),
            "received_at": format_timestamp(self.item.received_at),
            "missing": self.missing.uri,
            "first_deferred_at": format_timestamp(self.first_deferred_at),
            "dead_lettered_at": format_timestamp(self.dead_lettered_at),
            "attempts": self.attempts,
            "reason": self.reason,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> DeadLetter:
        received = data.get("received_at")
        return DeadLetter(
            item=InboundRecord(
                record_type=data["record_type"],
                owner_id=data["owner_id"],
                key=data["key"],
                payload=data["payload"],
                created_at=parse_timestamp(data["created_at"]),
                content_hash=data.get("content_hash"),
                received_at=parse_timestamp(received) if received else None,
            ),
            missing=RecordRef.parse(data["missing"]),
            first_deferred_at=parse_timestamp(data["first_deferred_at"]),
            dead_lettered_at=parse_timestamp(data["dead_lettered_at"]),
            attempts=data["attempts"],
            reason=data.get("reason", ""),
        )


class DeferralQueue:
    """Backoff queue keyed by the deferred record's URI.

    Thread-safety: this class is not thread-safe.
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._base, self._cap, self._window = resolver.deferral_config()
        self._pending: dict[str, DeferredRecord] = {}
        self._dead: dict[str, DeadLetter] = {}

    def backoff(self, attempts: int) -> timedelta:
        """Delay before attempt number `attempts + 1`."""
        delay = self._base * (2 ** max(attempts - 1, 0))
        return min(delay, self._cap)

    def defer(
        self,
        item: InboundRecord,
        error: InvalidReference,
        now: datetime,
    ) -> Union[DeferredRecord, DeadLetter]:
        """Park an item, or dead-letter it if its window has run out."""
        if error.missing is None:
            raise ValueError("Only retryable reference errors can be deferred")
        uri = item.ref.uri
        if item.received_at is None:
            item = replace(item, received_at=now)
        previous = self._pending.pop(uri, None)
        first = previous.first_deferred_at if previous else now
        attempts = (previous.attempts if previous else 0) + 1

        if now - first >= self._window:
            return self._dead_letter(
                DeferredRecord(
                    item=item,
                    missing=error.missing,
                    first_deferred_at=first,
                    next_attempt_at=now,
                    attempts=attempts,
                    reason=str(error),
                ),
                now,
            )

        entry = DeferredRecord(
            item=item,
            missing=error.missing,
            first_deferred_at=first,
            next_attempt_at=now + self.backoff(attempts),
            attempts=attempts,
            reason=str(error),
        )
        self._pending[uri] = entry
        logger.info(
            "Deferred %s waiting on %s (attempt %d, retry at %s)",
            uri, error.missing.uri, attempts, format_timestamp(entry.next_attempt_at),
        )
        return entry

    def release(self, ref: RecordRef) -> list[InboundRecord]:
        """Every item that was waiting on `ref`, oldest first."""
        waiting = sorted(
            (e for e in self._pending.values() if e.missing == ref),
            key=lambda e: (e.item.created_at, e.item.ref.uri),
        )
        return [e.item for e in waiting]

    def due(self, now: datetime) -> list[InboundRecord]:
        """Items whose backoff has elapsed, oldest first.

        Entries stay registered so a failed retry keeps its
        first_deferred_at; the caller forgets them once processed.
        """
        ready = sorted(
            (e for e in self._pending.values() if e.next_attempt_at <= now),
            key=lambda e: (e.item.created_at, e.item.ref.uri),
        )
        return [e.item for e in ready]

    def expire(self, now: datetime) -> list[DeadLetter]:
        """Dead-letter every item that has outlived the deferral window."""
        expired = [
            e for e in self._pending.values()
            if now - e.first_deferred_at >= self._window
        ]
        out = []
        for entry in expired:
            del self._pending[entry.item.ref.uri]
            out.append(self._dead_letter(entry, now))
        return out

    def forget(self, uri: str) -> None:
        """Drop a pending entry once its item was processed."""
        self._pending.pop(uri, None)

    def _dead_letter(self, entry: DeferredRecord, now: datetime) -> DeadLetter:
        dead = DeadLetter(
            item=entry.item,
            missing=entry.missing,
            first_deferred_at=entry.first_deferred_at,
            dead_lettered_at=now,
            attempts=entry.attempts,
            reason=entry.reason,
        )
        self._dead[dead.uri] = dead
        logger.error(
            "Dead-lettered %s after %d attempts: %s never resolved",
            dead.uri, dead.attempts, dead.missing.uri,
        )
        return dead

    # ------------------------------------------------------------------
    # Dead-letter set
    # ------------------------------------------------------------------

    def dead_letters(self) -> list[DeadLetter]:
        return sorted(self._dead.values(), key=lambda d: d.dead_lettered_at)

    def take_dead_letter(self, uri: str) -> Optional[DeadLetter]:
        """Remove a dead letter so it can be resubmitted."""
        return self._dead.pop(uri, None)

    def restore_dead_letters(self, letters: list[DeadLetter]) -> None:
        for letter in letters:
            self._dead[letter.uri] = letter

    def is_pending(self, uri: str) -> bool:
        return uri in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def dead_letter_count(self) -> int:
        return len(self._dead)
