"""Testimony window models.

A testimony window is the bounded interval during which testimony
toward a pending decision is solicited. Membership is decided by the
testimony's logical creation time, never by when the indexer saw it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from molt.models.records import RecordRef, Testimony, format_timestamp


class WindowStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class WindowOutcome(str, enum.Enum):
    """What the decision that opened the window may do once it closes.

    PROCEED: the triggering decision takes effect.
    UPHOLD_ORIGINAL: a hard reversal gathered no testimony; the original
    action stands.
    """
    PENDING = "pending"
    PROCEED = "proceed"
    UPHOLD_ORIGINAL = "uphold_original"


@dataclass(frozen=True)
class WindowTestimony:
    """A testimony referencing a window's subject, with membership flags.

    late_arrival: created before close but indexed after it. Still in-window.
    post_window: created after close. Kept, excluded from the default
    evidence set.
    """
    testimony: Testimony
    late_arrival: bool = False
    post_window: bool = False
    eligible_witness: bool = False

    @property
    def in_window(self) -> bool:
        return not self.post_window


@dataclass(frozen=True)
class TestimonyWindow:
    """Derived view of a testimony window.

    requires_testimony is True when any hard reversal opened or joined
    the window; an empty window then defaults to upholding the original
    action.
    """
    subject_ref: RecordRef
    trigger_ref: RecordRef
    context_id: str
    opens_at: datetime
    closes_at: datetime
    status: WindowStatus
    requires_testimony: bool
    eligible_witnesses: tuple[str, ...] = ()
    testimonies: tuple[WindowTestimony, ...] = ()
    closed_early_by: Optional[str] = None
    closed_at: Optional[datetime] = None

    @property
    def testimonies_received(self) -> list[WindowTestimony]:
        return [t for t in self.testimonies if t.in_window]

    @property
    def post_window_testimonies(self) -> list[WindowTestimony]:
        return [t for t in self.testimonies if t.post_window]

    @property
    def outcome(self) -> WindowOutcome:
        if self.status == WindowStatus.OPEN:
            return WindowOutcome.PENDING
        if self.requires_testimony and not self.testimonies_received:
            return WindowOutcome.UPHOLD_ORIGINAL
        return WindowOutcome.PROCEED

    @property
    def version(self) -> datetime:
        stamps = [self.opens_at] + [t.testimony.created_at for t in self.testimonies]
        if self.closed_early_by is not None and self.closed_at is not None:
            stamps.append(self.closed_at)
        return max(stamps)

    def to_dict(self, include_post_window: bool = False) -> dict[str, Any]:
        entries = self.testimonies if include_post_window else self.testimonies_received
        return {
            "subject": self.subject_ref.uri,
            "trigger": self.trigger_ref.uri,
            "context": self.context_id,
            "opens_at": format_timestamp(self.opens_at),
            "closes_at": format_timestamp(self.closes_at),
            "closed_at": format_timestamp(self.closed_at),
            "status": self.status.value,
            "outcome": self.outcome.value,
            "closed_early_by": self.closed_early_by,
            "eligible_witnesses": list(self.eligible_witnesses),
            "testimonies_received": [
                {
                    "uri": w.testimony.ref.uri,
                    "witness": None if w.testimony.anonymous else w.testimony.witness_id,
                    "category": w.testimony.category.value,
                    "late_arrival": w.late_arrival,
                    "post_window": w.post_window,
                    "eligible_witness": w.eligible_witness,
                    "created_at": format_timestamp(w.testimony.created_at),
                }
                for w in entries
            ],
            "post_window_count": len(self.post_window_testimonies),
            "version": format_timestamp(self.version),
        }
