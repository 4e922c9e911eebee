"""Cross-lane propagator — moves effects between the moderation and standing lanes.

Moderation → testimony:
    an accepted trigger (escalation, hard reversal) opens a testimony
    window on its subject. The window itself is derived; the propagator
    only announces its opening and, on a later tick, its closing.

Testimony → standing:
    an accepted or deleted testimony about an actor recomputes that
    actor's standing immediately. The witness's own standing is queued
    and recomputed on the next tick, so ingestion never waits on it.

Every announced transition is handed to an event sink (the service's
audit log). Nothing here blocks: all "waiting for testimony" is a
scheduled re-evaluation driven by tick(now).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from molt.models.records import (
    ModerationAction,
    Record,
    RecordRef,
    Testimony,
    WindowClosure,
    format_timestamp,
)
from molt.models.standing import StandingState, StandingTier
from molt.models.window import TestimonyWindow, WindowStatus
from molt.persistence.event_log import EventKind
from molt.propagation.windows import TestimonyWindowEngine

logger = logging.getLogger(__name__)

EventSink = Callable[[EventKind, str, dict[str, Any], datetime], Any]
StandingFn = Callable[[str, Optional[str], datetime], StandingState]


class CrossLanePropagator:
    """Announces window transitions and drives standing recomputation.

    Thread-safety: this class is not thread-safe.
    """

    def __init__(
        self,
        windows: TestimonyWindowEngine,
        standing_fn: StandingFn,
        event_sink: EventSink,
    ) -> None:
        self._windows = windows
        self._standing_fn = standing_fn
        self._emit = event_sink
        # Keyed by the trigger that opened the window; a subject may see several.
        self._open_windows: dict[RecordRef, RecordRef] = {}
        self._closed_windows: set[RecordRef] = set()
        self._recompute_queue: set[tuple[str, Optional[str]]] = set()
        self._last_tiers: dict[tuple[str, Optional[str]], StandingTier] = {}

    # ------------------------------------------------------------------
    # On-accept hooks
    # ------------------------------------------------------------------

    def on_record_accepted(self, record: Record, now: datetime) -> None:
        if isinstance(record, ModerationAction):
            self._maybe_open_window(record, now)
        elif isinstance(record, Testimony):
            self._on_testimony(record, now)
        elif isinstance(record, WindowClosure):
            self._close_due_windows(now)

    def on_testimony_deleted(self, testimony: Testimony, now: datetime) -> None:
        self._on_testimony(testimony, now)

    def _maybe_open_window(self, action: ModerationAction, now: datetime) -> None:
        if action.ref in self._open_windows or action.ref in self._closed_windows:
            return
        subject = self._windows.subject_for(action.ref)
        if subject is None:
            return
        window = self._windows.window_containing(subject, action, now)
        if window is None or window.trigger_ref != action.ref:
            return
        self._open_windows[action.ref] = subject
        self._emit(EventKind.WINDOW_OPENED, action.operator_id, {
            "uri": subject.uri,
            "trigger": action.ref.uri,
            "opens_at": format_timestamp(window.opens_at),
            "closes_at": format_timestamp(window.closes_at),
            "requires_testimony": window.requires_testimony,
        }, now)
        logger.info(
            "Testimony window opened on %s until %s",
            subject.uri, format_timestamp(window.closes_at),
        )
        if window.status == WindowStatus.CLOSED:
            self._announce_close(window, now)

    def _on_testimony(self, testimony: Testimony, now: datetime) -> None:
        if testimony.subject_actor is not None:
            self.recompute(testimony.subject_actor, testimony.context_id, now)
            if testimony.context_id is not None:
                self.recompute(testimony.subject_actor, None, now)
        self._recompute_queue.add((testimony.witness_id, None))

    # ------------------------------------------------------------------
    # Scheduled re-evaluation
    # ------------------------------------------------------------------

    def tick(self, now: datetime) -> dict[str, int]:
        """Close due windows and drain queued standing recomputations."""
        closed = self._close_due_windows(now)
        queued = sorted(self._recompute_queue, key=lambda k: (k[0], k[1] or ""))
        self._recompute_queue.clear()
        changed = 0
        for subject_id, context_id in queued:
            if self.recompute(subject_id, context_id, now):
                changed += 1
        return {
            "windows_closed": closed,
            "standing_recomputed": len(queued),
            "tier_changes": changed,
        }

    def recompute(self, subject_id: str, context_id: Optional[str], now: datetime) -> bool:
        """Recompute standing; emit an event if the tier moved."""
        state = self._standing_fn(subject_id, context_id, now)
        key = (subject_id, context_id)
        previous = self._last_tiers.get(key, StandingTier.UNKNOWN)
        self._last_tiers[key] = state.tier
        if state.tier == previous:
            return False
        self._emit(EventKind.STANDING_TIER_CHANGED, subject_id, {
            "subject_id": subject_id,
            "context_id": context_id,
            "from": previous.value,
            "to": state.tier.value,
            "phi": state.phi,
            "confidence": state.confidence,
            "methodology_id": state.methodology_id,
            "testimony_count": state.testimony_count,
        }, now)
        logger.info(
            "Standing tier of %s in %s changed %s -> %s",
            subject_id, context_id or "all contexts", previous.value, state.tier.value,
        )
        return True

    def _close_due_windows(self, now: datetime) -> int:
        closed = 0
        for trigger_ref in sorted(self._open_windows, key=lambda r: r.uri):
            window = self._opened_by(trigger_ref, now)
            if window is not None and window.status == WindowStatus.CLOSED:
                self._announce_close(window, now)
                closed += 1
        return closed

    def _opened_by(self, trigger_ref: RecordRef, now: datetime) -> Optional[TestimonyWindow]:
        for window in self._windows.windows_for(self._open_windows[trigger_ref], now):
            if window.trigger_ref == trigger_ref:
                return window
        return None

    def _announce_close(self, window: TestimonyWindow, now: datetime) -> None:
        self._open_windows.pop(window.trigger_ref, None)
        self._closed_windows.add(window.trigger_ref)
        self._emit(EventKind.WINDOW_CLOSED, window.closed_early_by or "system", {
            "uri": window.subject_ref.uri,
            "trigger": window.trigger_ref.uri,
            "closed_at": format_timestamp(window.closed_at),
            "closed_early_by": window.closed_early_by,
            "outcome": window.outcome.value,
            "testimonies_received": len(window.testimonies_received),
        }, now)
        logger.info(
            "Testimony window on %s closed with outcome %s",
            window.subject_ref.uri, window.outcome.value,
        )
        for entry in window.testimonies_received:
            self._recompute_queue.add((entry.testimony.witness_id, None))

    @property
    def open_window_count(self) -> int:
        return len(self._open_windows)

    @property
    def pending_recomputations(self) -> int:
        return len(self._recompute_queue)
