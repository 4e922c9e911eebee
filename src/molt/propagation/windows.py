"""Testimony window derivation.

Windows are never stored. A window exists for a moderation action when
a trigger references it:
- the action itself is of a trigger kind (escalate), or
- a hard reversal targets it.

The earliest trigger opens the window at its created_at; the window
runs for the configured duration unless a windowClose record, authored
by someone with close authority, ends it early. Closure is terminal:
a hard reversal created at or after the close does not reuse it but
opens a fresh window of its own. Any window a hard reversal opened or
joined requires testimony; closing empty upholds the original action.

Membership is by logical creation time. A testimony created at or
before the effective close is in the window even if the indexer saw it
later (late_arrival). One created after close is kept but flagged
post_window and left out of the default evidence set.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from molt.authority.roles import RoleRegistry
from molt.models.records import (
    ActionKind,
    Appeal,
    Collection,
    ModerationAction,
    RecordRef,
    Severity,
    Testimony,
    WindowClosure,
)
from molt.models.window import TestimonyWindow, WindowStatus, WindowTestimony
from molt.persistence.record_store import RecordStore
from molt.policy.resolver import PolicyResolver


def is_hard_reversal(action: ModerationAction) -> bool:
    return action.kind == ActionKind.REVERSE and action.severity == Severity.HARD


class TestimonyWindowEngine:
    """Derives testimony windows from the record graph."""

    def __init__(
        self,
        resolver: PolicyResolver,
        store: RecordStore,
        roles: RoleRegistry,
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._roles = roles

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def triggers_for(self, subject_ref: RecordRef) -> list[ModerationAction]:
        """Actions that open a window on `subject_ref`, earliest first."""
        subject = self._store.get(subject_ref)
        if not isinstance(subject, ModerationAction):
            return []
        triggers = []
        if subject.kind.value in self._resolver.window_trigger_kinds():
            triggers.append(subject)
        if self._resolver.hard_reversal_opens_window():
            for rec in self._store.referencing(subject_ref, Collection.MOD_ACTION):
                if is_hard_reversal(rec) and rec.reverses == subject_ref:
                    triggers.append(rec)
        return sorted(triggers, key=lambda a: (a.created_at, a.ref.uri))

    def subject_for(self, ref: RecordRef) -> Optional[RecordRef]:
        """The window subject a query ref stands for, if any.

        A ref that has triggers of its own names its own window;
        otherwise a hard reversal names the window on its target.
        """
        if self.triggers_for(ref):
            return ref
        action = self._store.get(ref)
        if isinstance(action, ModerationAction) and is_hard_reversal(action):
            if action.reverses is not None and self.triggers_for(action.reverses):
                return action.reverses
        return None

    def trigger_subjects(self) -> list[RecordRef]:
        """Every action that currently has a window."""
        subjects = []
        for rec in self._store.by_collection(Collection.MOD_ACTION):
            if self.triggers_for(rec.ref):
                subjects.append(rec.ref)
        return subjects

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def windows_for(self, ref: RecordRef, now: datetime) -> list[TestimonyWindow]:
        """Every window on an action (or on a hard reversal's target), oldest first.

        The earliest trigger opens the first window. Later triggers created
        before that window's effective close join it; a trigger created at
        or after the close opens the next window at its own created_at.
        """
        subject_ref = self.subject_for(ref)
        if subject_ref is None:
            return []
        subject = self._store.get(subject_ref)
        if not isinstance(subject, ModerationAction):
            return []
        triggers = self.triggers_for(subject_ref)
        watched = [subject_ref] + [t.ref for t in triggers if t.ref != subject_ref]
        duration = self._resolver.testimony_window_duration()

        windows: list[TestimonyWindow] = []
        previous_close: Optional[datetime] = None
        index = 0
        while index < len(triggers):
            opener = triggers[index]
            opens_at = opener.created_at
            closes_at = opens_at + duration
            closure = self._early_closure(watched, opens_at, closes_at, now)
            effective_close = closure.created_at if closure else closes_at
            members = [opener] + [
                t for t in triggers[index + 1:] if t.created_at < effective_close
            ]
            index += len(members)
            windows.append(self._derive(
                subject, opener, members, watched, opens_at, closes_at,
                closure, previous_close, now,
            ))
            previous_close = effective_close
        return windows

    def window_for(self, ref: RecordRef, now: datetime) -> Optional[TestimonyWindow]:
        """The most recent window on an action (or on a hard reversal's target)."""
        windows = self.windows_for(ref, now)
        return windows[-1] if windows else None

    def window_containing(
        self,
        ref: RecordRef,
        trigger: ModerationAction,
        now: datetime,
    ) -> Optional[TestimonyWindow]:
        """The window a given trigger opened or joined."""
        found = None
        for window in self.windows_for(ref, now):
            if window.opens_at <= trigger.created_at:
                found = window
        return found

    def _derive(
        self,
        subject: ModerationAction,
        opener: ModerationAction,
        members: list[ModerationAction],
        watched: list[RecordRef],
        opens_at: datetime,
        closes_at: datetime,
        closure: Optional[WindowClosure],
        previous_close: Optional[datetime],
        now: datetime,
    ) -> TestimonyWindow:
        effective_close = closure.created_at if closure else closes_at
        closed = now >= effective_close

        # Testimony gathered after an earlier window closed belongs to this one.
        testimonies = self._testimonies(watched, previous_close, now)
        eligible = self._eligible_witnesses(subject, testimonies, effective_close)
        entries = []
        for t in testimonies:
            received = self._store.received_at(t.ref) or t.created_at
            post_window = t.created_at > effective_close
            entries.append(WindowTestimony(
                testimony=t,
                late_arrival=(not post_window) and received > effective_close,
                post_window=post_window,
                eligible_witness=t.witness_id in eligible,
            ))

        return TestimonyWindow(
            subject_ref=subject.ref,
            trigger_ref=opener.ref,
            context_id=subject.context_id,
            opens_at=opens_at,
            closes_at=closes_at,
            status=WindowStatus.CLOSED if closed else WindowStatus.OPEN,
            requires_testimony=any(is_hard_reversal(t) for t in members),
            eligible_witnesses=tuple(sorted(eligible)),
            testimonies=tuple(entries),
            closed_early_by=closure.closer_id if closure else None,
            closed_at=effective_close if closed else None,
        )

    def _early_closure(
        self,
        watched: list[RecordRef],
        opens_at: datetime,
        closes_at: datetime,
        now: datetime,
    ) -> Optional[WindowClosure]:
        candidates = []
        for ref in watched:
            for rec in self._store.referencing(ref, Collection.WINDOW_CLOSE):
                if opens_at <= rec.created_at < closes_at and rec.created_at <= now:
                    candidates.append(rec)
        if not candidates:
            return None
        return min(candidates, key=lambda c: (c.created_at, c.ref.uri))

    def _testimonies(
        self,
        watched: list[RecordRef],
        after: Optional[datetime],
        now: datetime,
    ) -> list[Testimony]:
        seen: dict[RecordRef, Testimony] = {}
        for ref in watched:
            for rec in self._store.referencing(ref, Collection.TESTIMONY):
                if rec.created_at > now:
                    continue
                if after is not None and rec.created_at <= after:
                    continue
                seen[rec.ref] = rec
        return sorted(seen.values(), key=lambda t: (t.created_at, t.ref.uri))

    def _eligible_witnesses(
        self,
        subject: ModerationAction,
        testimonies: list[Testimony],
        effective_close: datetime,
    ) -> set[str]:
        """Standing holders identified by their relationship to the action."""
        eligible = {subject.affected_actor_id}
        if subject.content_owner_id is not None:
            eligible.add(subject.content_owner_id)
        for rec in self._store.referencing(subject.ref, Collection.APPEAL):
            if isinstance(rec, Appeal) and rec.subject == subject.ref:
                eligible.add(rec.appellant_id)
        for rec in self._store.referencing(subject.ref, Collection.MOD_ACTION):
            if rec.kind == ActionKind.APPEAL and rec.appeals_to == subject.ref:
                eligible.add(rec.operator_id)
        slack = self._resolver.historical_overlap_slack()
        for grant in self._roles.holders_covering(subject.context_id, subject.created_at, slack):
            eligible.add(grant.actor_id)
        for t in testimonies:
            if not t.anonymous and t.created_at <= effective_close:
                eligible.add(t.witness_id)
        return eligible
