"""Moderation state machine — derives an action's effective state.

There is no status field to read. The state of a moderation action is
a fold, in creation order, over every record that references it:

    appeal filed          → APPEALED (stays UNDER_REVIEW if already there)
    resolution remanded   → UNDER_REVIEW (new cycle, same case)
    resolution upheld     → ACTIVE
    resolution modified   → ACTIVE, with the modification recorded
    resolution overturned → REVERSED
    soft reversal         → REVERSED
    hard reversal         → UNDER_REVIEW until the testimony window it
                            opened or joined closes, then REVERSED if
                            testimony was gathered, or back to the
                            state before review (empty window)

Then, after the fold:
    ACTIVE before effectiveAt        → PENDING
    expiresAt passed and not REVERSED → EXPIRED

Rules on top of the fold:
- A terminal resolution with finalDecision locks the case; later
  appeals and remands are tracked but change nothing.
- Under the most_authoritative conflict policy a terminal decision
  only overrides the current binding one when its author's role
  precedence (at the decision's created_at) is at least as high.
- A reversal counts only while it is itself in effect: a reversed or
  still-pending reversal does not reverse anything. This recursion is
  bounded; reference cycles and chains past the configured depth
  derive to INDETERMINATE with a degraded_reason instead of raising.

Only records created at or before `now` take part, so the derivation
at a given instant is reproducible from the raw records alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from molt.authority.resolver import AuthorityResolver
from molt.errors import InvalidReference
from molt.models.moderation import (
    ActionState,
    ActionStateView,
    AppealBranch,
    AppealBranchStatus,
)
from molt.models.records import (
    ActionKind,
    Appeal,
    AppealResolution,
    Collection,
    ModerationAction,
    RecordRef,
    ResolutionOutcome,
)
from molt.models.window import WindowOutcome
from molt.persistence.record_store import RecordStore
from molt.policy.resolver import AppealConflictPolicy, PolicyResolver
from molt.propagation.windows import TestimonyWindowEngine, is_hard_reversal


_OUTCOME_STATUS = {
    ResolutionOutcome.UPHELD: AppealBranchStatus.UPHELD,
    ResolutionOutcome.OVERTURNED: AppealBranchStatus.OVERTURNED,
    ResolutionOutcome.MODIFIED: AppealBranchStatus.MODIFIED,
    ResolutionOutcome.REMANDED: AppealBranchStatus.UNDER_REVIEW,
}

# Same-instant ordering: an appeal precedes its resolution.
_APPEAL, _RESOLUTION, _REVERSAL, _REVIEW_CLOSE = range(4)


@dataclass(frozen=True)
class _Event:
    at: datetime
    order: int
    uri: str
    record: Union[Appeal, ModerationAction, AppealResolution]
    window_outcome: Optional[WindowOutcome] = None
    opens_review: bool = False

    @property
    def sort_key(self) -> tuple[datetime, int, str]:
        return (self.at, self.order, self.uri)


class _Degraded(Exception):
    """Internal signal: derivation cannot produce a determinate state."""


class ModerationStateMachine:
    """Derives ActionStateViews from the record store.

    Usage:
        machine = ModerationStateMachine(resolver, store, authority, windows)
        view = machine.derive(action_ref, now)
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        store: RecordStore,
        authority: AuthorityResolver,
        windows: TestimonyWindowEngine,
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._authority = authority
        self._windows = windows

    def derive(self, action_ref: RecordRef, now: datetime) -> ActionStateView:
        """Current effective state of a moderation action.

        Raises InvalidReference if the ref is not an indexed action.
        """
        action = self._store.get(action_ref)
        if not isinstance(action, ModerationAction):
            raise InvalidReference(
                f"Not an indexed moderation action: {action_ref.uri}"
            )
        try:
            return self._derive(action, now, trail=())
        except _Degraded as exc:
            return ActionStateView(
                action_ref=action_ref,
                state=ActionState.INDETERMINATE,
                computed_at=now,
                version=action.created_at,
                contributing_records=1,
                degraded_reason=str(exc),
            )

    # ------------------------------------------------------------------
    # Relationship lookups
    # ------------------------------------------------------------------

    def appeal_branches(self, action_ref: RecordRef, now: datetime) -> list[Union[Appeal, ModerationAction]]:
        """Appeal records and legacy appeal actions against an action."""
        branches: list[Union[Appeal, ModerationAction]] = []
        for rec in self._store.referencing(action_ref, Collection.APPEAL):
            if rec.subject == action_ref and rec.created_at <= now:
                branches.append(rec)
        for rec in self._store.referencing(action_ref, Collection.MOD_ACTION):
            if (
                rec.kind == ActionKind.APPEAL
                and rec.appeals_to == action_ref
                and rec.created_at <= now
            ):
                branches.append(rec)
        return sorted(branches, key=lambda b: (b.created_at, b.ref.uri))

    def resolutions_for(self, branch_ref: RecordRef, now: datetime) -> list[AppealResolution]:
        return [
            rec for rec in self._store.referencing(branch_ref, Collection.APPEAL_RESOLUTION)
            if rec.appeal == branch_ref and rec.created_at <= now
        ]

    def reversals_of(self, action_ref: RecordRef, now: datetime) -> list[ModerationAction]:
        return [
            rec for rec in self._store.referencing(action_ref, Collection.MOD_ACTION)
            if rec.kind == ActionKind.REVERSE
            and rec.reverses == action_ref
            and rec.created_at <= now
        ]

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def _derive(
        self,
        action: ModerationAction,
        now: datetime,
        trail: tuple[RecordRef, ...],
    ) -> ActionStateView:
        if action.ref in trail:
            raise _Degraded(f"reference cycle through {action.ref.uri}")
        if len(trail) >= self._resolver.max_reference_depth():
            raise _Degraded(
                f"reversal chain deeper than {self._resolver.max_reference_depth()}"
            )
        trail = trail + (action.ref,)

        events: list[_Event] = []
        branch_records = self.appeal_branches(action.ref, now)
        branch_resolutions: dict[RecordRef, list[AppealResolution]] = {}
        for branch in branch_records:
            events.append(_Event(branch.created_at, _APPEAL, branch.ref.uri, branch))
            resolutions = self.resolutions_for(branch.ref, now)
            branch_resolutions[branch.ref] = resolutions
            for res in resolutions:
                events.append(_Event(res.created_at, _RESOLUTION, res.ref.uri, res))

        effective_reversals: list[ModerationAction] = []
        for rev in self.reversals_of(action.ref, now):
            nested = self._derive(rev, now, trail)
            if nested.state in (ActionState.REVERSED, ActionState.PENDING):
                continue
            effective_reversals.append(rev)
            events.extend(self._reversal_events(action, rev, now))

        events.sort(key=lambda e: e.sort_key)
        return self._fold(action, now, events, branch_records, branch_resolutions, effective_reversals)

    def _reversal_events(
        self,
        action: ModerationAction,
        rev: ModerationAction,
        now: datetime,
    ) -> list[_Event]:
        if not is_hard_reversal(rev) or not self._resolver.hard_reversal_opens_window():
            return [_Event(rev.created_at, _REVERSAL, rev.ref.uri, rev)]
        window = self._windows.window_containing(action.ref, rev, now)
        if window is None:
            return [_Event(rev.created_at, _REVERSAL, rev.ref.uri, rev)]
        close_at = window.closed_at
        events = [_Event(rev.created_at, _REVERSAL, rev.ref.uri, rev, opens_review=True)]
        if close_at is not None:
            events.append(_Event(
                close_at, _REVIEW_CLOSE, rev.ref.uri, rev,
                window_outcome=window.outcome,
            ))
        return events

    def _fold(
        self,
        action: ModerationAction,
        now: datetime,
        events: list[_Event],
        branch_records: list[Union[Appeal, ModerationAction]],
        branch_resolutions: dict[RecordRef, list[AppealResolution]],
        effective_reversals: list[ModerationAction],
    ) -> ActionStateView:
        policy = self._resolver.appeal_conflict_policy()
        state = ActionState.ACTIVE
        before_review = ActionState.ACTIVE
        binding: Optional[RecordRef] = None
        binding_rank = -1
        modification: Optional[str] = None
        final = False
        branch_status: dict[RecordRef, AppealBranchStatus] = {}

        def may_bind(author_id: str, at: datetime) -> Optional[int]:
            rank = self._authority.rank_at(author_id, action.context_id, at)
            if policy == AppealConflictPolicy.MOST_AUTHORITATIVE and rank < binding_rank:
                return None
            return rank

        for ev in events:
            rec = ev.record
            if ev.order == _APPEAL:
                branch_status[rec.ref] = AppealBranchStatus.OPEN
                if final or state in (ActionState.REVERSED, ActionState.UNDER_REVIEW):
                    continue
                state = ActionState.APPEALED

            elif ev.order == _RESOLUTION:
                branch_status[rec.appeal] = _OUTCOME_STATUS[rec.outcome]
                if final:
                    continue
                if rec.outcome == ResolutionOutcome.REMANDED:
                    state = ActionState.UNDER_REVIEW
                    continue
                rank = may_bind(rec.resolver_id, rec.created_at)
                if rank is None:
                    continue
                binding, binding_rank = rec.ref, rank
                if rec.outcome == ResolutionOutcome.OVERTURNED:
                    state = ActionState.REVERSED
                    modification = None
                else:
                    state = ActionState.ACTIVE
                    modification = (
                        rec.modifications or ""
                        if rec.outcome == ResolutionOutcome.MODIFIED
                        else None
                    )
                if rec.final_decision:
                    final = True

            elif ev.order == _REVERSAL:
                if ev.opens_review:
                    if state != ActionState.REVERSED and state != ActionState.UNDER_REVIEW:
                        before_review = state
                        state = ActionState.UNDER_REVIEW
                    continue
                rank = may_bind(rec.operator_id, rec.created_at)
                if rank is None:
                    continue
                binding, binding_rank = rec.ref, rank
                state = ActionState.REVERSED

            elif ev.order == _REVIEW_CLOSE:
                if ev.window_outcome == WindowOutcome.PROCEED:
                    rank = may_bind(rec.operator_id, rec.created_at)
                    if rank is None:
                        if state == ActionState.UNDER_REVIEW:
                            state = before_review
                        continue
                    binding, binding_rank = rec.ref, rank
                    state = ActionState.REVERSED
                elif state == ActionState.UNDER_REVIEW:
                    state = before_review

        if state == ActionState.ACTIVE and action.effective_at is not None \
                and now < action.effective_at:
            state = ActionState.PENDING
        if action.expires_at is not None and now > action.expires_at \
                and state != ActionState.REVERSED:
            state = ActionState.EXPIRED

        branches = [
            AppealBranch(
                appeal_ref=b.ref,
                appellant_id=b.appellant_id if isinstance(b, Appeal) else b.operator_id,
                created_at=b.created_at,
                status=branch_status.get(b.ref, AppealBranchStatus.OPEN),
                resolutions=tuple(branch_resolutions.get(b.ref, [])),
                category=b.category.value if isinstance(b, Appeal) else None,
                legacy=isinstance(b, ModerationAction),
            )
            for b in branch_records
        ]
        resolutions = sorted(
            (r for rs in branch_resolutions.values() for r in rs),
            key=lambda r: (r.created_at, r.ref.uri),
        )
        contributing = [action.created_at]
        contributing += [b.created_at for b in branch_records]
        contributing += [r.created_at for r in resolutions]
        contributing += [r.created_at for r in effective_reversals]

        return ActionStateView(
            action_ref=action.ref,
            state=state,
            computed_at=now,
            appeals=branches,
            resolutions=resolutions,
            reversals=[r.ref for r in effective_reversals],
            binding_ref=binding,
            modification=modification,
            final=final,
            version=max(contributing),
            contributing_records=len(contributing),
        )
