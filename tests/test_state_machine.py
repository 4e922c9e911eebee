"""Tests for moderation state derivation.

Records are put straight into the store so each test controls exactly
which part of the graph exists at derivation time.
"""

import json
import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from molt.authority.resolver import AuthorityResolver
from molt.authority.roles import RoleRegistry
from molt.errors import InvalidReference
from molt.models.moderation import ActionState, AppealBranchStatus
from molt.models.records import (
    ActionKind,
    Appeal,
    AppealCategory,
    AppealResolution,
    Collection,
    ModerationAction,
    RecordRef,
    ResolutionOutcome,
    Severity,
    Testimony,
    TestimonyCategory,
)
from molt.moderation.state_machine import ModerationStateMachine
from molt.persistence.record_store import RecordStore
from molt.policy.resolver import PolicyResolver
from molt.propagation.windows import TestimonyWindowEngine

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
H = timedelta(hours=1)
CTX = "submolt:rust"
MOD = "did:plc:mod"
SENIOR = "did:plc:senior"
BOARD = "did:plc:board"
ALICE = "did:plc:alice"
POST = RecordRef(ALICE, Collection.POST, "p1")


def _load_resolver(
    conflict_policy: Optional[str] = None,
    max_depth: Optional[int] = None,
) -> PolicyResolver:
    with (CONFIG_DIR / "engine_params.json").open() as f:
        params = json.load(f)
    with (CONFIG_DIR / "runtime_policy.json").open() as f:
        policy = json.load(f)
    if conflict_policy is not None:
        policy["appeal_conflict_policy"] = conflict_policy
    if max_depth is not None:
        params["derivation"]["max_reference_depth"] = max_depth
    return PolicyResolver(params, policy)


class _Graph:
    """Store plus derivation stack, with record builders."""

    def __init__(self, resolver: PolicyResolver) -> None:
        self.store = RecordStore()
        self.roles = RoleRegistry()
        authority = AuthorityResolver(resolver, self.roles)
        self.windows = TestimonyWindowEngine(resolver, self.store, self.roles)
        self.machine = ModerationStateMachine(resolver, self.store, authority, self.windows)
        self._n = 0

    def _key(self) -> str:
        self._n += 1
        return f"k{self._n}"

    def action(
        self,
        at: datetime = T0,
        kind: ActionKind = ActionKind.REMOVE,
        severity: Severity = Severity.HARD,
        operator: str = MOD,
        reverses: Optional[RecordRef] = None,
        expires_at: Optional[datetime] = None,
        effective_at: Optional[datetime] = None,
        received_at: Optional[datetime] = None,
    ) -> RecordRef:
        action = ModerationAction(
            ref=RecordRef(operator, Collection.MOD_ACTION, self._key()),
            operator_id=operator,
            context_id=CTX,
            kind=kind,
            severity=severity,
            created_at=at,
            subject_post=POST,
            reason="spam",
            reverses=reverses,
            expires_at=expires_at,
            effective_at=effective_at,
        )
        self.store.put(action, received_at or at)
        return action.ref

    def reverse(self, target: RecordRef, at: datetime, severity: Severity = Severity.SOFT,
                operator: str = MOD) -> RecordRef:
        return self.action(at, ActionKind.REVERSE, severity, operator, reverses=target)

    def appeal(self, target: RecordRef, at: datetime) -> RecordRef:
        appeal = Appeal(
            ref=RecordRef(ALICE, Collection.APPEAL, self._key()),
            appellant_id=ALICE,
            subject=target,
            grounds="not spam",
            category=AppealCategory.FACTUAL_ERROR,
            created_at=at,
        )
        self.store.put(appeal, at)
        return appeal.ref

    def resolve(
        self,
        appeal: RecordRef,
        outcome: ResolutionOutcome,
        at: datetime,
        resolver_id: str = BOARD,
        final: bool = False,
        modifications: Optional[str] = None,
    ) -> RecordRef:
        res = AppealResolution(
            ref=RecordRef(resolver_id, Collection.APPEAL_RESOLUTION, self._key()),
            resolver_id=resolver_id,
            appeal=appeal,
            outcome=outcome,
            created_at=at,
            final_decision=final,
            modifications=modifications,
        )
        self.store.put(res, at)
        return res.ref

    def testify(self, subject: RecordRef, at: datetime, witness: str = ALICE) -> RecordRef:
        t = Testimony(
            ref=RecordRef(witness, Collection.TESTIMONY, self._key()),
            witness_id=witness,
            category=TestimonyCategory.OPPOSE,
            content="the post was on topic",
            created_at=at,
            subject_ref=subject,
        )
        self.store.put(t, at)
        return t.ref

    def state(self, ref: RecordRef, now: datetime) -> ActionState:
        return self.machine.derive(ref, now).state


@pytest.fixture
def g() -> _Graph:
    return _Graph(_load_resolver())


class TestAppealLifecycle:
    def test_overturned_appeal_reverses(self, g: _Graph) -> None:
        action = g.action(T0)
        appeal = g.appeal(action, T0 + H)
        g.resolve(appeal, ResolutionOutcome.OVERTURNED, T0 + 6 * H)
        view = g.machine.derive(action, T0 + 7 * H)
        assert view.state == ActionState.REVERSED
        assert view.appeals[0].status == AppealBranchStatus.OVERTURNED
        assert view.version == T0 + 6 * H
        assert view.contributing_records == 3

    def test_fresh_action_active(self, g: _Graph) -> None:
        assert g.state(g.action(T0), T0) == ActionState.ACTIVE

    def test_appeal_pending(self, g: _Graph) -> None:
        action = g.action(T0)
        g.appeal(action, T0 + H)
        assert g.state(action, T0 + 2 * H) == ActionState.APPEALED

    def test_upheld_returns_to_active(self, g: _Graph) -> None:
        action = g.action(T0)
        appeal = g.appeal(action, T0 + H)
        res = g.resolve(appeal, ResolutionOutcome.UPHELD, T0 + 2 * H)
        view = g.machine.derive(action, T0 + 3 * H)
        assert view.state == ActionState.ACTIVE
        assert view.binding_ref == res

    def test_modified_keeps_modification(self, g: _Graph) -> None:
        action = g.action(T0)
        appeal = g.appeal(action, T0 + H)
        g.resolve(appeal, ResolutionOutcome.MODIFIED, T0 + 2 * H,
                  modifications="reduced to warning")
        view = g.machine.derive(action, T0 + 3 * H)
        assert view.state == ActionState.ACTIVE
        assert view.modification == "reduced to warning"

    def test_remand_then_new_cycle(self, g: _Graph) -> None:
        action = g.action(T0)
        first = g.appeal(action, T0 + H)
        g.resolve(first, ResolutionOutcome.REMANDED, T0 + 2 * H)
        assert g.state(action, T0 + 3 * H) == ActionState.UNDER_REVIEW

        second = g.appeal(action, T0 + 4 * H)
        assert g.state(action, T0 + 5 * H) == ActionState.UNDER_REVIEW
        g.resolve(second, ResolutionOutcome.UPHELD, T0 + 6 * H)
        view = g.machine.derive(action, T0 + 7 * H)
        assert view.state == ActionState.ACTIVE
        assert len(view.appeals) == 2

    def test_final_decision_locks_case(self, g: _Graph) -> None:
        action = g.action(T0)
        first = g.appeal(action, T0 + H)
        g.resolve(first, ResolutionOutcome.UPHELD, T0 + 2 * H, final=True)
        second = g.appeal(action, T0 + 3 * H)
        g.resolve(second, ResolutionOutcome.OVERTURNED, T0 + 4 * H)
        view = g.machine.derive(action, T0 + 5 * H)
        assert view.state == ActionState.ACTIVE
        assert view.final
        # The later branch is still tracked.
        assert view.appeals[1].status == AppealBranchStatus.OVERTURNED

    def test_same_instant_appeal_before_resolution(self, g: _Graph) -> None:
        action = g.action(T0)
        appeal = g.appeal(action, T0 + H)
        g.resolve(appeal, ResolutionOutcome.OVERTURNED, T0 + H)
        assert g.state(action, T0 + H) == ActionState.REVERSED

    def test_future_records_ignored(self, g: _Graph) -> None:
        action = g.action(T0)
        appeal = g.appeal(action, T0 + H)
        g.resolve(appeal, ResolutionOutcome.OVERTURNED, T0 + 6 * H)
        assert g.state(action, T0 + 3 * H) == ActionState.APPEALED

    def test_rederivation_is_stable(self, g: _Graph) -> None:
        action = g.action(T0)
        appeal = g.appeal(action, T0 + H)
        g.resolve(appeal, ResolutionOutcome.MODIFIED, T0 + 2 * H, modifications="m")
        first = g.machine.derive(action, T0 + 3 * H).to_dict()
        second = g.machine.derive(action, T0 + 3 * H).to_dict()
        assert first == second


class TestTimeBounds:
    def test_pending_before_effective(self, g: _Graph) -> None:
        action = g.action(T0, effective_at=T0 + 24 * H)
        assert g.state(action, T0 + H) == ActionState.PENDING
        assert g.state(action, T0 + 25 * H) == ActionState.ACTIVE

    def test_expired(self, g: _Graph) -> None:
        action = g.action(T0, kind=ActionKind.BAN, expires_at=T0 + 24 * H)
        assert g.state(action, T0 + 24 * H) == ActionState.ACTIVE
        assert g.state(action, T0 + 25 * H) == ActionState.EXPIRED

    def test_reversed_never_expires(self, g: _Graph) -> None:
        action = g.action(T0, expires_at=T0 + 24 * H)
        g.reverse(action, T0 + H)
        assert g.state(action, T0 + 48 * H) == ActionState.REVERSED


class TestReversals:
    def test_soft_reversal(self, g: _Graph) -> None:
        action = g.action(T0, severity=Severity.SOFT)
        rev = g.reverse(action, T0 + H)
        view = g.machine.derive(action, T0 + 2 * H)
        assert view.state == ActionState.REVERSED
        assert view.reversals == [rev]
        assert view.binding_ref == rev

    def test_reversal_of_reversal(self, g: _Graph) -> None:
        action = g.action(T0, severity=Severity.SOFT)
        rev = g.reverse(action, T0 + H)
        g.reverse(rev, T0 + 2 * H)
        view = g.machine.derive(action, T0 + 3 * H)
        assert view.state == ActionState.ACTIVE
        assert view.reversals == []

    def test_pending_reversal_has_no_effect(self, g: _Graph) -> None:
        action = g.action(T0, severity=Severity.SOFT)
        g.action(T0 + H, ActionKind.REVERSE, Severity.SOFT, reverses=action,
                 effective_at=T0 + 48 * H)
        assert g.state(action, T0 + 2 * H) == ActionState.ACTIVE

    def test_hard_reversal_waits_for_window(self, g: _Graph) -> None:
        action = g.action(T0)
        g.reverse(action, T0 + H, severity=Severity.HARD, operator=SENIOR)
        assert g.state(action, T0 + 2 * H) == ActionState.UNDER_REVIEW

    def test_hard_reversal_empty_window_upholds(self, g: _Graph) -> None:
        action = g.action(T0)
        g.reverse(action, T0 + H, severity=Severity.HARD, operator=SENIOR)
        assert g.state(action, T0 + 74 * H) == ActionState.ACTIVE

    def test_hard_reversal_with_testimony_proceeds(self, g: _Graph) -> None:
        action = g.action(T0)
        g.reverse(action, T0 + H, severity=Severity.HARD, operator=SENIOR)
        g.testify(action, T0 + 10 * H)
        assert g.state(action, T0 + 10 * H) == ActionState.UNDER_REVIEW
        assert g.state(action, T0 + 74 * H) == ActionState.REVERSED

    def test_hard_reversal_restores_appealed(self, g: _Graph) -> None:
        action = g.action(T0)
        g.appeal(action, T0 + H)
        g.reverse(action, T0 + 2 * H, severity=Severity.HARD, operator=SENIOR)
        assert g.state(action, T0 + 3 * H) == ActionState.UNDER_REVIEW
        assert g.state(action, T0 + 80 * H) == ActionState.APPEALED

    def test_hard_reversal_after_closed_window_opens_fresh_review(self, g: _Graph) -> None:
        action = g.action(T0, kind=ActionKind.ESCALATE)
        g.reverse(action, T0 + 100 * H, severity=Severity.HARD, operator=SENIOR)
        # The escalation's window closed at T0+72h; the reversal gets its own.
        assert g.state(action, T0 + 100 * H) == ActionState.UNDER_REVIEW
        assert g.state(action, T0 + 171 * H) == ActionState.UNDER_REVIEW
        assert g.state(action, T0 + 173 * H) == ActionState.ACTIVE

    def test_hard_reversal_after_closed_window_with_testimony(self, g: _Graph) -> None:
        action = g.action(T0, kind=ActionKind.ESCALATE)
        g.reverse(action, T0 + 100 * H, severity=Severity.HARD, operator=SENIOR)
        g.testify(action, T0 + 120 * H)
        assert g.state(action, T0 + 150 * H) == ActionState.UNDER_REVIEW
        assert g.state(action, T0 + 173 * H) == ActionState.REVERSED

    def test_earlier_window_testimony_does_not_carry_over(self, g: _Graph) -> None:
        action = g.action(T0, kind=ActionKind.ESCALATE)
        g.testify(action, T0 + 10 * H)
        g.reverse(action, T0 + 100 * H, severity=Severity.HARD, operator=SENIOR)
        assert g.state(action, T0 + 173 * H) == ActionState.ACTIVE

    def test_hard_reversal_inside_escalation_window(self, g: _Graph) -> None:
        action = g.action(T0, kind=ActionKind.ESCALATE)
        g.reverse(action, T0 + 10 * H, severity=Severity.HARD, operator=SENIOR)
        assert g.state(action, T0 + 11 * H) == ActionState.UNDER_REVIEW
        # Closed at T0+72h with no testimony: the escalation stands.
        assert g.state(action, T0 + 73 * H) == ActionState.ACTIVE

    def test_hard_reversal_inside_escalation_window_with_testimony(self, g: _Graph) -> None:
        action = g.action(T0, kind=ActionKind.ESCALATE)
        g.reverse(action, T0 + 10 * H, severity=Severity.HARD, operator=SENIOR)
        g.testify(action, T0 + 20 * H)
        assert g.state(action, T0 + 73 * H) == ActionState.REVERSED


class TestDegradedDerivation:
    def test_cycle_is_indeterminate(self, g: _Graph) -> None:
        a_ref = RecordRef(MOD, Collection.MOD_ACTION, "x")
        b_ref = RecordRef(MOD, Collection.MOD_ACTION, "y")
        for ref, target in ((a_ref, b_ref), (b_ref, a_ref)):
            g.store.put(ModerationAction(
                ref=ref, operator_id=MOD, context_id=CTX,
                kind=ActionKind.REVERSE, severity=Severity.SOFT,
                created_at=T0, subject_actor=ALICE, reverses=target,
            ), T0)
        view = g.machine.derive(a_ref, T0 + H)
        assert view.state == ActionState.INDETERMINATE
        assert "cycle" in view.degraded_reason

    def test_chain_past_depth_limit(self) -> None:
        resolver = _load_resolver(max_depth=3)
        graph = _Graph(resolver)
        target = graph.action(T0, severity=Severity.SOFT)
        root = target
        for i in range(4):
            target = graph.reverse(target, T0 + (i + 1) * H)
        view = graph.machine.derive(root, T0 + 10 * H)
        assert view.state == ActionState.INDETERMINATE

    def test_unknown_ref(self, g: _Graph) -> None:
        with pytest.raises(InvalidReference):
            g.machine.derive(RecordRef(MOD, Collection.MOD_ACTION, "missing"), T0)


class TestConflictPolicy:
    def _competing(self, graph: _Graph) -> RecordRef:
        graph.roles.grant(BOARD, CTX, "appeals_board", T0 - 24 * H)
        graph.roles.grant(SENIOR, CTX, "senior_moderator", T0 - 24 * H)
        action = graph.action(T0)
        first = graph.appeal(action, T0 + H)
        second = graph.appeal(action, T0 + H + timedelta(minutes=1))
        graph.resolve(first, ResolutionOutcome.OVERTURNED, T0 + 2 * H, resolver_id=BOARD)
        graph.resolve(second, ResolutionOutcome.UPHELD, T0 + 3 * H, resolver_id=SENIOR)
        return action

    def test_most_recent_wins(self) -> None:
        graph = _Graph(_load_resolver("most_recent"))
        action = self._competing(graph)
        assert graph.state(action, T0 + 4 * H) == ActionState.ACTIVE

    def test_most_authoritative_wins(self) -> None:
        graph = _Graph(_load_resolver("most_authoritative"))
        action = self._competing(graph)
        view = graph.machine.derive(action, T0 + 4 * H)
        assert view.state == ActionState.REVERSED
        assert view.binding_ref.owner_id == BOARD
