"""Molt service — unified facade for the moderation and reputation engine.

This is the primary interface for programmatic access to the engine.
It orchestrates all subsystems:
- Ingestion (schema parsing, reference checks, authority and standing
  checks, idempotency, deferral of unresolved references)
- Moderation state derivation (appeals, resolutions, reversals)
- Standing computation (testimony ledger + calculator + cache)
- Authority and permission-ghost queries
- Testimony windows and cross-lane propagation
- Post, vote and submolt indexing, with time, hot and top feeds
- Persistence (audit event log, projection store)

All operations produce typed results. Every ingestion outcome is
written to the audit log; a failure of one record never aborts the
processing of another. Derived values are recomputed from the record
graph on every query; stored projections exist only to let callers
detect staleness and are never read back as ground truth.

Time is explicit. Every operation takes an optional `now`; when it is
omitted the injected clock is read once at the boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Union

from molt.authority.ghost import PermissionGhostResolver
from molt.authority.resolver import AuthorityResolver
from molt.authority.roles import RoleRegistry
from molt.errors import (
    AuthorityRequired,
    DuplicateRecord,
    ImmutableRecord,
    InvalidReference,
    MoltError,
    SchemaInvalid,
    StandingRequired,
    UnhandledRecordType,
)
from molt.indexing.posts import FeedSort, PostIndex, VoteChange
from molt.indexing.submolts import SubmoltDirectory
from molt.ingest.deferral import DeadLetter, DeferralQueue
from molt.ingest.ledger import TestimonyLedger
from molt.ingest.schema import parse_record
from molt.models.moderation import ActionState
from molt.models.records import (
    ActionKind,
    Appeal,
    AppealResolution,
    Collection,
    InboundRecord,
    ModerationAction,
    Post,
    PublishedStanding,
    Record,
    RecordRef,
    Severity,
    Submolt,
    Testimony,
    Vote,
    WindowClosure,
    format_timestamp,
)
from molt.models.standing import Methodology, StandingState, StandingView, TestimonyView
from molt.moderation.state_machine import ModerationStateMachine
from molt.persistence.event_log import EventKind, EventLog, EventRecord
from molt.persistence.projection_store import ProjectionKind, ProjectionStore
from molt.persistence.record_store import RecordStore
from molt.policy.resolver import Capability, PolicyResolver
from molt.propagation.propagator import CrossLanePropagator
from molt.propagation.windows import TestimonyWindowEngine
from molt.standing.calculator import NEGATIVE_CATEGORIES, StandingCalculator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MoltService:
    """Unified moderation and reputation engine facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = MoltService(resolver)

        # Governance input from the identity collaborator
        service.grant_role("did:plc:mod", "submolt:rust", "moderator")

        # Records from the event stream
        result = service.ingest(inbound_record)
        result = service.ingest_batch(inbound_records)

        # Queries
        service.get_moderation_action_state("at://did:plc:mod/app.molt.modAction/1")
        service.get_standing("did:plc:alice", "submolt:rust")

        # Scheduled re-evaluation (deferral retries, window closes)
        service.tick()

    Persistence (optional):
        service = MoltService(resolver, event_log=log, projection_store=store)

    Thread-safety: this class is not thread-safe. The caller must
    synchronise access if used from multiple threads.
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        event_log: Optional[EventLog] = None,
        projection_store: Optional[ProjectionStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._resolver = resolver
        self._clock = clock or _utc_now
        self._store = RecordStore()
        self._roles = RoleRegistry()
        self._authority = AuthorityResolver(resolver, self._roles)
        self._ghost = PermissionGhostResolver(resolver, self._roles, self._authority)
        self._calculator = StandingCalculator(resolver)
        self._windows = TestimonyWindowEngine(resolver, self._store, self._roles)
        self._state_machine = ModerationStateMachine(
            resolver, self._store, self._authority, self._windows,
        )
        self._ledger = TestimonyLedger(self._store, self._ghost)
        gravity, offset_hours = resolver.hot_ranking()
        self._posts = PostIndex(self._store, hot_gravity=gravity, hot_offset_hours=offset_hours)
        self._submolts = SubmoltDirectory(self._store)
        self._deferral = DeferralQueue(resolver)
        self._event_log = event_log if event_log is not None else EventLog()
        self._projections = projection_store if projection_store is not None else ProjectionStore(
            standing_ttl=resolver.standing_cache_ttl(),
        )
        self._propagator = CrossLanePropagator(
            self._windows, self.standing_state, self._record_event,
        )

        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = self._event_log.count
        self._deferral.restore_dead_letters(
            [DeadLetter.from_dict(d) for d in self._projections.load_dead_letters()]
        )

        # Set when an audit or projection write fails. In-memory state
        # stays correct; the files are stale until the log is replayed.
        self._persistence_degraded: bool = False

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(self, item: InboundRecord, now: Optional[datetime] = None) -> ServiceResult:
        """Ingest one record from the event stream.

        data["status"] is one of accepted, duplicate, deferred,
        dead_lettered, rejected or unhandled.
        """
        now = now or self._clock()
        received_at = item.received_at or now
        uri = _item_uri(item)

        try:
            if item.record_type not in self._resolver.accepted_collections():
                raise UnhandledRecordType(f"Collection not accepted: {item.record_type!r}")
            record = parse_record(item)
        except UnhandledRecordType as e:
            logger.warning("Unhandled record type %s at %s", item.record_type, uri)
            return self._reject(uri, item.owner_id, e, now, status="unhandled")
        except SchemaInvalid as e:
            logger.warning("Schema violation in %s: %s", uri, e)
            return self._reject(uri, item.owner_id, e, now)

        existing = self._store.get(record.ref)
        if existing is not None:
            return self._duplicate_or_conflict(record, existing, now)

        try:
            same = self._admit(record, received_at)
        except InvalidReference as e:
            if e.missing is not None:
                return self._defer(replace(item, received_at=received_at), e, e.missing, now)
            logger.warning("Invalid reference in %s: %s", uri, e)
            return self._reject(uri, item.owner_id, e, now)
        except MoltError as e:
            logger.warning("Rejected %s (%s): %s", uri, e.code, e)
            return self._reject(uri, item.owner_id, e, now)

        if same is not None:
            self._deferral.forget(uri)
            self._record_event(EventKind.RECORD_DUPLICATE, item.owner_id, {
                "uri": uri,
                "existing": same.ref.uri,
            }, now)
            return ServiceResult(success=True, data={
                "status": "duplicate",
                "uri": uri,
                "existing": same.ref.uri,
            })

        data: dict[str, Any] = {
            "status": "accepted",
            "uri": uri,
            "collection": item.record_type,
        }
        data.update(self._index(record, received_at, now))
        self._deferral.forget(uri)
        warning = self._record_event(EventKind.RECORD_ACCEPTED, item.owner_id, {
            "uri": uri,
            "collection": item.record_type,
            "content_hash": item.content_hash,
            "created_at": format_timestamp(record.created_at),
            "received_at": format_timestamp(received_at),
        }, now)
        if warning:
            data["warning"] = warning
        logger.info("Accepted %s", uri)

        if isinstance(record, Testimony) and record.subject_actor is not None:
            self._projections.invalidate_standing(record.subject_actor)
        self._propagator.on_record_accepted(record, now)

        released = self._deferral.release(record.ref)
        if released:
            data["released"] = [self.ingest(waiting, now).data for waiting in released]
        return ServiceResult(success=True, data=data)

    def ingest_batch(
        self,
        items: Iterable[InboundRecord],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Ingest many records. A failing record never blocks the others."""
        now = now or self._clock()
        results = [self.ingest(item, now) for item in items]
        counts: dict[str, int] = {}
        for r in results:
            status = r.data.get("status", "rejected")
            counts[status] = counts.get(status, 0) + 1
        return ServiceResult(
            success=all(r.success for r in results),
            errors=[e for r in results for e in r.errors],
            data={"results": [r.data for r in results], "counts": counts},
        )

    def delete_record(
        self,
        ref: Union[RecordRef, str],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Remove a record from prospective computation.

        Testimony, votes, posts, submolts and published standing are
        deletable. The audit log keeps both the original acceptance and
        the deletion.
        """
        now = now or self._clock()
        try:
            ref = _as_ref(ref)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])

        record = self._store.get(ref)
        if record is None:
            return ServiceResult(success=True, data={
                "status": "deleted", "uri": ref.uri, "already_absent": True,
            })
        if isinstance(record, Testimony):
            self._ledger.delete(ref)
            if record.subject_actor is not None:
                self._projections.invalidate_standing(record.subject_actor)
            self._propagator.on_testimony_deleted(record, now)
        elif isinstance(record, Vote):
            self._posts.remove_vote(ref)
        elif isinstance(record, Post):
            self._posts.remove_post(ref)
        elif isinstance(record, (Submolt, PublishedStanding)):
            self._store.remove(ref)
        else:
            e = ImmutableRecord(f"{ref.uri} cannot be deleted")
            return ServiceResult(success=False, errors=[str(e)], data={
                "status": "rejected", "uri": ref.uri, "error_code": e.code,
            })

        data: dict[str, Any] = {"status": "deleted", "uri": ref.uri}
        warning = self._record_event(EventKind.RECORD_DELETED, ref.owner_id, {
            "uri": ref.uri,
            "collection": ref.collection,
        }, now)
        if warning:
            data["warning"] = warning
        logger.info("Deleted %s", ref.uri)
        return ServiceResult(success=True, data=data)

    # ------------------------------------------------------------------
    # Admission checks
    # ------------------------------------------------------------------

    def _admit(self, record: Record, received_at: datetime) -> Optional[Record]:
        """Check references, authority and standing at execution time.

        Returns an already-indexed record that says the same thing, or
        None when the record is new. Raises MoltError on any violation.
        """
        if isinstance(record, ModerationAction):
            self._admit_action(record, received_at)
        elif isinstance(record, Appeal):
            action = self._require_action(record.subject)
            self._require_appellant_standing(record.appellant_id, action)
        elif isinstance(record, AppealResolution):
            self._admit_resolution(record, received_at)
        elif isinstance(record, Testimony):
            return self._ledger.admit(record, received_at)
        elif isinstance(record, WindowClosure):
            self._admit_closure(record, received_at)
        elif isinstance(record, Vote):
            change, current = self._posts.classify_vote(record)
            if change == VoteChange.UNCHANGED:
                return current
        elif isinstance(record, (Post, Submolt, PublishedStanding)):
            pass
        else:
            raise UnhandledRecordType(f"Unhandled record: {type(record).__name__}")
        return None

    def _admit_action(self, action: ModerationAction, received_at: datetime) -> None:
        if action.kind == ActionKind.APPEAL:
            if action.appeals_to is None:
                raise SchemaInvalid(f"Appeal action {action.ref.uri} has no appealsTo")
            target = self._require_action(action.appeals_to)
            self._require_appellant_standing(action.operator_id, target)
            return
        if action.kind == ActionKind.REVERSE:
            if action.reverses is None:
                raise SchemaInvalid(f"Reversal {action.ref.uri} has no reverses target")
            target = self._require_action(action.reverses)
            capability = (
                Capability.HARD_REVERSE if action.severity == Severity.HARD
                else Capability.SOFT_REVERSE
            )
            self._require_authority(
                action.operator_id, target.context_id, capability, received_at,
            )
            return
        self._require_authority(
            action.operator_id, action.context_id, Capability.ISSUE_ACTION, received_at,
        )

    def _admit_resolution(self, res: AppealResolution, received_at: datetime) -> None:
        branch = self._store.get(res.appeal)
        if branch is None:
            if res.appeal.is_collection(Collection.APPEAL) or res.appeal.is_collection(
                Collection.MOD_ACTION
            ):
                raise InvalidReference(
                    f"Appeal {res.appeal.uri} is not indexed yet", missing=res.appeal,
                )
            raise InvalidReference(f"{res.appeal.uri} is not an appeal")
        if isinstance(branch, Appeal):
            action_ref = branch.subject
        elif (
            isinstance(branch, ModerationAction)
            and branch.kind == ActionKind.APPEAL
            and branch.appeals_to is not None
        ):
            action_ref = branch.appeals_to
        else:
            raise InvalidReference(f"{res.appeal.uri} is not an appeal")
        if res.mod_action is not None and res.mod_action != action_ref:
            raise InvalidReference(
                f"modAction {res.mod_action.uri} is not the subject of {res.appeal.uri}"
            )
        action = self._require_action(action_ref)
        self._require_authority(
            res.resolver_id, action.context_id, Capability.RESOLVE_APPEAL, received_at,
        )

    def _admit_closure(self, closure: WindowClosure, received_at: datetime) -> None:
        self._require_action(closure.subject)
        window = self._windows.window_for(closure.subject, max(received_at, closure.created_at))
        if window is None:
            raise InvalidReference(f"No testimony window on {closure.subject.uri}")
        self._require_authority(
            closure.closer_id, window.context_id, Capability.CLOSE_WINDOW, received_at,
        )

    def _require_action(self, ref: RecordRef) -> ModerationAction:
        if not ref.is_collection(Collection.MOD_ACTION):
            raise InvalidReference(f"{ref.uri} is not a moderation action")
        target = self._store.get(ref)
        if target is None:
            raise InvalidReference(f"Action {ref.uri} is not indexed yet", missing=ref)
        if not isinstance(target, ModerationAction):
            raise InvalidReference(f"{ref.uri} is not a moderation action")
        return target

    def _require_authority(
        self,
        actor_id: str,
        context_id: str,
        capability: Capability,
        at_time: datetime,
    ) -> None:
        if not self._authority.has_authority(actor_id, context_id, capability, at_time):
            raise AuthorityRequired(
                f"{actor_id} lacks {capability.value} in {context_id} "
                f"at {format_timestamp(at_time)}"
            )

    @staticmethod
    def _require_appellant_standing(appellant_id: str, action: ModerationAction) -> None:
        if appellant_id not in (action.affected_actor_id, action.content_owner_id):
            raise StandingRequired(
                f"{appellant_id} has no standing to appeal {action.ref.uri}"
            )

    def _index(self, record: Record, received_at: datetime, now: datetime) -> dict[str, Any]:
        """Store an admitted record. Returns extra result data."""
        if isinstance(record, Testimony):
            self._ledger.record(record, received_at)
            return {}
        if isinstance(record, Vote):
            change, replaced = self._posts.apply_vote(record, received_at)
            if change == VoteChange.CHANGED and replaced is not None:
                self._record_event(EventKind.VOTE_CHANGED, record.voter_id, {
                    "uri": record.ref.uri,
                    "replaced": replaced.ref.uri,
                    "subject": record.subject.uri,
                    "direction": record.direction.value,
                }, now)
                return {"vote_change": change.value, "replaced": replaced.ref.uri}
            return {"vote_change": change.value}
        if isinstance(record, Post):
            self._posts.add_post(record, received_at)
            return {}
        self._store.put(record, received_at)
        return {}

    def _duplicate_or_conflict(
        self,
        record: Record,
        existing: Record,
        now: datetime,
    ) -> ServiceResult:
        uri = record.ref.uri
        new_hash = record.ref.content_hash
        old_hash = existing.ref.content_hash
        if new_hash and old_hash:
            conflict = new_hash != old_hash
        else:
            conflict = record != existing
        if conflict:
            e = DuplicateRecord(f"{uri} is already indexed with different content")
            logger.warning("Rejected %s: %s", uri, e)
            return self._reject(uri, record.ref.owner_id, e, now)
        self._record_event(EventKind.RECORD_DUPLICATE, record.ref.owner_id, {
            "uri": uri, "existing": uri,
        }, now)
        return ServiceResult(success=True, data={
            "status": "duplicate", "uri": uri, "existing": uri,
        })

    def _defer(
        self,
        item: InboundRecord,
        error: InvalidReference,
        missing: RecordRef,
        now: datetime,
    ) -> ServiceResult:
        outcome = self._deferral.defer(item, error, now)
        uri = item.ref.uri
        if isinstance(outcome, DeadLetter):
            self._record_event(EventKind.RECORD_DEAD_LETTERED, item.owner_id, {
                "uri": uri,
                "missing": missing.uri,
                "attempts": outcome.attempts,
            }, now)
            self._persist_dead_letters()
            return ServiceResult(success=False, errors=[str(error)], data={
                "status": "dead_lettered",
                "uri": uri,
                "missing": missing.uri,
                "error_code": error.code,
            })
        self._record_event(EventKind.RECORD_DEFERRED, item.owner_id, {
            "uri": uri,
            "missing": missing.uri,
            "attempts": outcome.attempts,
            "next_attempt_at": format_timestamp(outcome.next_attempt_at),
        }, now)
        return ServiceResult(success=True, data={
            "status": "deferred",
            "uri": uri,
            "missing": missing.uri,
            "error_code": error.code,
            "next_attempt_at": format_timestamp(outcome.next_attempt_at),
        })

    def _reject(
        self,
        uri: str,
        actor_id: str,
        error: MoltError,
        now: datetime,
        status: str = "rejected",
    ) -> ServiceResult:
        self._deferral.forget(uri)
        self._record_event(EventKind.RECORD_REJECTED, actor_id, {
            "uri": uri,
            "error_code": error.code,
            "reason": str(error),
        }, now)
        return ServiceResult(success=False, errors=[str(error)], data={
            "status": status,
            "uri": uri,
            "error_code": error.code,
        })

    # ------------------------------------------------------------------
    # Governance input
    # ------------------------------------------------------------------

    def grant_role(
        self,
        actor_id: str,
        context_id: str,
        role: str,
        granted_at: Optional[datetime] = None,
    ) -> ServiceResult:
        """Record a role grant from the identity collaborator."""
        granted_at = granted_at or self._clock()
        if role not in self._resolver.role_names():
            return ServiceResult(success=False, errors=[f"Unknown role: {role}"])
        try:
            grant = self._roles.grant(actor_id, context_id, role, granted_at)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        self._record_event(EventKind.ROLE_GRANTED, actor_id, {
            "actor_id": actor_id,
            "context_id": context_id,
            "role": role,
            "granted_at": format_timestamp(grant.granted_at),
        }, granted_at)
        logger.info("Granted %s to %s in %s", role, actor_id, context_id)
        return ServiceResult(success=True, data={
            "actor_id": actor_id,
            "context_id": context_id,
            "role": role,
            "granted_at": format_timestamp(grant.granted_at),
        })

    def revoke_role(
        self,
        actor_id: str,
        context_id: str,
        role: str,
        revoked_at: Optional[datetime] = None,
    ) -> ServiceResult:
        """Close a role interval. Standing is untouched."""
        revoked_at = revoked_at or self._clock()
        try:
            grant = self._roles.revoke(actor_id, context_id, role, revoked_at)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        self._record_event(EventKind.ROLE_REVOKED, actor_id, {
            "actor_id": actor_id,
            "context_id": context_id,
            "role": role,
            "granted_at": format_timestamp(grant.granted_at),
            "revoked_at": format_timestamp(grant.revoked_at),
        }, revoked_at)
        logger.info("Revoked %s from %s in %s", role, actor_id, context_id)
        return ServiceResult(success=True, data={
            "actor_id": actor_id,
            "context_id": context_id,
            "role": role,
            "revoked_at": format_timestamp(grant.revoked_at),
        })

    def record_endorsement(
        self,
        actor_id: str,
        context_id: Optional[str],
        endorser_id: str,
        endorsed_at: Optional[datetime] = None,
        note: str = "",
    ) -> ServiceResult:
        """Record an explicit community endorsement of an actor."""
        endorsed_at = endorsed_at or self._clock()
        try:
            self._roles.record_endorsement(
                actor_id, context_id, endorser_id, endorsed_at, note,
            )
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        self._record_event(EventKind.ENDORSEMENT_RECORDED, endorser_id, {
            "actor_id": actor_id,
            "context_id": context_id,
            "endorser_id": endorser_id,
        }, endorsed_at)
        self._projections.invalidate_standing(actor_id)
        self._propagator.recompute(actor_id, context_id, endorsed_at)
        return ServiceResult(success=True, data={
            "actor_id": actor_id,
            "context_id": context_id,
            "endorser_id": endorser_id,
        })

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_moderation_action_state(
        self,
        ref: Union[RecordRef, str],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Derived state of an action with its appeals and resolutions."""
        now = now or self._clock()
        try:
            ref = _as_ref(ref)
            view = self._state_machine.derive(ref, now)
        except InvalidReference as e:
            return ServiceResult(success=False, errors=[str(e)], data={"error_code": e.code})
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        data = view.to_dict()
        warning = self._save_projection(
            ProjectionKind.ACTION_STATE, ref.uri, data, view.version, now,
        )
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    def is_projection_stale(
        self,
        ref: Union[RecordRef, str],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Compare a stored action-state projection with the record graph."""
        now = now or self._clock()
        try:
            ref = _as_ref(ref)
            view = self._state_machine.derive(ref, now)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        stored = self._projections.get(ProjectionKind.ACTION_STATE, ref.uri)
        stale = stored is None or stored.is_stale(view.version)
        return ServiceResult(success=True, data={
            "uri": ref.uri,
            "stale": stale,
            "stored_version": format_timestamp(stored.version) if stored else None,
            "latest_version": format_timestamp(view.version),
            "stored_state": stored.payload.get("state") if stored else None,
            "derived_state": view.state.value,
        })

    def standing_state(
        self,
        subject_id: str,
        context_id: Optional[str],
        now: datetime,
        methodology: Optional[Methodology] = None,
    ) -> StandingState:
        """Standing of a subject, through the advisory cache."""
        m = methodology or self._resolver.methodology()
        cached = self._projections.cached_standing(subject_id, context_id, m.methodology_id, now)
        if cached is not None:
            return cached
        testimonies = self._ledger.testimonies_about(subject_id, context_id)
        negative_witnesses = {
            t.witness_id for t in testimonies if t.category in NEGATIVE_CATEGORIES
        }
        witness_phi = {
            w: self._calculator.compute_standing(
                self._ledger.testimonies_about(w), m, now, subject_id=w,
            ).phi
            for w in negative_witnesses
        }
        state = self._calculator.compute_standing(
            testimonies,
            m,
            now,
            subject_id=subject_id,
            context_id=context_id,
            endorsed=self._roles.is_endorsed(subject_id, context_id, now),
            witness_phi=witness_phi,
        )
        self._projections.cache_standing(state, now)
        return state

    def get_standing(
        self,
        subject_id: str,
        context_id: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        methodology_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Standing with its methodology and the testimonies behind it.

        Testimonies come newest first. When a page does not hold them
        all, more_available is set and cursor names the next page.
        """
        now = now or self._clock()
        try:
            methodology = self._resolver.methodology(methodology_id)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        page_size = limit if limit is not None else self._resolver.standing_page_size()
        if page_size <= 0:
            return ServiceResult(success=False, errors=["limit must be positive"])
        try:
            offset = int(cursor) if cursor else 0
        except ValueError:
            return ServiceResult(success=False, errors=[f"Invalid cursor: {cursor!r}"])
        if offset < 0:
            return ServiceResult(success=False, errors=[f"Invalid cursor: {cursor!r}"])

        state = self.standing_state(subject_id, context_id, now, methodology)
        testimonies = sorted(
            self._ledger.testimonies_about(subject_id, context_id),
            key=lambda t: (t.created_at, t.ref.uri),
            reverse=True,
        )
        page = testimonies[offset:offset + page_size]
        more = offset + page_size < len(testimonies)
        view = StandingView(
            standing=state,
            testimonies=[TestimonyView.from_testimony(t) for t in page],
            more_available=more,
            cursor=str(offset + page_size) if more else None,
            mod_actions=self._mod_actions_for(subject_id, context_id, now),
        )
        data = view.to_dict()
        key = subject_id if context_id is None else f"{subject_id}#{context_id}"
        warning = self._save_projection(
            ProjectionKind.STANDING, key, state.to_dict(), state.version, now,
        )
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    def _mod_actions_for(
        self,
        subject_id: str,
        context_id: Optional[str],
        now: datetime,
    ) -> list[dict[str, Any]]:
        """Active or pending actions against an actor, newest first."""
        out = []
        for action in reversed(self._store.actions_about_actor(subject_id)):
            if action.kind in (ActionKind.APPEAL, ActionKind.REVERSE):
                continue
            if context_id is not None and action.context_id != context_id:
                continue
            if action.created_at > now:
                continue
            view = self._state_machine.derive(action.ref, now)
            if view.state not in (ActionState.ACTIVE, ActionState.PENDING):
                continue
            out.append({
                "uri": action.ref.uri,
                "action": action.kind.value,
                "severity": action.severity.value,
                "reason": action.reason,
                "state": view.state.value,
                "context": action.context_id,
                "created_at": format_timestamp(action.created_at),
                "expires_at": format_timestamp(action.expires_at),
            })
            if len(out) >= self._resolver.mod_actions_limit():
                break
        return out

    def get_authority(
        self,
        actor_id: str,
        context_id: str,
        capability: Union[Capability, str],
        at_time: Optional[datetime] = None,
    ) -> ServiceResult:
        """Whether the actor holds the capability at at_time (default now)."""
        at_time = at_time or self._clock()
        try:
            cap = Capability(capability)
        except ValueError:
            return ServiceResult(success=False, errors=[f"Unknown capability: {capability}"])
        return ServiceResult(success=True, data={
            "actor_id": actor_id,
            "context_id": context_id,
            "capability": cap.value,
            "at_time": format_timestamp(at_time),
            "has_authority": self._authority.has_authority(actor_id, context_id, cap, at_time),
            "roles": self._authority.roles_at(actor_id, context_id, at_time),
        })

    def ghost_capabilities(
        self,
        actor_id: str,
        context_id: str,
        referenced_action: Optional[Union[RecordRef, str]] = None,
        at_time: Optional[datetime] = None,
    ) -> ServiceResult:
        """Transitions available to an actor who may have lost their role."""
        at_time = at_time or self._clock()
        referenced_at = None
        if referenced_action is not None:
            try:
                action = self._require_action(_as_ref(referenced_action))
            except ValueError as e:
                return ServiceResult(success=False, errors=[str(e)])
            referenced_at = action.created_at
        assessment = self._ghost.assess(actor_id, context_id, at_time, referenced_at)
        return ServiceResult(success=True, data=assessment.to_dict())

    def get_testimony_window(
        self,
        ref: Union[RecordRef, str],
        include_post_window: bool = False,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Most recent window on an action (or on the action a hard reversal targets)."""
        now = now or self._clock()
        try:
            ref = _as_ref(ref)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        window = self._windows.window_for(ref, now)
        if window is None:
            return ServiceResult(success=False, errors=[f"No testimony window on {ref.uri}"])
        data = window.to_dict(include_post_window=include_post_window)
        warning = self._save_projection(
            ProjectionKind.WINDOW, window.subject_ref.uri, data, window.version, now,
        )
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    def get_post(self, ref: Union[RecordRef, str]) -> ServiceResult:
        try:
            view = self._posts.view(_as_ref(ref))
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        if view is None:
            return ServiceResult(success=False, errors=[f"Post not found: {ref}"])
        return ServiceResult(success=True, data=view.to_dict())

    def get_submolt_posts(
        self,
        context_id: str,
        limit: Optional[int] = None,
        sort: Union[FeedSort, str] = FeedSort.TIME,
        cursor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """One page of a submolt feed sorted by time, hot or top.

        limit defaults to the configured feed page size and is capped at
        the configured maximum. cursor, when present in the result,
        fetches the next page under the same sort.
        """
        now = now or self._clock()
        if not context_id:
            return ServiceResult(success=False, errors=["submolt is required"])
        try:
            sort = FeedSort(sort)
        except ValueError:
            allowed = ", ".join(s.value for s in FeedSort)
            return ServiceResult(success=False, errors=[
                f"Invalid sort {sort!r} (expected one of {allowed})",
            ])
        default_limit, max_limit = self._resolver.feed_limits()
        page_size = min(max(limit if limit is not None else default_limit, 1), max_limit)
        try:
            page = self._posts.posts_in(context_id, page_size, sort, cursor, now)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return ServiceResult(success=True, data={
            "submolt": context_id,
            "sort": sort.value,
            "posts": [v.to_dict() for v in page.posts],
            "cursor": page.cursor,
        })

    def get_submolt(self, ref: Union[RecordRef, str]) -> ServiceResult:
        try:
            view = self._submolts.get(_as_ref(ref))
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        if view is None:
            return ServiceResult(success=False, errors=[f"Submolt not found: {ref}"])
        return ServiceResult(success=True, data=view.to_dict())

    def list_submolts(
        self,
        owner_id: Optional[str] = None,
        agent_friendly: Optional[bool] = None,
    ) -> ServiceResult:
        views = self._submolts.listing(owner_id, agent_friendly)
        return ServiceResult(success=True, data={
            "submolts": [v.to_dict() for v in views],
        })

    def get_published_standing(
        self,
        subject_id: str,
        context_id: Optional[str] = None,
    ) -> ServiceResult:
        """Standing summaries other indexers published about an actor.

        These are claims, newest first. They never contribute to the
        standing this engine derives.
        """
        claims = [
            rec for rec in self._store.by_collection(Collection.STANDING)
            if isinstance(rec, PublishedStanding)
            and rec.subject_id == subject_id
            and (context_id is None or rec.context_id == context_id)
        ]
        claims.reverse()
        return ServiceResult(success=True, data={
            "subject_id": subject_id,
            "context_id": context_id,
            "claims": [
                {
                    "uri": c.ref.uri,
                    "issuer": c.issuer_id,
                    "context": c.context_id,
                    "state": c.state,
                    "phi": c.phi,
                    "total_contributions": c.total_contributions,
                    "positive_ratio": c.positive_ratio,
                    "created_at": format_timestamp(c.created_at),
                    "updated_at": format_timestamp(c.updated_at),
                }
                for c in claims
            ],
        })
    def audit_trail(self, ref: Union[RecordRef, str]) -> ServiceResult:
        """Every audit event naming a record, including after deletion."""
        try:
            uri = _as_ref(ref).uri
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return ServiceResult(success=True, data={
            "uri": uri,
            "events": [
                {
                    "event_id": e.event_id,
                    "kind": e.event_kind.value,
                    "timestamp_utc": e.timestamp_utc,
                    "actor_id": e.actor_id,
                    "payload": e.payload,
                }
                for e in self._event_log.events_for(uri)
            ],
        })

    # ------------------------------------------------------------------
    # Scheduled re-evaluation
    # ------------------------------------------------------------------

    def tick(self, now: Optional[datetime] = None) -> ServiceResult:
        """Retry due deferrals, dead-letter expired ones, close windows."""
        now = now or self._clock()
        retried = [self.ingest(item, now) for item in self._deferral.due(now)]
        expired = self._deferral.expire(now)
        for dead in expired:
            self._record_event(EventKind.RECORD_DEAD_LETTERED, dead.item.owner_id, {
                "uri": dead.uri,
                "missing": dead.missing.uri,
                "attempts": dead.attempts,
            }, now)
        if expired:
            self._persist_dead_letters()
        propagation = self._propagator.tick(now)
        return ServiceResult(success=True, data={
            "retried": len(retried),
            "accepted": sum(1 for r in retried if r.data.get("status") == "accepted"),
            "dead_lettered": len(expired),
            **propagation,
        })

    def dead_letters(self) -> list[dict[str, Any]]:
        return [d.to_dict() for d in self._deferral.dead_letters()]

    def retry_dead_letter(self, uri: str, now: Optional[datetime] = None) -> ServiceResult:
        """Resubmit a dead-lettered record for ingestion."""
        dead = self._deferral.take_dead_letter(uri)
        if dead is None:
            return ServiceResult(success=False, errors=[f"No dead letter for {uri}"])
        self._persist_dead_letters()
        return self.ingest(dead.item, now)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        return {
            "version": "0.1.0",
            "methodologies": self._resolver.methodology_ids(),
            "records": {
                "total": self._store.count,
                "by_collection": {
                    c.value: len(self._store.by_collection(c)) for c in Collection
                },
            },
            "ingestion": {
                "deferred": self._deferral.pending_count,
                "dead_letters": self._deferral.dead_letter_count,
            },
            "propagation": {
                "open_windows": self._propagator.open_window_count,
                "pending_recomputations": self._propagator.pending_recomputations,
            },
            "roles": {"grants": self._roles.grant_count},
            "audit_events": self._event_log.count,
            "projections": self._projections.count,
            "persistence_degraded": self._persistence_degraded,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _record_event(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        at: datetime,
    ) -> Optional[str]:
        """Append an audit event. Returns a warning string on write failure."""
        event = EventRecord.create(
            event_id=self._next_event_id(),
            event_kind=kind,
            actor_id=actor_id,
            payload=payload,
            timestamp_utc=at,
        )
        try:
            self._event_log.append(event)
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.warning("Audit log write failed for %s: %s", kind.value, e)
            return f"Persistence degraded: {e}; audit event {event.event_id} not written"

    def _save_projection(
        self,
        kind: ProjectionKind,
        key: str,
        payload: dict[str, Any],
        version: Optional[datetime],
        now: datetime,
    ) -> Optional[str]:
        try:
            self._projections.put(kind, key, payload, version, now)
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.warning("Projection write failed for %s: %s", key, e)
            return f"Persistence degraded: {e}; projection for {key} is stale"

    def _persist_dead_letters(self) -> None:
        try:
            self._projections.save_dead_letters(self.dead_letters())
        except OSError as e:
            self._persistence_degraded = True
            logger.warning("Dead-letter write failed: %s", e)


def _as_ref(ref: Union[RecordRef, str]) -> RecordRef:
    if isinstance(ref, RecordRef):
        return ref
    return RecordRef.parse(ref)


def _item_uri(item: InboundRecord) -> str:
    return f"at://{item.owner_id}/{item.record_type}/{item.key}"
