"""Testimony ledger — the admission boundary for testimony.

Everything that can be wrong with a testimony is caught here, before
it reaches storage, so rejected testimony never enters any standing
computation:
- Self-testimony (witness == subject actor) → SelfTestimonyRejected.
- A decision-support testimony about an action or appeal the indexer
  has not seen yet → InvalidReference (retryable).
- A standing-basis claim the referenced action does not support →
  StandingRequired. content-owner must own the post, affected-party
  must be the affected actor, historical-involvement must be backed
  by role history (permission ghost resolver).

Idempotency is by business key (witness, subject, context, category,
content): re-submitting the same statement under a new record key
returns the testimony already admitted.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from molt.authority.ghost import PermissionGhostResolver
from molt.errors import InvalidReference, SelfTestimonyRejected, StandingRequired
from molt.models.records import (
    Appeal,
    Collection,
    ModerationAction,
    RecordRef,
    StandingBasis,
    Testimony,
)
from molt.persistence.record_store import RecordStore
from molt.policy.resolver import Capability


class TestimonyLedger:
    """Validates, de-duplicates and indexes testimony.

    Thread-safety: this class is not thread-safe.
    """

    def __init__(self, store: RecordStore, ghost: PermissionGhostResolver) -> None:
        self._store = store
        self._ghost = ghost
        self._by_key: dict[tuple, RecordRef] = {}

    def admit(self, testimony: Testimony, received_at: datetime) -> Optional[Testimony]:
        """Validate a testimony.

        Returns the already-admitted testimony if this one states the
        same thing, None if it is new and may be stored. Raises on any
        violation.
        """
        if testimony.subject_actor is not None and testimony.witness_id == testimony.subject_actor:
            raise SelfTestimonyRejected(
                f"{testimony.witness_id} cannot testify about themselves"
            )
        if testimony.subject_ref is not None:
            self._check_basis(testimony, testimony.subject_ref, received_at)

        existing_ref = self._by_key.get(testimony.business_key())
        if existing_ref is not None:
            existing = self._store.get(existing_ref)
            if isinstance(existing, Testimony):
                return existing
        return None

    def record(self, testimony: Testimony, received_at: datetime) -> None:
        """Store an admitted testimony."""
        self._store.put(testimony, received_at)
        self._by_key[testimony.business_key()] = testimony.ref

    def delete(self, ref: RecordRef) -> Optional[Testimony]:
        """Remove a testimony from prospective computation."""
        record = self._store.get(ref)
        if not isinstance(record, Testimony):
            return None
        self._store.remove(ref)
        if self._by_key.get(record.business_key()) == ref:
            del self._by_key[record.business_key()]
        return record

    def testimonies_about(
        self,
        subject_id: str,
        context_id: Optional[str] = None,
    ) -> list[Testimony]:
        """Standing testimony about an actor, oldest first."""
        return self._store.testimonies_about_actor(subject_id, context_id)

    def testimonies_on(self, ref: RecordRef) -> list[Testimony]:
        """Decision-support testimony about a record, oldest first."""
        return self._store.referencing(ref, Collection.TESTIMONY)  # type: ignore[return-value]

    def testimonies_by(self, witness_id: str) -> list[Testimony]:
        return [
            t for t in self._store.by_collection(Collection.TESTIMONY)
            if t.witness_id == witness_id
        ]

    # ------------------------------------------------------------------
    # Standing basis
    # ------------------------------------------------------------------

    def _check_basis(
        self,
        testimony: Testimony,
        ref: RecordRef,
        received_at: datetime,
    ) -> None:
        if not (ref.is_collection(Collection.MOD_ACTION) or ref.is_collection(Collection.APPEAL)):
            return
        target = self._store.get(ref)
        if target is None:
            raise InvalidReference(
                f"Testimony subject {ref.uri} is not indexed yet", missing=ref,
            )
        action = target
        if isinstance(target, Appeal):
            action = self._store.get(target.subject)
        if not isinstance(action, ModerationAction):
            raise InvalidReference(f"Testimony subject {ref.uri} is not a moderation decision")

        basis = testimony.standing_basis
        witness = testimony.witness_id
        if basis == StandingBasis.CONTENT_OWNER:
            if action.content_owner_id != witness:
                raise StandingRequired(
                    f"{witness} does not own the content of {action.ref.uri}"
                )
        elif basis == StandingBasis.AFFECTED_PARTY:
            if action.affected_actor_id != witness:
                raise StandingRequired(
                    f"{witness} is not the party affected by {action.ref.uri}"
                )
        elif basis == StandingBasis.HISTORICAL_INVOLVEMENT:
            assessment = self._ghost.assess(
                witness, action.context_id, received_at, referenced_at=action.created_at,
            )
            if not assessment.allows(Capability.FILE_HISTORICAL_TESTIMONY):
                raise StandingRequired(
                    f"{witness} held no role in {action.context_id} when "
                    f"{action.ref.uri} was created"
                )
