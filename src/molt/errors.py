"""Error taxonomy for ingestion and derivation.

All errors derive from ValueError so callers that treat domain
violations as ValueError keep working. Each class carries a stable
`code` used in ServiceResult payloads and audit events.

Ingestion policy per class:
- SchemaInvalid: dropped and logged, never retried.
- InvalidReference: deferred with backoff, dead-lettered after the
  deferral window.
- AuthorityRequired / StandingRequired: surfaced to the caller.
- SelfTestimonyRejected: rejected, never stored.
- DuplicateRecord / DuplicateVote: success when semantically identical
  to what is already indexed, rejection when conflicting.
- WindowClosed: never raised at ingestion. Late testimony is kept and
  flagged with this code instead.
"""

from __future__ import annotations

from typing import Optional

from molt.models.records import RecordRef


class MoltError(ValueError):
    """Base class for every domain error raised by the engine."""
    code = "molt_error"


class SchemaInvalid(MoltError):
    code = "schema_invalid"


class UnhandledRecordType(SchemaInvalid):
    """A record type outside the known collections."""
    code = "unhandled_record_type"


class InvalidReference(MoltError):
    """A cross-reference target is not (yet) indexed, or is of the wrong kind.

    `missing` is set when the target may still arrive; retrying makes
    sense only then.
    """
    code = "invalid_reference"

    def __init__(self, message: str, missing: Optional[RecordRef] = None) -> None:
        super().__init__(message)
        self.missing = missing

    @property
    def retryable(self) -> bool:
        return self.missing is not None


class AuthorityRequired(MoltError):
    code = "authority_required"


class StandingRequired(AuthorityRequired):
    """The author lacks standing (not authority) for what the record claims."""
    code = "standing_required"


class SelfTestimonyRejected(MoltError):
    code = "self_testimony_rejected"


class DuplicateRecord(MoltError):
    code = "duplicate_record"


class DuplicateVote(DuplicateRecord):
    code = "duplicate_vote"


class WindowClosed(MoltError):
    code = "window_closed"


class ImmutableRecord(MoltError):
    code = "immutable_record"
