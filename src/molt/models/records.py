"""Record models — the immutable, independently-authored records of the Molt protocol.

Every record lives in its author's repository and is addressed by a
RecordRef (owner DID + collection NSID + record key). Records are never
mutated in place: a later record supersedes an earlier one in effect
only, by referencing it.

The indexer holds read-derived projections. Nothing in this module
carries *state*: moderation state, standing and testimony windows are
derived from the graph of references between these records.

Each record kind is a frozen dataclass; `Record` is the tagged union
consumers must handle exhaustively.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Collection(str, enum.Enum):
    """Record collections (lexicon NSIDs) indexed by the engine."""
    MOD_ACTION = "app.molt.modAction"
    APPEAL = "app.molt.appeal"
    APPEAL_RESOLUTION = "app.molt.appealResolution"
    TESTIMONY = "app.molt.testimony"
    WINDOW_CLOSE = "app.molt.windowClose"
    POST = "app.molt.post"
    VOTE = "app.molt.vote"
    SUBMOLT = "app.molt.submolt"
    STANDING = "app.molt.standing"


class ActionKind(str, enum.Enum):
    """What a moderation action does to its subject."""
    REMOVE = "remove"
    WARN = "warn"
    PIN = "pin"
    APPROVE = "approve"
    BAN = "ban"
    ESCALATE = "escalate"
    REVERSE = "reverse"
    APPEAL = "appeal"


class Severity(str, enum.Enum):
    """Soft actions may be self-corrected; hard ones need gathered testimony to reverse."""
    SOFT = "soft"
    HARD = "hard"


class AppealCategory(str, enum.Enum):
    FACTUAL_ERROR = "factual_error"
    MISAPPLIED_POLICY = "misapplied_policy"
    CHANGED_CIRCUMSTANCES = "changed_circumstances"
    PROPORTIONALITY = "proportionality"
    PROCEDURAL = "procedural"


class ResolutionOutcome(str, enum.Enum):
    """Outcome of an appeal resolution.

    UPHELD / OVERTURNED / MODIFIED are terminal for their cycle.
    REMANDED reopens review and lets a new appeal/resolution pair be
    appended to the same logical case.
    """
    UPHELD = "upheld"
    OVERTURNED = "overturned"
    MODIFIED = "modified"
    REMANDED = "remanded"


class TestimonyCategory(str, enum.Enum):
    """Testimony polarity.

    Standing testimony about an actor uses positive/negative/neutral.
    Decision-support testimony about a record uses support/oppose/context-only.
    """
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"
    SUPPORT = "support"
    OPPOSE = "oppose"
    CONTEXT_ONLY = "context-only"


class StandingBasis(str, enum.Enum):
    """Why a witness claims standing to testify."""
    CONTENT_OWNER = "content-owner"
    AFFECTED_PARTY = "affected-party"
    HISTORICAL_INVOLVEMENT = "historical-involvement"
    COMMUNITY_MEMBER = "community-member"
    WITNESS = "witness"


class VoteDirection(str, enum.Enum):
    UP = "up"
    DOWN = "down"


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    Naive timestamps are taken to be UTC. Raises ValueError on garbage.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RecordRef:
    """Globally unique reference to a record: owner + collection + key.

    content_hash (the CID) is carried for integrity checks but does not
    take part in equality. Two strong refs to the same record compare
    equal even if only one of them carries the hash.
    """
    owner_id: str
    collection: str
    key: str
    content_hash: Optional[str] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        # Enum members hash by name; normalise so refs work as dict keys.
        if isinstance(self.collection, enum.Enum):
            object.__setattr__(self, "collection", self.collection.value)
        if not self.owner_id or not self.collection or not self.key:
            raise ValueError(
                f"Incomplete record reference: "
                f"{self.owner_id!r}/{self.collection!r}/{self.key!r}"
            )

    @property
    def uri(self) -> str:
        return f"at://{self.owner_id}/{self.collection}/{self.key}"

    @classmethod
    def parse(cls, uri: str, content_hash: Optional[str] = None) -> RecordRef:
        """Parse an `at://owner/collection/key` URI."""
        if not isinstance(uri, str) or not uri.startswith("at://"):
            raise ValueError(f"Not an at:// URI: {uri!r}")
        parts = uri[len("at://"):].split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Malformed record URI: {uri!r}")
        return cls(
            owner_id=parts[0],
            collection=parts[1],
            key=parts[2],
            content_hash=content_hash,
        )

    def is_collection(self, collection: Collection) -> bool:
        return self.collection == collection.value

    def __str__(self) -> str:
        return self.uri


# ---------------------------------------------------------------------------
# Record variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModerationAction:
    """A moderation decision authored by an operator in a community context.

    Exactly one of subject_post / subject_actor is set.
    Invariant (checked at ingestion): kind APPEAL carries appeals_to and
    kind REVERSE carries reverses.
    """
    ref: RecordRef
    operator_id: str
    context_id: str
    kind: ActionKind
    severity: Severity
    created_at: datetime
    subject_post: Optional[RecordRef] = None
    subject_actor: Optional[str] = None
    reason: str = ""
    labels: frozenset[str] = frozenset()
    appeals_to: Optional[RecordRef] = None
    reverses: Optional[RecordRef] = None
    expires_at: Optional[datetime] = None
    effective_at: Optional[datetime] = None

    @property
    def affected_actor_id(self) -> str:
        """The actor most directly affected: the banned user or the post author."""
        if self.subject_actor is not None:
            return self.subject_actor
        if self.subject_post is None:
            raise ValueError(f"Action {self.ref.uri} names neither an actor nor a post")
        return self.subject_post.owner_id

    @property
    def content_owner_id(self) -> Optional[str]:
        return self.subject_post.owner_id if self.subject_post is not None else None

    @property
    def target_ref(self) -> Optional[RecordRef]:
        return self.appeals_to or self.reverses


@dataclass(frozen=True)
class AppealEvidence:
    type: str
    value: str
    description: str = ""


@dataclass(frozen=True)
class Appeal:
    """A challenge to a moderation action, filed by someone with standing to it."""
    ref: RecordRef
    appellant_id: str
    subject: RecordRef
    grounds: str
    category: AppealCategory
    created_at: datetime
    representative_id: Optional[str] = None
    evidence: tuple[AppealEvidence, ...] = ()


@dataclass(frozen=True)
class AppealResolution:
    """A decision on an appeal by an actor holding authority in the action's context."""
    ref: RecordRef
    resolver_id: str
    appeal: RecordRef
    outcome: ResolutionOutcome
    created_at: datetime
    resolver_authority: str = ""
    mod_action: Optional[RecordRef] = None
    reasoning: str = ""
    modifications: Optional[str] = None
    remand_instructions: Optional[str] = None
    final_decision: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.outcome != ResolutionOutcome.REMANDED


@dataclass(frozen=True)
class Testimony:
    """An attributed, non-aggregable statement of witnessed fact.

    The subject is either an actor (standing testimony) or a record
    (decision-support testimony). Exactly one of subject_actor /
    subject_ref is set. A witness never testifies about themselves.
    """
    ref: RecordRef
    witness_id: str
    category: TestimonyCategory
    content: str
    created_at: datetime
    subject_actor: Optional[str] = None
    subject_ref: Optional[RecordRef] = None
    context_id: Optional[str] = None
    evidence: tuple[str, ...] = ()
    standing_basis: StandingBasis = StandingBasis.COMMUNITY_MEMBER
    standing_context: str = ""
    anonymous: bool = False

    @property
    def subject_id(self) -> str:
        if self.subject_actor is not None:
            return self.subject_actor
        if self.subject_ref is None:
            raise ValueError(f"Testimony {self.ref.uri} has no subject")
        return self.subject_ref.uri

    @property
    def about_actor(self) -> bool:
        return self.subject_actor is not None

    def business_key(self) -> tuple[Any, ...]:
        """Identity of the statement independent of which record carries it."""
        return (
            self.witness_id,
            self.subject_id,
            self.context_id,
            self.category.value,
            self.content.strip(),
        )


@dataclass(frozen=True)
class WindowClosure:
    """Early closure of a testimony window by an actor holding authority."""
    ref: RecordRef
    closer_id: str
    subject: RecordRef
    created_at: datetime
    reason: str = ""


@dataclass(frozen=True)
class Post:
    ref: RecordRef
    author_id: str
    text: str
    created_at: datetime
    context_id: Optional[str] = None
    reply_root: Optional[RecordRef] = None
    reply_parent: Optional[RecordRef] = None


@dataclass(frozen=True)
class Vote:
    ref: RecordRef
    voter_id: str
    subject: RecordRef
    direction: VoteDirection
    created_at: datetime


@dataclass(frozen=True)
class SubmoltRule:
    title: str
    description: str = ""


@dataclass(frozen=True)
class Submolt:
    """A community declared by its owner.

    The record's URI is the community's context id. Declared moderators
    are informational; authority comes from role grants only.
    """
    ref: RecordRef
    owner_id: str
    name: str
    created_at: datetime
    description: str = ""
    rules: tuple[SubmoltRule, ...] = ()
    moderators: tuple[str, ...] = ()
    agent_friendly: bool = False

    @property
    def context_id(self) -> str:
        return self.ref.uri


@dataclass(frozen=True)
class PublishedStanding:
    """A standing summary some other indexer published about an actor.

    Kept for display and audit. It never feeds the standing calculator,
    which derives standing from testimony alone.
    """
    ref: RecordRef
    issuer_id: str
    subject_id: str
    state: str
    created_at: datetime
    context_id: Optional[str] = None
    phi: Optional[float] = None
    total_contributions: int = 0
    positive_ratio: Optional[float] = None
    updated_at: Optional[datetime] = None


Record = Union[
    ModerationAction,
    Appeal,
    AppealResolution,
    Testimony,
    WindowClosure,
    Post,
    Vote,
    Submolt,
    PublishedStanding,
]


# ---------------------------------------------------------------------------
# Ingestion boundary
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InboundRecord:
    """One item from the external event stream, already authenticated.

    created_at is the logical (authored) time. received_at is when the
    indexer saw the item; it is the execution time used for authority
    checks and for late-arrival flags. Defaults to the service clock.
    """
    record_type: str
    owner_id: str
    key: str
    payload: dict[str, Any]
    created_at: datetime
    content_hash: Optional[str] = None
    received_at: Optional[datetime] = None

    @property
    def ref(self) -> RecordRef:
        return RecordRef(
            owner_id=self.owner_id,
            collection=self.record_type,
            key=self.key,
            content_hash=self.content_hash,
        )
