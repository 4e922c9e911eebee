"""Schema parsing — turns inbound stream items into tagged record variants.

Each accepted collection has one parser. A parser checks shape only:
required fields, enum values, reference syntax, timestamps and the
author claims (`operatorDid`, `resolverDid`, `appellant`) that must
agree with the authenticated owner. Whether a referenced record
exists, and whether the author holds authority for it, is decided
later by the ingestion pipeline.

Anything malformed raises SchemaInvalid. A record type outside the
known collections raises UnhandledRecordType so the caller can log it
on its own branch instead of silently ignoring it.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from molt.errors import SchemaInvalid, UnhandledRecordType
from molt.models.records import (
    ActionKind,
    Appeal,
    AppealCategory,
    AppealEvidence,
    AppealResolution,
    Collection,
    InboundRecord,
    ModerationAction,
    Post,
    PublishedStanding,
    Record,
    RecordRef,
    ResolutionOutcome,
    Severity,
    StandingBasis,
    Submolt,
    SubmoltRule,
    Testimony,
    TestimonyCategory,
    Vote,
    VoteDirection,
    WindowClosure,
    parse_timestamp,
)


STANDING_CATEGORIES = frozenset({
    TestimonyCategory.POSITIVE,
    TestimonyCategory.NEGATIVE,
    TestimonyCategory.NEUTRAL,
})

DECISION_POSITIONS = frozenset({
    TestimonyCategory.SUPPORT,
    TestimonyCategory.OPPOSE,
    TestimonyCategory.CONTEXT_ONLY,
})


def parse_record(item: InboundRecord) -> Record:
    """Parse an inbound item into its record variant.

    Raises UnhandledRecordType for unknown collections and
    SchemaInvalid for malformed payloads.
    """
    parser = _PARSERS.get(item.record_type)
    if parser is None:
        raise UnhandledRecordType(f"Unhandled record type: {item.record_type!r}")
    if not isinstance(item.payload, dict):
        raise SchemaInvalid(f"{item.record_type}: payload must be an object")
    declared = item.payload.get("$type")
    if declared is not None and declared != item.record_type:
        raise SchemaInvalid(
            f"{item.record_type}: $type {declared!r} does not match collection"
        )
    try:
        ref = item.ref
    except ValueError as exc:
        raise SchemaInvalid(str(exc)) from exc
    return parser(item, ref)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _required(payload: dict[str, Any], key: str, collection: str) -> Any:
    value = payload.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise SchemaInvalid(f"{collection}: missing required field {key!r}")
    return value


def _required_str(payload: dict[str, Any], key: str, collection: str) -> str:
    value = _required(payload, key, collection)
    if not isinstance(value, str):
        raise SchemaInvalid(f"{collection}: {key!r} must be a string")
    return value


def _string(payload: dict[str, Any], key: str, collection: str, default: str = "") -> str:
    value = payload.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise SchemaInvalid(f"{collection}: {key!r} must be a string")
    return value


def _optional_string(payload: dict[str, Any], key: str, collection: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise SchemaInvalid(f"{collection}: {key!r} must be a string")
    return value


def _bool(payload: dict[str, Any], key: str, collection: str) -> bool:
    value = payload.get(key, False)
    if not isinstance(value, bool):
        raise SchemaInvalid(f"{collection}: {key!r} must be a boolean")
    return value


def _ref(value: Any, key: str, collection: str) -> RecordRef:
    """Accept a strong ref object `{"uri", "cid"}` or a bare at:// URI."""
    if isinstance(value, dict):
        uri, cid = value.get("uri"), value.get("cid")
    else:
        uri, cid = value, None
    try:
        return RecordRef.parse(uri, content_hash=cid)
    except ValueError as exc:
        raise SchemaInvalid(f"{collection}: {key!r} is not a record reference") from exc


def _optional_ref(payload: dict[str, Any], key: str, collection: str) -> Optional[RecordRef]:
    value = payload.get(key)
    if value is None:
        return None
    return _ref(value, key, collection)


def _enum(enum_cls: type, value: Any, key: str, collection: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(m.value for m in enum_cls)
        raise SchemaInvalid(
            f"{collection}: invalid {key} {value!r} (expected one of {allowed})"
        ) from exc


def _timestamp(payload: dict[str, Any], key: str, collection: str):
    value = payload.get(key)
    if value is None:
        return None
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError) as exc:
        raise SchemaInvalid(f"{collection}: {key!r} is not a timestamp") from exc


def _author_claim(
    payload: dict[str, Any], key: str, owner_id: str, collection: str,
) -> None:
    claimed = payload.get(key)
    if claimed is not None and claimed != owner_id:
        raise SchemaInvalid(
            f"{collection}: {key} {claimed!r} does not match record owner {owner_id!r}"
        )


def _string_list(payload: dict[str, Any], key: str, collection: str) -> list[str]:
    value = payload.get(key, [])
    if not isinstance(value, list):
        raise SchemaInvalid(f"{collection}: {key!r} must be a list")
    out = []
    for entry in value:
        if isinstance(entry, dict) and "uri" in entry:
            entry = entry["uri"]
        if not isinstance(entry, str):
            raise SchemaInvalid(f"{collection}: {key!r} entries must be strings")
        out.append(entry)
    return out


# ---------------------------------------------------------------------------
# Per-collection parsers
# ---------------------------------------------------------------------------

def _parse_mod_action(item: InboundRecord, ref: RecordRef) -> ModerationAction:
    c = item.record_type
    p = item.payload
    _author_claim(p, "operatorDid", item.owner_id, c)

    subject = _required(p, "subject", c)
    if not isinstance(subject, dict):
        raise SchemaInvalid(f"{c}: subject must be an object")
    has_post = subject.get("post") is not None
    has_user = subject.get("user") is not None
    if has_post == has_user:
        raise SchemaInvalid(f"{c}: subject must name exactly one of post or user")
    subject_post = _ref(subject["post"], "subject.post", c) if has_post else None
    subject_actor = None
    if has_user:
        subject_actor = subject["user"]
        if not isinstance(subject_actor, str):
            raise SchemaInvalid(f"{c}: subject.user must be a DID string")

    kind = _enum(ActionKind, _required(p, "action", c), "action", c)
    severity = _enum(Severity, p.get("severity", Severity.SOFT.value), "severity", c)
    appeals_to = _optional_ref(p, "appealsTo", c)
    reverses = _optional_ref(p, "reverses", c)
    if kind == ActionKind.APPEAL and appeals_to is None:
        raise SchemaInvalid(f"{c}: action=appeal requires appealsTo")
    if kind == ActionKind.REVERSE and reverses is None:
        raise SchemaInvalid(f"{c}: action=reverse requires reverses")

    return ModerationAction(
        ref=ref,
        operator_id=item.owner_id,
        context_id=_required_str(p, "submolt", c),
        kind=kind,
        severity=severity,
        created_at=item.created_at,
        subject_post=subject_post,
        subject_actor=subject_actor,
        reason=_string(p, "reason", c),
        labels=frozenset(_string_list(p, "labels", c)),
        appeals_to=appeals_to,
        reverses=reverses,
        expires_at=_timestamp(p, "expiresAt", c),
        effective_at=_timestamp(p, "effectiveAt", c),
    )


def _parse_appeal(item: InboundRecord, ref: RecordRef) -> Appeal:
    c = item.record_type
    p = item.payload
    representative = _optional_string(p, "representative", c)
    appellant = _optional_string(p, "appellant", c)
    if representative is not None:
        if representative != item.owner_id:
            raise SchemaInvalid(
                f"{c}: representative {representative!r} must be the record owner"
            )
        if appellant is None:
            raise SchemaInvalid(f"{c}: a representative must name the appellant")
    else:
        if appellant is not None and appellant != item.owner_id:
            raise SchemaInvalid(
                f"{c}: appellant {appellant!r} does not match record owner"
            )
        appellant = item.owner_id

    raw_evidence = p.get("evidence", [])
    if not isinstance(raw_evidence, list):
        raise SchemaInvalid(f"{c}: 'evidence' must be a list")
    evidence = []
    for entry in raw_evidence:
        if not isinstance(entry, dict) or "type" not in entry or "value" not in entry:
            raise SchemaInvalid(f"{c}: evidence entries need type and value")
        evidence.append(AppealEvidence(
            type=str(entry["type"]),
            value=str(entry["value"]),
            description=str(entry.get("description", "")),
        ))

    return Appeal(
        ref=ref,
        appellant_id=appellant,
        subject=_ref(_required(p, "subject", c), "subject", c),
        grounds=_required_str(p, "grounds", c),
        category=_enum(AppealCategory, _required(p, "category", c), "category", c),
        created_at=item.created_at,
        representative_id=representative,
        evidence=tuple(evidence),
    )


def _parse_resolution(item: InboundRecord, ref: RecordRef) -> AppealResolution:
    c = item.record_type
    p = item.payload
    _author_claim(p, "resolverDid", item.owner_id, c)
    return AppealResolution(
        ref=ref,
        resolver_id=item.owner_id,
        appeal=_ref(_required(p, "appeal", c), "appeal", c),
        outcome=_enum(ResolutionOutcome, _required(p, "outcome", c), "outcome", c),
        created_at=item.created_at,
        resolver_authority=_string(p, "resolverAuthority", c),
        mod_action=_optional_ref(p, "modAction", c),
        reasoning=_string(p, "reasoning", c),
        modifications=_optional_string(p, "modifications", c),
        remand_instructions=_optional_string(p, "remandInstructions", c),
        final_decision=_bool(p, "finalDecision", c),
    )


def _parse_testimony(item: InboundRecord, ref: RecordRef) -> Testimony:
    c = item.record_type
    p = item.payload
    subject = _required(p, "subject", c)
    subject_actor = None
    subject_ref = None
    if isinstance(subject, str) and not subject.startswith("at://"):
        subject_actor = subject
    else:
        subject_ref = _ref(subject, "subject", c)

    if p.get("category") is not None:
        category = _enum(TestimonyCategory, p["category"], "category", c)
        if category not in STANDING_CATEGORIES:
            raise SchemaInvalid(f"{c}: {category.value!r} is a position, not a category")
    elif p.get("position") is not None:
        category = _enum(TestimonyCategory, p["position"], "position", c)
        if category not in DECISION_POSITIONS:
            raise SchemaInvalid(f"{c}: {category.value!r} is a category, not a position")
    else:
        raise SchemaInvalid(f"{c}: one of category or position is required")

    context = p.get("context")
    if isinstance(context, dict):
        context = _ref(context, "context", c).uri
    elif context is not None and not isinstance(context, str):
        raise SchemaInvalid(f"{c}: 'context' must be a string or reference")

    return Testimony(
        ref=ref,
        witness_id=item.owner_id,
        category=category,
        content=_required_str(p, "content", c),
        created_at=item.created_at,
        subject_actor=subject_actor,
        subject_ref=subject_ref,
        context_id=context,
        evidence=tuple(_string_list(p, "evidence", c)),
        standing_basis=_enum(
            StandingBasis,
            p.get("standingBasis", StandingBasis.COMMUNITY_MEMBER.value),
            "standingBasis",
            c,
        ),
        standing_context=_string(p, "standingContext", c),
        anonymous=_bool(p, "anonymous", c),
    )


def _parse_window_close(item: InboundRecord, ref: RecordRef) -> WindowClosure:
    c = item.record_type
    p = item.payload
    return WindowClosure(
        ref=ref,
        closer_id=item.owner_id,
        subject=_ref(_required(p, "subject", c), "subject", c),
        created_at=item.created_at,
        reason=_string(p, "reason", c),
    )


def _parse_post(item: InboundRecord, ref: RecordRef) -> Post:
    c = item.record_type
    p = item.payload
    reply_root = None
    reply_parent = _optional_ref(p, "replyTo", c)
    reply = p.get("reply")
    if reply is not None:
        if not isinstance(reply, dict):
            raise SchemaInvalid(f"{c}: 'reply' must be an object")
        reply_root = _optional_ref(reply, "root", c)
        reply_parent = _optional_ref(reply, "parent", c) or reply_parent
    if reply_parent is not None and reply_root is None:
        reply_root = reply_parent
    return Post(
        ref=ref,
        author_id=item.owner_id,
        text=_required_str(p, "text", c),
        created_at=item.created_at,
        context_id=_required_str(p, "submolt", c),
        reply_root=reply_root,
        reply_parent=reply_parent,
    )


def _parse_vote(item: InboundRecord, ref: RecordRef) -> Vote:
    c = item.record_type
    p = item.payload
    return Vote(
        ref=ref,
        voter_id=item.owner_id,
        subject=_ref(_required(p, "subject", c), "subject", c),
        direction=_enum(VoteDirection, _required(p, "direction", c), "direction", c),
        created_at=item.created_at,
    )


def _parse_submolt(item: InboundRecord, ref: RecordRef) -> Submolt:
    c = item.record_type
    p = item.payload
    raw_rules = p.get("rules", [])
    if not isinstance(raw_rules, list):
        raise SchemaInvalid(f"{c}: 'rules' must be a list")
    rules = []
    for entry in raw_rules:
        if isinstance(entry, str) and entry.strip():
            rules.append(SubmoltRule(title=entry))
        elif isinstance(entry, dict):
            rules.append(SubmoltRule(
                title=_required_str(entry, "title", c),
                description=_string(entry, "description", c),
            ))
        else:
            raise SchemaInvalid(f"{c}: rules need a title")
    return Submolt(
        ref=ref,
        owner_id=item.owner_id,
        name=_required_str(p, "name", c),
        created_at=item.created_at,
        description=_string(p, "description", c),
        rules=tuple(rules),
        moderators=tuple(_string_list(p, "moderators", c)),
        agent_friendly=_bool(p, "isAgentFriendly", c),
    )


def _parse_standing(item: InboundRecord, ref: RecordRef) -> PublishedStanding:
    c = item.record_type
    p = item.payload
    subject = _required_str(p, "subject", c)
    if subject.startswith("at://"):
        raise SchemaInvalid(f"{c}: standing is published about an actor, not a record")
    context = p.get("context")
    if isinstance(context, dict):
        context = _ref(context, "context", c).uri
    elif context is not None and not isinstance(context, str):
        raise SchemaInvalid(f"{c}: 'context' must be a string or reference")
    contributions = p.get("totalContributions", 0)
    if isinstance(contributions, bool) or not isinstance(contributions, int) or contributions < 0:
        raise SchemaInvalid(f"{c}: 'totalContributions' must be a non-negative integer")
    return PublishedStanding(
        ref=ref,
        issuer_id=item.owner_id,
        subject_id=subject,
        state=_required_str(p, "state", c),
        created_at=item.created_at,
        context_id=context,
        phi=_unit_number(p, "phiScore", c),
        total_contributions=contributions,
        positive_ratio=_unit_number(p, "positiveRatio", c),
        updated_at=_timestamp(p, "updatedAt", c),
    )


def _unit_number(payload: dict[str, Any], key: str, collection: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SchemaInvalid(f"{collection}: {key!r} must be a number")
    if not 0.0 <= value <= 1.0:
        raise SchemaInvalid(f"{collection}: {key!r} must be within [0, 1]")
    return float(value)


_PARSERS: dict[str, Callable[[InboundRecord, RecordRef], Record]] = {
    Collection.MOD_ACTION.value: _parse_mod_action,
    Collection.APPEAL.value: _parse_appeal,
    Collection.APPEAL_RESOLUTION.value: _parse_resolution,
    Collection.TESTIMONY.value: _parse_testimony,
    Collection.WINDOW_CLOSE.value: _parse_window_close,
    Collection.POST.value: _parse_post,
    Collection.VOTE.value: _parse_vote,
    Collection.SUBMOLT.value: _parse_submolt,
    Collection.STANDING.value: _parse_standing,
}
