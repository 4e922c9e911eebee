"""Tests for record models and schema parsing."""

import pytest
from datetime import datetime, timezone

from molt.errors import SchemaInvalid, UnhandledRecordType
from molt.ingest.schema import parse_record
from molt.models.records import (
    ActionKind,
    Appeal,
    AppealCategory,
    AppealResolution,
    Collection,
    InboundRecord,
    ModerationAction,
    Post,
    PublishedStanding,
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
    format_timestamp,
    parse_timestamp,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
MOD = "did:plc:mod"
ALICE = "did:plc:alice"
POST_URI = f"at://{ALICE}/app.molt.post/p1"
ACTION_URI = f"at://{MOD}/app.molt.modAction/a1"


def _item(collection: Collection | str, payload: dict, owner: str = MOD, key: str = "k1") -> InboundRecord:
    record_type = collection.value if isinstance(collection, Collection) else collection
    return InboundRecord(
        record_type=record_type,
        owner_id=owner,
        key=key,
        payload=payload,
        created_at=NOW,
    )


class TestRecordRef:
    def test_parse_and_uri(self) -> None:
        ref = RecordRef.parse(POST_URI, content_hash="bafy1")
        assert ref.owner_id == ALICE
        assert ref.collection == "app.molt.post"
        assert ref.key == "p1"
        assert ref.uri == POST_URI

    def test_hash_not_part_of_equality(self) -> None:
        assert RecordRef.parse(POST_URI, "bafy1") == RecordRef.parse(POST_URI)
        assert hash(RecordRef.parse(POST_URI, "bafy1")) == hash(RecordRef.parse(POST_URI))

    def test_enum_collection_normalised(self) -> None:
        ref = RecordRef(ALICE, Collection.POST, "p1")
        assert ref == RecordRef.parse(POST_URI)
        assert ref.is_collection(Collection.POST)

    @pytest.mark.parametrize("uri", ["", "http://x/y/z", "at://a/b", "at://a//c"])
    def test_malformed_uri(self, uri: str) -> None:
        with pytest.raises(ValueError):
            RecordRef.parse(uri)


class TestTimestamps:
    def test_zulu_round_trip(self) -> None:
        parsed = parse_timestamp("2026-03-01T12:00:00Z")
        assert parsed == NOW
        assert format_timestamp(parsed) == "2026-03-01T12:00:00Z"

    def test_naive_is_utc(self) -> None:
        assert parse_timestamp("2026-03-01T12:00:00") == NOW

    def test_garbage(self) -> None:
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")


class TestRecordGuards:
    def test_action_without_subject_has_no_affected_actor(self) -> None:
        action = ModerationAction(
            ref=RecordRef.parse(ACTION_URI),
            operator_id=MOD,
            context_id="submolt:rust",
            kind=ActionKind.REMOVE,
            severity=Severity.HARD,
            created_at=NOW,
        )
        assert action.content_owner_id is None
        with pytest.raises(ValueError, match="neither an actor nor a post"):
            action.affected_actor_id

    def test_testimony_without_subject_has_no_subject_id(self) -> None:
        testimony = Testimony(
            ref=RecordRef("did:plc:bob", Collection.TESTIMONY, "t1"),
            witness_id="did:plc:bob",
            category=TestimonyCategory.POSITIVE,
            content="helpful",
            created_at=NOW,
        )
        with pytest.raises(ValueError, match="no subject"):
            testimony.subject_id


class TestParseModAction:
    def test_post_subject(self) -> None:
        record = parse_record(_item(Collection.MOD_ACTION, {
            "subject": {"post": {"uri": POST_URI, "cid": "bafy1"}},
            "action": "remove",
            "severity": "hard",
            "reason": "spam",
            "submolt": "submolt:rust",
        }))
        assert isinstance(record, ModerationAction)
        assert record.kind == ActionKind.REMOVE
        assert record.severity == Severity.HARD
        assert record.affected_actor_id == ALICE
        assert record.content_owner_id == ALICE
        assert record.subject_post.content_hash == "bafy1"

    def test_user_subject_defaults_soft(self) -> None:
        record = parse_record(_item(Collection.MOD_ACTION, {
            "subject": {"user": ALICE},
            "action": "ban",
            "submolt": "submolt:rust",
            "expiresAt": "2026-04-01T00:00:00Z",
        }))
        assert record.severity == Severity.SOFT
        assert record.affected_actor_id == ALICE
        assert record.content_owner_id is None
        assert record.expires_at == datetime(2026, 4, 1, tzinfo=timezone.utc)

    def test_subject_must_be_exclusive(self) -> None:
        with pytest.raises(SchemaInvalid):
            parse_record(_item(Collection.MOD_ACTION, {
                "subject": {"post": POST_URI, "user": ALICE},
                "action": "remove",
                "submolt": "submolt:rust",
            }))

    def test_reverse_requires_target(self) -> None:
        with pytest.raises(SchemaInvalid, match="reverses"):
            parse_record(_item(Collection.MOD_ACTION, {
                "subject": {"user": ALICE},
                "action": "reverse",
                "submolt": "submolt:rust",
            }))

    def test_appeal_requires_target(self) -> None:
        with pytest.raises(SchemaInvalid, match="appealsTo"):
            parse_record(_item(Collection.MOD_ACTION, {
                "subject": {"user": ALICE},
                "action": "appeal",
                "submolt": "submolt:rust",
            }, owner=ALICE))

    def test_operator_claim_must_match_owner(self) -> None:
        with pytest.raises(SchemaInvalid, match="operatorDid"):
            parse_record(_item(Collection.MOD_ACTION, {
                "subject": {"user": ALICE},
                "action": "warn",
                "submolt": "submolt:rust",
                "operatorDid": "did:plc:someone-else",
            }))

    def test_unknown_action(self) -> None:
        with pytest.raises(SchemaInvalid):
            parse_record(_item(Collection.MOD_ACTION, {
                "subject": {"user": ALICE},
                "action": "vaporise",
                "submolt": "submolt:rust",
            }))

    def test_type_mismatch(self) -> None:
        with pytest.raises(SchemaInvalid, match=r"\$type"):
            parse_record(_item(Collection.MOD_ACTION, {
                "$type": "app.molt.post",
                "subject": {"user": ALICE},
                "action": "warn",
                "submolt": "submolt:rust",
            }))


class TestParseAppeal:
    def test_owner_is_appellant(self) -> None:
        record = parse_record(_item(Collection.APPEAL, {
            "subject": ACTION_URI,
            "grounds": "not spam",
            "category": "factual_error",
            "evidence": [{"type": "link", "value": "https://example.org"}],
        }, owner=ALICE))
        assert isinstance(record, Appeal)
        assert record.appellant_id == ALICE
        assert record.category == AppealCategory.FACTUAL_ERROR
        assert record.evidence[0].value == "https://example.org"

    def test_representative_names_appellant(self) -> None:
        record = parse_record(_item(Collection.APPEAL, {
            "subject": ACTION_URI,
            "grounds": "not spam",
            "category": "procedural",
            "representative": "did:plc:rep",
            "appellant": ALICE,
        }, owner="did:plc:rep"))
        assert record.appellant_id == ALICE
        assert record.representative_id == "did:plc:rep"

    def test_appellant_must_match_owner(self) -> None:
        with pytest.raises(SchemaInvalid):
            parse_record(_item(Collection.APPEAL, {
                "subject": ACTION_URI,
                "grounds": "x",
                "category": "procedural",
                "appellant": ALICE,
            }, owner="did:plc:bob"))

    def test_grounds_required(self) -> None:
        with pytest.raises(SchemaInvalid, match="grounds"):
            parse_record(_item(Collection.APPEAL, {
                "subject": ACTION_URI,
                "category": "procedural",
            }, owner=ALICE))


class TestParseResolution:
    def test_fields(self) -> None:
        record = parse_record(_item(Collection.APPEAL_RESOLUTION, {
            "appeal": f"at://{ALICE}/app.molt.appeal/ap1",
            "modAction": ACTION_URI,
            "outcome": "modified",
            "modifications": "reduced to warning",
            "finalDecision": True,
        }))
        assert isinstance(record, AppealResolution)
        assert record.outcome == ResolutionOutcome.MODIFIED
        assert record.final_decision is True
        assert record.is_terminal

    def test_remand_not_terminal(self) -> None:
        record = parse_record(_item(Collection.APPEAL_RESOLUTION, {
            "appeal": f"at://{ALICE}/app.molt.appeal/ap1",
            "outcome": "remanded",
        }))
        assert not record.is_terminal

    def test_final_decision_must_be_bool(self) -> None:
        with pytest.raises(SchemaInvalid):
            parse_record(_item(Collection.APPEAL_RESOLUTION, {
                "appeal": f"at://{ALICE}/app.molt.appeal/ap1",
                "outcome": "upheld",
                "finalDecision": "yes",
            }))


class TestParseTestimony:
    def test_actor_subject(self) -> None:
        record = parse_record(_item(Collection.TESTIMONY, {
            "subject": ALICE,
            "category": "positive",
            "content": "helpful reviewer",
            "context": "submolt:rust",
        }, owner="did:plc:bob"))
        assert isinstance(record, Testimony)
        assert record.subject_actor == ALICE
        assert record.subject_ref is None
        assert record.standing_basis == StandingBasis.COMMUNITY_MEMBER
        assert record.about_actor

    def test_record_subject_with_position(self) -> None:
        record = parse_record(_item(Collection.TESTIMONY, {
            "subject": {"uri": ACTION_URI},
            "position": "oppose",
            "content": "the post was on topic",
            "standingBasis": "content-owner",
        }, owner=ALICE))
        assert record.subject_ref == RecordRef.parse(ACTION_URI)
        assert record.category == TestimonyCategory.OPPOSE
        assert record.standing_basis == StandingBasis.CONTENT_OWNER

    def test_category_and_position_not_interchangeable(self) -> None:
        with pytest.raises(SchemaInvalid):
            parse_record(_item(Collection.TESTIMONY, {
                "subject": ALICE,
                "category": "support",
                "content": "x",
            }, owner="did:plc:bob"))

    def test_needs_category_or_position(self) -> None:
        with pytest.raises(SchemaInvalid):
            parse_record(_item(Collection.TESTIMONY, {
                "subject": ALICE,
                "content": "x",
            }, owner="did:plc:bob"))

    def test_business_key_ignores_record_key(self) -> None:
        payload = {"subject": ALICE, "category": "positive", "content": " same words "}
        a = parse_record(_item(Collection.TESTIMONY, payload, owner="did:plc:bob", key="1"))
        b = parse_record(_item(Collection.TESTIMONY, payload, owner="did:plc:bob", key="2"))
        assert a.business_key() == b.business_key()


class TestParseOther:
    def test_window_close(self) -> None:
        record = parse_record(_item(Collection.WINDOW_CLOSE, {
            "subject": ACTION_URI, "reason": "enough heard",
        }))
        assert isinstance(record, WindowClosure)
        assert record.closer_id == MOD

    def test_post_reply_root_defaults_to_parent(self) -> None:
        record = parse_record(_item(Collection.POST, {
            "text": "reply",
            "submolt": "submolt:rust",
            "replyTo": POST_URI,
        }, owner="did:plc:bob"))
        assert isinstance(record, Post)
        assert record.reply_parent == RecordRef.parse(POST_URI)
        assert record.reply_root == record.reply_parent

    def test_post_needs_submolt(self) -> None:
        with pytest.raises(SchemaInvalid, match="submolt"):
            parse_record(_item(Collection.POST, {"text": "hi"}, owner=ALICE))

    def test_vote(self) -> None:
        record = parse_record(_item(Collection.VOTE, {
            "subject": POST_URI, "direction": "down",
        }, owner="did:plc:bob"))
        assert isinstance(record, Vote)
        assert record.direction == VoteDirection.DOWN

    def test_unknown_collection(self) -> None:
        with pytest.raises(UnhandledRecordType):
            parse_record(_item("app.molt.poll", {"question": "?"}))

    def test_bad_reference(self) -> None:
        with pytest.raises(SchemaInvalid):
            parse_record(_item(Collection.VOTE, {
                "subject": "not-a-uri", "direction": "up",
            }, owner="did:plc:bob"))


class TestParseCommunityRecords:
    def test_submolt(self) -> None:
        record = parse_record(_item(Collection.SUBMOLT, {
            "$type": "app.molt.submolt",
            "name": "AI Discussion",
            "description": "Agents welcome",
            "isAgentFriendly": True,
            "rules": [
                {"title": "Be transparent", "description": "Use logicTrace"},
                "No spam",
            ],
            "moderators": [MOD],
        }, owner=ALICE, key="ai-discussion"))
        assert isinstance(record, Submolt)
        assert record.owner_id == ALICE
        assert record.context_id == f"at://{ALICE}/app.molt.submolt/ai-discussion"
        assert record.rules == (
            SubmoltRule("Be transparent", "Use logicTrace"),
            SubmoltRule("No spam"),
        )
        assert record.moderators == (MOD,)
        assert record.agent_friendly is True

    def test_submolt_needs_name(self) -> None:
        with pytest.raises(SchemaInvalid, match="name"):
            parse_record(_item(Collection.SUBMOLT, {"description": "?"}, owner=ALICE))

    def test_submolt_rule_needs_title(self) -> None:
        with pytest.raises(SchemaInvalid, match="title"):
            parse_record(_item(Collection.SUBMOLT, {
                "name": "n", "rules": [{"description": "d"}],
            }, owner=ALICE))

    def test_published_standing(self) -> None:
        record = parse_record(_item(Collection.STANDING, {
            "subject": ALICE,
            "context": "submolt:rust",
            "state": "established",
            "phiScore": 0.82,
            "totalContributions": 14,
            "positiveRatio": 0.9,
            "updatedAt": "2026-03-01T11:00:00Z",
        }, owner="did:plc:indexer"))
        assert isinstance(record, PublishedStanding)
        assert record.issuer_id == "did:plc:indexer"
        assert record.subject_id == ALICE
        assert record.phi == 0.82
        assert record.total_contributions == 14
        assert record.updated_at == datetime(2026, 3, 1, 11, 0, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("payload, match", [
        ({"subject": POST_URI, "state": "established"}, "about an actor"),
        ({"subject": ALICE, "state": "established", "phiScore": 1.5}, "within"),
        ({"subject": ALICE, "state": "established", "totalContributions": -1}, "non-negative"),
        ({"subject": ALICE}, "state"),
    ])
    def test_published_standing_rejects(self, payload: dict, match: str) -> None:
        with pytest.raises(SchemaInvalid, match=match):
            parse_record(_item(Collection.STANDING, payload, owner="did:plc:indexer"))
