"""Post index — posts, reply counts and vote tallies.

Votes are idempotent by business key (voter, subject), not by record
key. A voter has at most one live vote per subject:
- same direction again      → unchanged, nothing stored
- the opposite direction    → vote change, the old vote is replaced
- vote deleted (unvote)     → tally decremented

Posts and votes may reference records on other repositories that the
indexer has not seen; a reply to an unknown parent or a vote on an
unknown post is still indexed and counts once the target shows up.

Submolt feeds sort by time (newest first), top (score) or hot (score
plus replies, decayed by age) and page with an opaque cursor. Ties
fall back to creation time, then URI, so pages never overlap.
"""

from __future__ import annotations

import base64
import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from molt.models.records import (
    Collection,
    Post,
    RecordRef,
    Vote,
    VoteDirection,
    format_timestamp,
)
from molt.persistence.record_store import RecordStore

logger = logging.getLogger(__name__)


class VoteChange(str, enum.Enum):
    CREATED = "created"
    UNCHANGED = "unchanged"
    CHANGED = "changed"


class FeedSort(str, enum.Enum):
    TIME = "time"
    HOT = "hot"
    TOP = "top"


@dataclass(frozen=True)
class PostView:
    post: Post
    upvotes: int
    downvotes: int
    reply_count: int

    @property
    def score(self) -> int:
        return self.upvotes - self.downvotes

    def to_dict(self) -> dict[str, Any]:
        return {
            "uri": self.post.ref.uri,
            "author": self.post.author_id,
            "submolt": self.post.context_id,
            "text": self.post.text,
            "reply_to": self.post.reply_parent.uri if self.post.reply_parent else None,
            "created_at": format_timestamp(self.post.created_at),
            "upvote_count": self.upvotes,
            "downvote_count": self.downvotes,
            "reply_count": self.reply_count,
            "score": self.score,
        }


@dataclass(frozen=True)
class FeedPage:
    posts: tuple[PostView, ...]
    cursor: Optional[str] = None


class PostIndex:
    """Vote business-key index over the record store.

    Thread-safety: this class is not thread-safe.
    """

    def __init__(
        self,
        store: RecordStore,
        hot_gravity: float = 1.5,
        hot_offset_hours: float = 2.0,
    ) -> None:
        self._store = store
        self._hot_gravity = hot_gravity
        self._hot_offset_hours = hot_offset_hours
        self._votes: dict[tuple[str, RecordRef], RecordRef] = {}

    def add_post(self, post: Post, received_at: datetime) -> None:
        self._store.put(post, received_at)
        if post.reply_parent is not None and not self._store.contains(post.reply_parent):
            logger.warning(
                "Reply %s references unknown parent %s", post.ref.uri, post.reply_parent.uri,
            )

    def remove_post(self, ref: RecordRef) -> Optional[Post]:
        record = self._store.get(ref)
        if not isinstance(record, Post):
            return None
        self._store.remove(ref)
        return record

    def classify_vote(self, vote: Vote) -> tuple[VoteChange, Optional[Vote]]:
        """How a vote relates to the voter's live vote on the same subject."""
        current_ref = self._votes.get((vote.voter_id, vote.subject))
        current = self._store.get(current_ref) if current_ref else None
        if not isinstance(current, Vote):
            return VoteChange.CREATED, None
        if current.direction == vote.direction:
            return VoteChange.UNCHANGED, current
        return VoteChange.CHANGED, current

    def apply_vote(self, vote: Vote, received_at: datetime) -> tuple[VoteChange, Optional[Vote]]:
        """Index a vote, replacing the voter's previous one if it differs."""
        change, current = self.classify_vote(vote)
        if change == VoteChange.UNCHANGED:
            return change, current
        if current is not None:
            self._store.remove(current.ref)
        self._store.put(vote, received_at)
        self._votes[(vote.voter_id, vote.subject)] = vote.ref
        return change, current

    def remove_vote(self, ref: RecordRef) -> Optional[Vote]:
        record = self._store.get(ref)
        if not isinstance(record, Vote):
            return None
        self._store.remove(ref)
        if self._votes.get((record.voter_id, record.subject)) == ref:
            del self._votes[(record.voter_id, record.subject)]
        return record

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def tally(self, subject: RecordRef) -> tuple[int, int]:
        """(upvotes, downvotes) on a subject."""
        up = down = 0
        for rec in self._store.referencing(subject, Collection.VOTE):
            if rec.direction == VoteDirection.UP:
                up += 1
            else:
                down += 1
        return up, down

    def reply_count(self, ref: RecordRef) -> int:
        return sum(
            1 for rec in self._store.referencing(ref, Collection.POST)
            if rec.reply_parent == ref
        )

    def view(self, ref: RecordRef) -> Optional[PostView]:
        post = self._store.get(ref)
        if not isinstance(post, Post):
            return None
        return self._view_of(post)

    def _view_of(self, post: Post) -> PostView:
        up, down = self.tally(post.ref)
        return PostView(
            post=post,
            upvotes=up,
            downvotes=down,
            reply_count=self.reply_count(post.ref),
        )

    def posts_in(
        self,
        context_id: str,
        limit: int = 50,
        sort: FeedSort = FeedSort.TIME,
        cursor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> FeedPage:
        """One page of a submolt feed.

        The cursor carries the sort key of the last post on the previous
        page and the next page starts strictly after it. Raises
        ValueError for a cursor that does not decode or that was issued
        for another sort.
        """
        after = _decode_cursor(cursor, sort) if cursor else None
        now = now or datetime.now(timezone.utc)
        views = [
            self._view_of(p) for p in self._store.by_collection(Collection.POST)
            if p.context_id == context_id
        ]
        keyed = sorted(
            ((self._sort_key(v, sort, now), v) for v in views),
            key=lambda kv: kv[0],
            reverse=True,
        )
        if after is not None:
            keyed = [kv for kv in keyed if kv[0] < after]
        page = keyed[:limit]
        next_cursor = None
        if len(keyed) > limit and page:
            next_cursor = _encode_cursor(sort, page[-1][0])
        return FeedPage(posts=tuple(view for _, view in page), cursor=next_cursor)

    def hotness(self, view: PostView, now: datetime) -> float:
        """Engagement decayed by age: (score + replies) / (hours + offset) ** gravity."""
        hours = max((now - view.post.created_at).total_seconds() / 3600.0, 0.0)
        engagement = view.score + view.reply_count
        return engagement / (hours + self._hot_offset_hours) ** self._hot_gravity

    def _sort_key(self, view: PostView, sort: FeedSort, now: datetime) -> tuple:
        tail = (view.post.created_at.timestamp(), view.post.ref.uri)
        if sort == FeedSort.TOP:
            return (view.score,) + tail
        if sort == FeedSort.HOT:
            return (self.hotness(view, now),) + tail
        return tail


def _encode_cursor(sort: FeedSort, key: tuple) -> str:
    raw = json.dumps({"sort": sort.value, "key": list(key)}, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def _decode_cursor(cursor: str, sort: FeedSort) -> tuple:
    try:
        raw = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8"))
    except ValueError as exc:
        raise ValueError(f"Invalid cursor: {cursor!r}") from exc
    if not isinstance(raw, dict) or raw.get("sort") != sort.value:
        raise ValueError(f"Cursor {cursor!r} was not issued for the {sort.value} feed")
    key = raw.get("key")
    expected = 2 if sort == FeedSort.TIME else 3
    if (
        not isinstance(key, list)
        or len(key) != expected
        or not isinstance(key[-1], str)
        or any(isinstance(n, bool) or not isinstance(n, (int, float)) for n in key[:-1])
    ):
        raise ValueError(f"Invalid cursor: {cursor!r}")
    return tuple(key)
