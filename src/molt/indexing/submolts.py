"""Submolt directory — communities declared by their owners.

A submolt record only names and describes a community. Its URI is the
context id posts, actions and role grants use to scope themselves to
it. Nothing here confers authority.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from molt.models.records import Collection, Post, RecordRef, Submolt, format_timestamp
from molt.persistence.record_store import RecordStore


@dataclass(frozen=True)
class SubmoltView:
    submolt: Submolt
    post_count: int

    def to_dict(self) -> dict[str, Any]:
        s = self.submolt
        return {
            "uri": s.ref.uri,
            "owner": s.owner_id,
            "name": s.name,
            "description": s.description,
            "rules": [{"title": r.title, "description": r.description} for r in s.rules],
            "moderators": list(s.moderators),
            "is_agent_friendly": s.agent_friendly,
            "created_at": format_timestamp(s.created_at),
            "post_count": self.post_count,
        }


class SubmoltDirectory:
    """Read side over indexed submolt records.

    Thread-safety: this class is not thread-safe.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    def get(self, ref: RecordRef) -> Optional[SubmoltView]:
        record = self._store.get(ref)
        if not isinstance(record, Submolt):
            return None
        return SubmoltView(submolt=record, post_count=self._post_count(record))

    def listing(
        self,
        owner_id: Optional[str] = None,
        agent_friendly: Optional[bool] = None,
    ) -> list[SubmoltView]:
        """Submolts, oldest first, optionally by owner or agent policy."""
        views = []
        for record in self._store.by_collection(Collection.SUBMOLT):
            if not isinstance(record, Submolt):
                continue
            if owner_id is not None and record.owner_id != owner_id:
                continue
            if agent_friendly is not None and record.agent_friendly != agent_friendly:
                continue
            views.append(SubmoltView(submolt=record, post_count=self._post_count(record)))
        return views

    def _post_count(self, submolt: Submolt) -> int:
        return sum(
            1 for p in self._store.by_collection(Collection.POST)
            if isinstance(p, Post) and p.context_id == submolt.context_id
        )
