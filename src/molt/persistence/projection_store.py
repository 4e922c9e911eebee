"""Projection store — versioned, re-derivable views of derived entities.

Stores, per projection kind and subject key:
- the last computed payload (moderation action state, standing,
  testimony window),
- its version (highest created_at of any contributing record),
- when it was computed.

Nothing here is authoritative. Every projection can be dropped and
recomputed from the record graph; callers compare the stored version
against the newest record they know of to detect staleness.

The standing cache is a separate, in-memory read-through layer with a
time-to-live. It is advisory only and never persisted.

Dead letters are persisted alongside projections so records that never
resolved their references survive a restart for manual resolution.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from molt.models.records import format_timestamp, parse_timestamp
from molt.models.standing import StandingState

logger = logging.getLogger(__name__)


class ProjectionKind(str, enum.Enum):
    ACTION_STATE = "action_state"
    STANDING = "standing"
    WINDOW = "window"


@dataclass(frozen=True)
class Projection:
    kind: ProjectionKind
    key: str
    payload: dict[str, Any]
    version: Optional[datetime]
    computed_at: datetime

    def is_stale(self, latest_version: Optional[datetime]) -> bool:
        """True if a record newer than this projection's inputs is known."""
        if latest_version is None:
            return False
        if self.version is None:
            return True
        return latest_version > self.version


@dataclass(frozen=True)
class _CachedStanding:
    state: StandingState
    expires_at: datetime


class ProjectionStore:
    """Projection table with optional JSON file persistence.

    Usage:
        store = ProjectionStore(Path("data/projections.json"))
        store.put(ProjectionKind.ACTION_STATE, uri, payload, version, now)
        projection = store.get(ProjectionKind.ACTION_STATE, uri)
    """

    def __init__(
        self,
        storage_path: Optional[Path] = None,
        standing_ttl: timedelta = timedelta(seconds=60),
    ) -> None:
        self._path = storage_path
        self._projections: dict[tuple[str, str], Projection] = {}
        self._dead_letters: list[dict[str, Any]] = []
        self._standing_cache: dict[tuple[str, Optional[str], str], _CachedStanding] = {}
        self._standing_ttl = standing_ttl
        if storage_path is not None and storage_path.exists():
            self._load()

    def _load(self) -> None:
        with self._path.open("r", encoding="utf-8") as f:
            state = json.load(f)
        for entry in state.get("projections", []):
            version = entry.get("version")
            projection = Projection(
                kind=ProjectionKind(entry["kind"]),
                key=entry["key"],
                payload=entry["payload"],
                version=parse_timestamp(version) if version else None,
                computed_at=parse_timestamp(entry["computed_at"]),
            )
            self._projections[(projection.kind.value, projection.key)] = projection
        self._dead_letters = list(state.get("dead_letters", []))
        logger.info(
            "Loaded %d projections and %d dead letters from %s",
            len(self._projections), len(self._dead_letters), self._path,
        )

    def _save(self) -> None:
        if self._path is None:
            return
        state = {
            "projections": [
                {
                    "kind": p.kind.value,
                    "key": p.key,
                    "payload": p.payload,
                    "version": format_timestamp(p.version),
                    "computed_at": format_timestamp(p.computed_at),
                }
                for p in self._projections.values()
            ],
            "dead_letters": self._dead_letters,
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as f:
            json.dump(state, f, indent=2, sort_keys=True, ensure_ascii=False)

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    def put(
        self,
        kind: ProjectionKind,
        key: str,
        payload: dict[str, Any],
        version: Optional[datetime],
        computed_at: datetime,
    ) -> Projection:
        """Store a projection. Last write wins; derivation is pure."""
        projection = Projection(
            kind=kind,
            key=key,
            payload=payload,
            version=version,
            computed_at=computed_at,
        )
        self._projections[(kind.value, key)] = projection
        self._save()
        return projection

    def get(self, kind: ProjectionKind, key: str) -> Optional[Projection]:
        return self._projections.get((kind.value, key))

    def invalidate(self, kind: ProjectionKind, key: str) -> None:
        if self._projections.pop((kind.value, key), None) is not None:
            self._save()

    def clear(self) -> None:
        """Drop every projection. All of them are recomputable."""
        self._projections.clear()
        self._standing_cache.clear()
        self._save()

    @property
    def count(self) -> int:
        return len(self._projections)

    # ------------------------------------------------------------------
    # Advisory standing cache
    # ------------------------------------------------------------------

    def cache_standing(self, state: StandingState, now: datetime) -> None:
        key = (state.subject_id, state.context_id, state.methodology_id)
        self._standing_cache[key] = _CachedStanding(
            state=state,
            expires_at=now + self._standing_ttl,
        )

    def cached_standing(
        self,
        subject_id: str,
        context_id: Optional[str],
        methodology_id: str,
        now: datetime,
    ) -> Optional[StandingState]:
        entry = self._standing_cache.get((subject_id, context_id, methodology_id))
        if entry is None:
            return None
        if now >= entry.expires_at or now < entry.state.computed_at:
            del self._standing_cache[(subject_id, context_id, methodology_id)]
            return None
        return entry.state

    def invalidate_standing(self, subject_id: str) -> None:
        """Drop every cached standing of a subject, across contexts."""
        for key in [k for k in self._standing_cache if k[0] == subject_id]:
            del self._standing_cache[key]

    # ------------------------------------------------------------------
    # Dead letters
    # ------------------------------------------------------------------

    def save_dead_letters(self, entries: list[dict[str, Any]]) -> None:
        self._dead_letters = list(entries)
        self._save()

    def load_dead_letters(self) -> list[dict[str, Any]]:
        return list(self._dead_letters)
