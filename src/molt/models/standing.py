"""Standing models — methodology, derived standing state and its query view.

Standing is never authored. It is derived from a testimony set by a
disclosed methodology and is always traceable back to both. Phi is a
lossy summary ("useful lie"): every consumer-facing response carries
the methodology and the raw testimonies alongside it, and the view
types here make that structural: a StandingView cannot be built
without its testimony list.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from molt.models.records import Testimony, format_timestamp


class StandingTier(str, enum.Enum):
    """Discrete standing classification, driven by count and consistency.

    UNKNOWN: no testimony.
    NASCENT: 1-2 testimonies.
    EMERGING: 3-9, or 10+ blocked by a corroborated unresolved negative.
    ESTABLISHED: 10+ with no corroborated unresolved negative.
    AUTHORITY_ELIGIBLE: established + explicit community endorsement.
    """
    UNKNOWN = "unknown"
    NASCENT = "nascent"
    EMERGING = "emerging"
    ESTABLISHED = "established"
    AUTHORITY_ELIGIBLE = "authority_eligible"


@dataclass(frozen=True)
class Methodology:
    """A versioned, fully disclosed standing methodology."""
    methodology_id: str
    description: str
    category_values: dict[str, float]
    recency_half_life_days: float
    confidence_base: float
    neutral_phi: float
    emerging_min: int
    established_min: int
    corroboration_min_witnesses: int
    high_standing_phi: float

    @property
    def half_life(self) -> timedelta:
        return timedelta(days=self.recency_half_life_days)

    def weights(self) -> dict[str, Any]:
        """Every parameter that influences the output."""
        return {
            "category_values": dict(self.category_values),
            "recency_half_life_days": self.recency_half_life_days,
            "confidence_base": self.confidence_base,
            "neutral_phi": self.neutral_phi,
            "tier_thresholds": {
                "emerging_min": self.emerging_min,
                "established_min": self.established_min,
            },
            "corroboration": {
                "min_independent_witnesses": self.corroboration_min_witnesses,
                "high_standing_phi": self.high_standing_phi,
            },
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.methodology_id,
            "description": self.description,
            "weights": self.weights(),
        }


@dataclass(frozen=True)
class StandingState:
    """Derived standing of a subject in a context.

    version is the newest created_at among contributing testimonies,
    so a caller can tell "no evidence" (count 0, version None) from
    "evidence exists but is old or sparse".
    """
    subject_id: str
    context_id: Optional[str]
    tier: StandingTier
    phi: float
    confidence: float
    computed_at: datetime
    methodology: Methodology
    testimony_count: int
    version: Optional[datetime] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def methodology_id(self) -> str:
        return self.methodology.methodology_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "context_id": self.context_id,
            "tier": self.tier.value,
            "phi": self.phi,
            "confidence": self.confidence,
            "computed_at": format_timestamp(self.computed_at),
            "methodology_id": self.methodology_id,
            "testimony_count": self.testimony_count,
            "version": format_timestamp(self.version),
        }


@dataclass(frozen=True)
class TestimonyView:
    """A testimony as exposed to callers. Anonymous witnesses are masked."""
    uri: str
    witness_id: Optional[str]
    category: str
    content: str
    standing_basis: str
    anonymous: bool
    created_at: datetime
    context_id: Optional[str] = None
    evidence: tuple[str, ...] = ()

    @classmethod
    def from_testimony(cls, testimony: Testimony) -> TestimonyView:
        return cls(
            uri=testimony.ref.uri,
            witness_id=None if testimony.anonymous else testimony.witness_id,
            category=testimony.category.value,
            content=testimony.content,
            standing_basis=testimony.standing_basis.value,
            anonymous=testimony.anonymous,
            created_at=testimony.created_at,
            context_id=testimony.context_id,
            evidence=testimony.evidence,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "uri": self.uri,
            "witness": self.witness_id,
            "category": self.category,
            "content": self.content,
            "standing_basis": self.standing_basis,
            "anonymous": self.anonymous,
            "context": self.context_id,
            "evidence": list(self.evidence),
            "created_at": format_timestamp(self.created_at),
        }


@dataclass(frozen=True)
class StandingView:
    """Response shape of the standing query.

    testimonies is required and never silently truncated: when a page
    does not hold them all, more_available is set and cursor points at
    the next page.
    """
    standing: StandingState
    testimonies: list[TestimonyView]
    more_available: bool
    cursor: Optional[str] = None
    mod_actions: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.standing.subject_id,
            "context_id": self.standing.context_id,
            "phi": self.standing.phi,
            "confidence": self.standing.confidence,
            "tier": self.standing.tier.value,
            "methodology": self.standing.methodology.to_dict(),
            "computed_at": format_timestamp(self.standing.computed_at),
            "version": format_timestamp(self.standing.version),
            "testimony_count": self.standing.testimony_count,
            "testimonies": [t.to_dict() for t in self.testimonies],
            "more_available": self.more_available,
            "cursor": self.cursor,
            "mod_actions": list(self.mod_actions),
        }
