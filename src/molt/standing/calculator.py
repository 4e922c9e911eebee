"""Standing calculator — phi, confidence and tier from a testimony set.

Pure function of (testimonies, methodology, now). No I/O, no clock
reads, no hidden state: the same inputs always produce the same
StandingState, so redundant recomputation on any number of workers is
safe and a cached result is always re-derivable.

For molt-v1:
    recency_weight = 0.5 ^ (age / half_life)
    raw_score      = Σ(value · weight) / Σ weight           ∈ [-1, 1]
    phi            = clamp((raw_score + 1) / 2, 0, 1)
    confidence     = clamp(1 - base ^ count, 0, 1)

Tier is driven by count and consistency, not by phi:
    1-2 testimonies        → nascent
    3-9                    → emerging
    10+                    → established, unless an unresolved negative
                             is corroborated by enough independent
                             high-standing witnesses (then emerging)
    established + endorsed → authority_eligible

A witness's negative counts as resolved once the same witness files a
later positive testimony about the same subject.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Mapping, Optional

from molt.models.records import Testimony, TestimonyCategory
from molt.models.standing import Methodology, StandingState, StandingTier
from molt.policy.resolver import PolicyResolver


NEGATIVE_CATEGORIES = frozenset({TestimonyCategory.NEGATIVE, TestimonyCategory.OPPOSE})


def recency_weight(age: timedelta, half_life: timedelta) -> float:
    """Exponential decay weight. Future-dated testimony counts as fresh."""
    age_s = max(age.total_seconds(), 0.0)
    return 0.5 ** (age_s / half_life.total_seconds())


def confidence_for(count: int, base: float) -> float:
    return _clamp(1.0 - base ** count)


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


class StandingCalculator:
    """Computes standing states using a disclosed methodology.

    Usage:
        calc = StandingCalculator(resolver)
        state = calc.compute_standing(testimonies, None, now, subject_id="did:plc:x")
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    def compute_standing(
        self,
        testimonies: Iterable[Testimony],
        methodology: Optional[Methodology],
        now: datetime,
        subject_id: str = "",
        context_id: Optional[str] = None,
        endorsed: bool = False,
        witness_phi: Optional[Mapping[str, float]] = None,
    ) -> StandingState:
        """Derive standing for one subject.

        methodology None means the configured default. witness_phi maps
        witness ids to their own phi; witnesses missing from it are
        taken at the methodology's neutral phi and so never count as
        high-standing corroboration.
        """
        m = methodology or self._resolver.methodology()
        items = sorted(testimonies, key=lambda t: (t.created_at, t.ref.uri))

        if not items:
            return StandingState(
                subject_id=subject_id,
                context_id=context_id,
                tier=StandingTier.UNKNOWN,
                phi=m.neutral_phi,
                confidence=0.0,
                computed_at=now,
                methodology=m,
                testimony_count=0,
                version=None,
                details={"endorsed": endorsed},
            )

        weighted_sum = 0.0
        total_weight = 0.0
        counts: dict[str, int] = {}
        for t in items:
            value = m.category_values.get(t.category.value)
            if value is None:
                raise ValueError(
                    f"Methodology {m.methodology_id} has no value for {t.category.value}"
                )
            w = recency_weight(now - t.created_at, m.half_life)
            weighted_sum += value * w
            total_weight += w
            counts[t.category.value] = counts.get(t.category.value, 0) + 1

        raw_score = weighted_sum / total_weight if total_weight > 0 else 0.0
        phi = _clamp((raw_score + 1.0) / 2.0)
        confidence = confidence_for(len(items), m.confidence_base)

        blockers = self._corroborated_negatives(items, m, witness_phi or {})
        tier = self._classify(len(items), m, blocked=bool(blockers), endorsed=endorsed)

        return StandingState(
            subject_id=subject_id,
            context_id=context_id,
            tier=tier,
            phi=phi,
            confidence=confidence,
            computed_at=now,
            methodology=m,
            testimony_count=len(items),
            version=items[-1].created_at,
            details={
                "weighted_sum": weighted_sum,
                "total_weight": total_weight,
                "raw_score": raw_score,
                "category_counts": counts,
                "corroborating_witnesses": blockers,
                "endorsed": endorsed,
            },
        )

    # ------------------------------------------------------------------
    # Tier classification
    # ------------------------------------------------------------------

    @staticmethod
    def _classify(
        count: int,
        m: Methodology,
        blocked: bool,
        endorsed: bool,
    ) -> StandingTier:
        if count == 0:
            return StandingTier.UNKNOWN
        if count < m.emerging_min:
            return StandingTier.NASCENT
        if count < m.established_min or blocked:
            return StandingTier.EMERGING
        if endorsed:
            return StandingTier.AUTHORITY_ELIGIBLE
        return StandingTier.ESTABLISHED

    @staticmethod
    def _corroborated_negatives(
        items: list[Testimony],
        m: Methodology,
        witness_phi: Mapping[str, float],
    ) -> list[str]:
        """High-standing witnesses with an unresolved negative.

        Returns the witness ids when there are enough of them to block
        the established tier, otherwise an empty list.
        """
        outstanding: dict[str, bool] = {}
        for t in items:
            if t.category in NEGATIVE_CATEGORIES:
                outstanding[t.witness_id] = True
            elif t.witness_id in outstanding and m.category_values.get(t.category.value, 0) > 0:
                outstanding[t.witness_id] = False
        witnesses = sorted(
            w for w, unresolved in outstanding.items()
            if unresolved and witness_phi.get(w, m.neutral_phi) >= m.high_standing_phi
        )
        if len(witnesses) < m.corroboration_min_witnesses:
            return []
        return witnesses
