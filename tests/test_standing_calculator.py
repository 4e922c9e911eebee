"""Unit tests for the standing calculator.

Covers the phi/confidence formulas, tier classification and the
corroborated-negative block. Pure computation — no side effects.
"""

import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from molt.models.records import RecordRef, Testimony, TestimonyCategory
from molt.models.standing import StandingTier
from molt.policy.resolver import PolicyResolver
from molt.standing.calculator import StandingCalculator, confidence_for, recency_weight

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
SUBJECT = "did:plc:subject"


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def calc(resolver: PolicyResolver) -> StandingCalculator:
    return StandingCalculator(resolver)


_counter = 0


def _make_testimony(
    witness: str = "did:plc:w1",
    category: TestimonyCategory = TestimonyCategory.POSITIVE,
    age_days: float = 1.0,
    subject: str = SUBJECT,
    context: str | None = "submolt:rust",
) -> Testimony:
    global _counter
    _counter += 1
    return Testimony(
        ref=RecordRef(witness, "app.molt.testimony", f"t{_counter}"),
        witness_id=witness,
        category=category,
        content=f"statement {_counter}",
        created_at=NOW - timedelta(days=age_days),
        subject_actor=subject,
        context_id=context,
    )


def _positives(n: int, age_days: float = 1.0) -> list[Testimony]:
    return [_make_testimony(witness=f"did:plc:pos{i}", age_days=age_days) for i in range(n)]


class TestFormulas:
    def test_recency_weight_half_life(self) -> None:
        assert recency_weight(timedelta(days=30), timedelta(days=30)) == pytest.approx(0.5)

    def test_recency_weight_future_is_fresh(self) -> None:
        assert recency_weight(timedelta(days=-2), timedelta(days=30)) == 1.0

    def test_confidence_zero_count(self) -> None:
        assert confidence_for(0, 0.9) == 0.0

    def test_confidence_monotonic(self) -> None:
        values = [confidence_for(n, 0.9) for n in range(50)]
        assert values == sorted(values)
        assert values[-1] < 1.0
        assert confidence_for(500, 0.9) == pytest.approx(1.0)


class TestComputeStanding:
    def test_worked_example(self, calc: StandingCalculator) -> None:
        testimonies = [
            _make_testimony("did:plc:a", TestimonyCategory.POSITIVE, 5),
            _make_testimony("did:plc:b", TestimonyCategory.POSITIVE, 5),
            _make_testimony("did:plc:c", TestimonyCategory.NEGATIVE, 40),
        ]
        state = calc.compute_standing(testimonies, None, NOW, subject_id=SUBJECT)
        assert state.details["weighted_sum"] == pytest.approx(1.385, abs=1e-3)
        assert state.details["total_weight"] == pytest.approx(2.179, abs=1e-3)
        assert state.details["raw_score"] == pytest.approx(0.636, abs=1e-3)
        assert state.phi == pytest.approx(0.818, abs=1e-3)
        assert state.confidence == pytest.approx(0.271, abs=1e-3)
        assert state.tier == StandingTier.EMERGING
        assert state.testimony_count == 3

    def test_empty_set(self, calc: StandingCalculator) -> None:
        state = calc.compute_standing([], None, NOW, subject_id=SUBJECT)
        assert state.phi == 0.5
        assert state.confidence == 0.0
        assert state.tier == StandingTier.UNKNOWN
        assert state.version is None

    def test_deterministic(self, calc: StandingCalculator) -> None:
        testimonies = _positives(4) + [
            _make_testimony("did:plc:n", TestimonyCategory.NEGATIVE, 12),
        ]
        first = calc.compute_standing(testimonies, None, NOW, subject_id=SUBJECT)
        second = calc.compute_standing(list(reversed(testimonies)), None, NOW, subject_id=SUBJECT)
        assert (first.phi, first.confidence, first.tier) == (
            second.phi, second.confidence, second.tier,
        )

    def test_phi_clamped(self, calc: StandingCalculator) -> None:
        negatives = [
            _make_testimony(f"did:plc:n{i}", TestimonyCategory.NEGATIVE) for i in range(3)
        ]
        state = calc.compute_standing(negatives, None, NOW, subject_id=SUBJECT)
        assert state.phi == 0.0

    def test_version_is_newest_testimony(self, calc: StandingCalculator) -> None:
        testimonies = [_make_testimony(age_days=10), _make_testimony(age_days=2)]
        state = calc.compute_standing(testimonies, None, NOW, subject_id=SUBJECT)
        assert state.version == NOW - timedelta(days=2)

    def test_methodology_disclosed(self, calc: StandingCalculator) -> None:
        state = calc.compute_standing(_positives(1), None, NOW, subject_id=SUBJECT)
        assert state.methodology_id == "molt-v1"
        assert state.methodology.weights()["recency_half_life_days"] == 30


class TestTiers:
    def test_nascent(self, calc: StandingCalculator) -> None:
        assert calc.compute_standing(_positives(2), None, NOW).tier == StandingTier.NASCENT

    def test_emerging_bounds(self, calc: StandingCalculator) -> None:
        assert calc.compute_standing(_positives(3), None, NOW).tier == StandingTier.EMERGING
        assert calc.compute_standing(_positives(9), None, NOW).tier == StandingTier.EMERGING

    def test_established(self, calc: StandingCalculator) -> None:
        assert calc.compute_standing(_positives(10), None, NOW).tier == StandingTier.ESTABLISHED

    def test_authority_eligible_needs_endorsement(self, calc: StandingCalculator) -> None:
        state = calc.compute_standing(_positives(10), None, NOW, endorsed=True)
        assert state.tier == StandingTier.AUTHORITY_ELIGIBLE

    def test_endorsement_does_not_lift_emerging(self, calc: StandingCalculator) -> None:
        state = calc.compute_standing(_positives(5), None, NOW, endorsed=True)
        assert state.tier == StandingTier.EMERGING


class TestCorroboratedNegatives:
    def _negatives(self, *witnesses: str) -> list[Testimony]:
        return [_make_testimony(w, TestimonyCategory.NEGATIVE) for w in witnesses]

    def test_two_high_standing_witnesses_block(self, calc: StandingCalculator) -> None:
        testimonies = _positives(10) + self._negatives("did:plc:x", "did:plc:y")
        state = calc.compute_standing(
            testimonies, None, NOW,
            witness_phi={"did:plc:x": 0.9, "did:plc:y": 0.75},
        )
        assert state.tier == StandingTier.EMERGING
        assert state.details["corroborating_witnesses"] == ["did:plc:x", "did:plc:y"]

    def test_single_witness_does_not_block(self, calc: StandingCalculator) -> None:
        testimonies = _positives(10) + self._negatives("did:plc:x")
        state = calc.compute_standing(testimonies, None, NOW, witness_phi={"did:plc:x": 0.95})
        assert state.tier == StandingTier.ESTABLISHED

    def test_low_standing_witnesses_do_not_block(self, calc: StandingCalculator) -> None:
        testimonies = _positives(10) + self._negatives("did:plc:x", "did:plc:y")
        state = calc.compute_standing(
            testimonies, None, NOW,
            witness_phi={"did:plc:x": 0.9, "did:plc:y": 0.6},
        )
        assert state.tier == StandingTier.ESTABLISHED

    def test_unknown_witnesses_count_as_neutral(self, calc: StandingCalculator) -> None:
        testimonies = _positives(10) + self._negatives("did:plc:x", "did:plc:y")
        state = calc.compute_standing(testimonies, None, NOW)
        assert state.tier == StandingTier.ESTABLISHED

    def test_later_positive_resolves_negative(self, calc: StandingCalculator) -> None:
        testimonies = _positives(10) + [
            _make_testimony("did:plc:x", TestimonyCategory.NEGATIVE, age_days=10),
            _make_testimony("did:plc:y", TestimonyCategory.NEGATIVE, age_days=10),
            _make_testimony("did:plc:y", TestimonyCategory.POSITIVE, age_days=2),
        ]
        state = calc.compute_standing(
            testimonies, None, NOW,
            witness_phi={"did:plc:x": 0.9, "did:plc:y": 0.9},
        )
        assert state.tier == StandingTier.ESTABLISHED
        assert state.details["corroborating_witnesses"] == []
