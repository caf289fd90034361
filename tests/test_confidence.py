"""Tests for instinct_engine.confidence module.

Tests cover:
- Bayesian-smoothed confidence from counters
- Success and failure updates
- Idempotent staleness decay toward 0.5
- Contradiction detection
"""

import random
from datetime import datetime, timedelta, timezone

import pytest

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _make_instinct(**overrides):
    """Helper to create test instincts."""
    from instinct_engine.models import Domain, Instinct

    values = dict(
        id="commit-secrets-0000000001",
        trigger="when committing code",
        action="Never commit secrets",
        domain=Domain.SECURITY,
        confidence=0.3,
        source="session-observation",
        applications=0,
        successes=0,
        evidence=("obs:1",),
        status="active",
        created_at=T0,
        updated_at=T0,
    )
    values.update(overrides)
    return Instinct(**values)


class TestBayesianConfidence:
    """Tests for bayesian_confidence function."""

    def test_no_applications_is_uninformative(self):
        from instinct_engine.confidence import bayesian_confidence

        assert bayesian_confidence(0, 0) == 0.5

    def test_formula(self):
        from instinct_engine.confidence import bayesian_confidence

        assert bayesian_confidence(1, 1) == pytest.approx(2 / 3)
        assert bayesian_confidence(0, 1) == pytest.approx(1 / 3)
        assert bayesian_confidence(7, 10) == pytest.approx(8 / 12)

    def test_never_reaches_bounds(self):
        from instinct_engine.confidence import bayesian_confidence

        assert 0.0 < bayesian_confidence(0, 1000) < bayesian_confidence(1000, 1000) < 1.0

    def test_negative_counters_raise(self):
        from instinct_engine.confidence import bayesian_confidence

        with pytest.raises(ValueError, match="non-negative"):
            bayesian_confidence(-1, 0)

    def test_successes_above_applications_raise(self):
        from instinct_engine.confidence import bayesian_confidence

        with pytest.raises(ValueError, match="exceed"):
            bayesian_confidence(2, 1)


class TestRecordOutcome:
    """Tests for record_success and record_failure."""

    def test_first_success_from_seed(self):
        """The seed 0.3 is replaced by the formula on the first outcome."""
        from instinct_engine.confidence import record_success

        now = T0 + timedelta(hours=1)
        updated = record_success(_make_instinct(), now)

        assert updated.applications == 1
        assert updated.successes == 1
        assert updated.confidence == pytest.approx(2 / 3)
        assert updated.last_applied_at == now
        assert updated.updated_at == now

    def test_failure_never_increases_confidence(self):
        from instinct_engine.confidence import record_failure

        instinct = _make_instinct(applications=4, successes=4, confidence=5 / 6)
        updated = record_failure(instinct, T0)

        assert updated.applications == 5
        assert updated.successes == 4
        assert updated.confidence < instinct.confidence

    def test_outcome_resets_decay_windows(self):
        from instinct_engine.confidence import record_outcome

        instinct = _make_instinct(decay_windows=3)

        assert record_outcome(instinct, True, T0).decay_windows == 0

    def test_any_outcome_sequence_matches_formula(self):
        from instinct_engine.confidence import record_outcome

        rng = random.Random(7)
        instinct = _make_instinct()
        successes = 0
        outcomes = [rng.random() < 0.6 for _ in range(50)]

        for n, success in enumerate(outcomes, 1):
            instinct = record_outcome(instinct, success, T0)
            successes += success
            assert instinct.applications == n
            assert instinct.successes == successes
            assert instinct.confidence == pytest.approx((successes + 1) / (n + 2))
            assert 0.0 <= instinct.confidence <= 1.0


class TestStalenessDecay:
    """Tests for apply_staleness_decay function."""

    def test_no_decay_within_first_window(self):
        from instinct_engine.confidence import apply_staleness_decay

        instinct = _make_instinct(confidence=0.9, last_applied_at=T0)

        assert apply_staleness_decay(instinct, T0 + timedelta(days=13)) is instinct

    def test_one_window_pulls_toward_half(self):
        from instinct_engine.confidence import apply_staleness_decay

        instinct = _make_instinct(
            confidence=0.9, applications=8, successes=8, last_applied_at=T0
        )

        decayed = apply_staleness_decay(instinct, T0 + timedelta(days=14))

        assert decayed.confidence == pytest.approx(0.5 + 0.4 * 0.75)
        assert decayed.decay_windows == 1
        assert decayed.applications == 8
        assert decayed.successes == 8

    def test_low_confidence_rises_toward_half(self):
        from instinct_engine.confidence import apply_staleness_decay

        instinct = _make_instinct(confidence=0.2, last_applied_at=T0)

        decayed = apply_staleness_decay(instinct, T0 + timedelta(days=14))

        assert 0.2 < decayed.confidence < 0.5

    def test_idempotent_within_window(self):
        from instinct_engine.confidence import apply_staleness_decay

        instinct = _make_instinct(confidence=0.9, last_applied_at=T0)
        now = T0 + timedelta(days=15)

        once = apply_staleness_decay(instinct, now)
        twice = apply_staleness_decay(once, now)
        later_same_window = apply_staleness_decay(once, T0 + timedelta(days=27))

        assert twice is once
        assert later_same_window is once

    def test_incremental_equals_direct(self):
        """Decaying window by window equals decaying all windows at once."""
        from instinct_engine.confidence import apply_staleness_decay

        instinct = _make_instinct(confidence=0.9, last_applied_at=T0)

        stepwise = apply_staleness_decay(
            apply_staleness_decay(instinct, T0 + timedelta(days=14)),
            T0 + timedelta(days=28),
        )
        direct = apply_staleness_decay(instinct, T0 + timedelta(days=28))

        assert stepwise.confidence == pytest.approx(direct.confidence)
        assert direct.confidence == pytest.approx(0.5 + 0.4 * 0.75**2)

    def test_uses_created_at_when_never_applied(self):
        from instinct_engine.confidence import apply_staleness_decay

        instinct = _make_instinct(confidence=0.9)

        assert apply_staleness_decay(instinct, T0 + timedelta(days=14)).decay_windows == 1

    def test_custom_window(self):
        from instinct_engine.confidence import apply_staleness_decay
        from instinct_engine.config import EngineSettings

        settings = EngineSettings(staleness_window_days=1.0, decay_fraction=0.5)
        instinct = _make_instinct(confidence=0.9, last_applied_at=T0)

        decayed = apply_staleness_decay(instinct, T0 + timedelta(days=1), settings)

        assert decayed.confidence == pytest.approx(0.7)


class TestContradictions:
    """Tests for contradiction detection."""

    def test_opposite_actions_same_trigger(self):
        from instinct_engine.confidence import is_contradicting_pair

        a = _make_instinct(id="a", action="Never commit secrets")
        b = _make_instinct(id="b", action="Always commit secrets")

        assert is_contradicting_pair(a, b)

    def test_different_domains_do_not_contradict(self):
        from instinct_engine.confidence import is_contradicting_pair
        from instinct_engine.models import Domain

        a = _make_instinct(id="a", action="Never commit secrets")
        b = _make_instinct(id="b", action="Always commit secrets", domain=Domain.GIT)

        assert not is_contradicting_pair(a, b)
        assert is_contradicting_pair(a, b, require_same_domain=False)

    def test_different_triggers_do_not_contradict(self):
        from instinct_engine.confidence import is_contradicting_pair

        a = _make_instinct(id="a", action="Never commit secrets")
        b = _make_instinct(id="b", trigger="when writing docs", action="Always commit secrets")

        assert not is_contradicting_pair(a, b)

    def test_custom_polarity(self):
        from instinct_engine.confidence import is_contradicting_pair

        a = _make_instinct(id="a", action="Use tabs")
        b = _make_instinct(id="b", action="Use spaces")

        assert is_contradicting_pair(a, b, polarity=lambda x, y: {x, y} == {"Use tabs", "Use spaces"})

    def test_find_contradictions_only_considers_active(self):
        from instinct_engine.confidence import find_contradictions

        a = _make_instinct(id="a", action="Never commit secrets")
        b = _make_instinct(id="b", action="Always commit secrets")
        c = _make_instinct(id="c", action="Always commit secrets", status="archived")

        assert find_contradictions([a, b, c]) == [("a", "b")]

    def test_automation_requires_active_status(self):
        from instinct_engine.confidence import is_automatable

        assert is_automatable(_make_instinct())
        assert not is_automatable(_make_instinct(status="contradicted"))
        assert not is_automatable(_make_instinct(status="archived"))
