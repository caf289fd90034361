"""Tests for instinct_engine.models module."""

from dataclasses import FrozenInstanceError
from datetime import datetime, timedelta, timezone

import pytest


def _make_instinct(**overrides):
    """Helper to create test instincts."""
    from instinct_engine.models import Domain, Instinct

    ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
    values = dict(
        id="run-tests-0123456789",
        trigger="when finishing a feature",
        action="Run pytest before committing",
        domain=Domain.TESTING,
        confidence=0.3,
        source="session-observation",
        applications=0,
        successes=0,
        evidence=("obs:1",),
        status="active",
        created_at=ts,
        updated_at=ts,
    )
    values.update(overrides)
    return Instinct(**values)


class TestEvidenceRefs:
    """Tests for evidence reference helpers."""

    def test_observation_ref_has_prefix(self):
        from instinct_engine.models import is_observation_ref, observation_ref

        ref = observation_ref("s1-12")

        assert ref == "obs:s1-12"
        assert is_observation_ref(ref)

    def test_note_ref_collapses_whitespace(self):
        """Notes must stay on one line in the record format."""
        from instinct_engine.models import is_observation_ref, note_ref

        ref = note_ref("seen in\n  code review")

        assert ref == "note:seen in code review"
        assert not is_observation_ref(ref)


class TestInstinct:
    """Tests for the Instinct dataclass."""

    def test_instinct_is_frozen(self):
        instinct = _make_instinct()

        with pytest.raises(FrozenInstanceError):
            instinct.confidence = 0.9  # type: ignore[misc]

    def test_defaults(self):
        instinct = _make_instinct()

        assert instinct.version == 1
        assert instinct.last_applied_at is None
        assert instinct.pattern is None
        assert instinct.decay_windows == 0
        assert instinct.artifact is None
        assert instinct.extra == ()

    def test_with_status_returns_new_instance(self):
        instinct = _make_instinct()
        now = instinct.created_at + timedelta(days=1)

        archived = instinct.with_status("archived", now)

        assert archived.status == "archived"
        assert archived.updated_at == now
        assert instinct.status == "active"

    def test_with_evidence_appends(self):
        """Evidence only ever grows."""
        instinct = _make_instinct(evidence=("obs:1", "obs:2"))

        updated = instinct.with_evidence(("obs:2", "obs:3"))

        assert updated.evidence == ("obs:1", "obs:2", "obs:2", "obs:3")
        assert len(updated.evidence) >= len(instinct.evidence)


class TestEnums:
    """Tests for the fixed enumerations."""

    def test_domain_values(self):
        from instinct_engine.models import Domain

        assert {d.value for d in Domain} == {
            "security",
            "testing",
            "workflow",
            "architecture",
            "style",
            "debugging",
            "documentation",
            "git",
        }

    def test_cluster_rejection_reasons(self):
        from instinct_engine.models import ClusterRejection

        assert ClusterRejection.TOO_FEW_MEMBERS.value == "too few members"
        assert ClusterRejection.LOW_CONFIDENCE.value == "confidence below threshold"
        assert ClusterRejection.UNRESOLVED_CONTRADICTION.value == "unresolved contradiction"
