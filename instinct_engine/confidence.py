"""Confidence scoring for the instinct lifecycle engine.

This module provides pure functions for:
- Calculating Bayesian-smoothed confidence from application outcomes
- Recording successful and failed applications
- Pulling stale instincts back toward the uninformative prior
- Detecting contradicting instinct pairs

Confidence is (successes + 1) / (applications + 2), the posterior mean of
a Beta(1, 1) prior, so it always stays strictly inside (0, 1).
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from itertools import combinations
from typing import Iterable

from instinct_engine.config import DEFAULT_SETTINGS, EngineSettings
from instinct_engine.models import Domain, Instinct
from instinct_engine.similarity import (
    PolarityFn,
    SimilarityFn,
    opposite_polarity,
    text_similarity,
)

# Confidence of an instinct nothing is known about
UNINFORMATIVE_CONFIDENCE: float = 0.5


def bayesian_confidence(successes: int, applications: int) -> float:
    """Calculate confidence from application counters.

    Args:
        successes: Number of successful applications.
        applications: Number of applications.

    Returns:
        (successes + 1) / (applications + 2).

    Raises:
        ValueError: If counters are negative or successes exceed applications.
    """
    if successes < 0 or applications < 0:
        raise ValueError("Counters must be non-negative")
    if successes > applications:
        raise ValueError("Successes cannot exceed applications")

    return (successes + 1) / (applications + 2)


def _record(instinct: Instinct, success: bool, now: datetime | None) -> Instinct:
    if now is None:
        now = datetime.now(timezone.utc)

    applications = instinct.applications + 1
    successes = instinct.successes + (1 if success else 0)

    return replace(
        instinct,
        applications=applications,
        successes=successes,
        confidence=bayesian_confidence(successes, applications),
        last_applied_at=now,
        updated_at=now,
        decay_windows=0,
    )


def record_success(instinct: Instinct, now: datetime | None = None) -> Instinct:
    """Return a new Instinct with one more successful application."""
    return _record(instinct, True, now)


def record_failure(instinct: Instinct, now: datetime | None = None) -> Instinct:
    """Return a new Instinct with one more failed application.

    Covers both failures and user corrections; confidence never increases.
    """
    return _record(instinct, False, now)


def record_outcome(instinct: Instinct, success: bool, now: datetime | None = None) -> Instinct:
    """Return a new Instinct with an application outcome recorded."""
    return _record(instinct, success, now)


def count_elapsed_windows(
    last_applied: datetime, current_time: datetime, window: timedelta
) -> int:
    """Count complete staleness windows between two timestamps."""
    if window <= timedelta(0):
        return 0
    elapsed = current_time - last_applied
    if elapsed <= timedelta(0):
        return 0
    return int(elapsed // window)


def decay_toward_prior(confidence: float, fraction: float, steps: int) -> float:
    """Pull confidence toward 0.5 by fraction of the remaining gap, steps times."""
    if steps <= 0:
        return confidence
    remaining = (1.0 - fraction) ** steps
    return UNINFORMATIVE_CONFIDENCE + (confidence - UNINFORMATIVE_CONFIDENCE) * remaining


def apply_staleness_decay(
    instinct: Instinct,
    current_time: datetime | None = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> Instinct:
    """Apply staleness decay to an instinct.

    Each complete inactivity window since the last application pulls
    confidence decay_fraction of the way toward 0.5. Windows already folded
    into confidence are tracked in decay_windows, so running the pass several
    times within one window changes nothing. Counters are never touched.

    Args:
        instinct: The instinct to decay.
        current_time: Optional current time (defaults to now).
        settings: Engine settings with the window length and fraction.

    Returns:
        The same instinct if nothing changed, otherwise a new Instinct.
    """
    if current_time is None:
        current_time = datetime.now(timezone.utc)

    last_applied = instinct.last_applied_at or instinct.created_at
    window = timedelta(days=settings.staleness_window_days)
    windows = count_elapsed_windows(last_applied, current_time, window)

    pending = windows - instinct.decay_windows
    if pending <= 0:
        return instinct

    return replace(
        instinct,
        confidence=decay_toward_prior(instinct.confidence, settings.decay_fraction, pending),
        decay_windows=windows,
        updated_at=current_time,
    )


def is_automatable(instinct: Instinct) -> bool:
    """Only active instincts may drive confidence-based automation."""
    return instinct.status == "active"


def default_polarity(
    similarity: SimilarityFn = text_similarity,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> PolarityFn:
    """Build the default mutual-exclusion check for action texts."""

    def check(a: str, b: str) -> bool:
        return opposite_polarity(a, b, similarity, settings.contradiction_action_threshold)

    return check


def is_contradicting_pair(
    a: Instinct,
    b: Instinct,
    similarity: SimilarityFn = text_similarity,
    polarity: PolarityFn | None = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
    require_same_domain: bool = True,
) -> bool:
    """Check whether two instincts contradict each other.

    Args:
        a: First instinct.
        b: Second instinct.
        similarity: Trigger similarity function.
        polarity: Mutual-exclusion check for actions.
        settings: Engine settings with the trigger threshold.
        require_same_domain: If True, instincts in different domains never
            contradict.

    Returns:
        True if triggers overlap and actions are mutually exclusive.
    """
    if a.id == b.id:
        return False
    if require_same_domain and a.domain != b.domain:
        return False
    if polarity is None:
        polarity = default_polarity(similarity, settings)

    if similarity(a.trigger, b.trigger) < settings.contradiction_trigger_threshold:
        return False
    return polarity(a.action, b.action)


def find_contradictions(
    instincts: Iterable[Instinct],
    similarity: SimilarityFn = text_similarity,
    polarity: PolarityFn | None = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> list[tuple[str, str]]:
    """Find contradicting pairs among active instincts.

    Detection only: resolving a contradiction is left to a human or to
    later evidence.

    Returns:
        List of (id, id) pairs.
    """
    if polarity is None:
        polarity = default_polarity(similarity, settings)

    by_domain: dict[Domain, list[Instinct]] = {}
    for instinct in instincts:
        if instinct.status != "active":
            continue
        by_domain.setdefault(instinct.domain, []).append(instinct)

    pairs: list[tuple[str, str]] = []
    for domain_instincts in by_domain.values():
        for a, b in combinations(domain_instincts, 2):
            if is_contradicting_pair(a, b, similarity, polarity, settings):
                pairs.append((a.id, b.id))

    return pairs
