"""Per-session learning pipeline.

Runs the pattern detector over one session's observations, then feeds the
candidates into the store in a single sequential merge phase.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from instinct_engine.config import (
    EngineSettings,
    detect_project_root,
    get_learned_dir,
    get_observations_file,
    load_settings,
)
from instinct_engine.errors import InvalidCandidateError, MalformedRecordError
from instinct_engine.ingest import SessionSource, list_sessions
from instinct_engine.models import Candidate, Observation
from instinct_engine.patterns import detect_candidates
from instinct_engine.store import InstinctStore

logger = logging.getLogger(__name__)

# Warning threshold for number of instinct records
MAX_INSTINCT_FILES_WARNING: int = 100


@dataclass(frozen=True)
class AnalysisResult:
    """Result of learning from one or more sessions.

    Attributes:
        candidates_detected: Number of candidates the detector produced.
        instincts_created: Number of new records inserted.
        instincts_merged: Number of candidates merged into existing records.
        candidates_rejected: Number of candidates that failed validation.
        warnings: Tuple of warning messages (immutable).
        candidates: Tuple of detected candidates (immutable).
        instinct_ids: IDs of the records touched, in merge order.
    """

    candidates_detected: int
    instincts_created: int
    instincts_merged: int
    candidates_rejected: int = 0
    warnings: tuple[str, ...] = field(default_factory=tuple)
    candidates: tuple[Candidate, ...] = field(default_factory=tuple)
    instinct_ids: tuple[str, ...] = field(default_factory=tuple)

    def combine(self, other: "AnalysisResult") -> "AnalysisResult":
        """Add up two results."""
        return AnalysisResult(
            candidates_detected=self.candidates_detected + other.candidates_detected,
            instincts_created=self.instincts_created + other.instincts_created,
            instincts_merged=self.instincts_merged + other.instincts_merged,
            candidates_rejected=self.candidates_rejected + other.candidates_rejected,
            warnings=self.warnings + other.warnings,
            candidates=self.candidates + other.candidates,
            instinct_ids=self.instinct_ids + other.instinct_ids,
        )


EMPTY_RESULT = AnalysisResult(candidates_detected=0, instincts_created=0, instincts_merged=0)


def learn_from_session(
    store: InstinctStore,
    observations: Iterable[Observation],
    settings: EngineSettings | None = None,
    dry_run: bool = False,
) -> AnalysisResult:
    """Learn instincts from one session.

    Args:
        store: Store receiving the candidates.
        observations: The session's observations, in order.
        settings: Detector settings (defaults to the store's).
        dry_run: If True, detect only and leave the store untouched.

    Returns:
        AnalysisResult with counts of what happened.
    """
    if settings is None:
        settings = store.settings

    candidates = detect_candidates(observations, settings, store.similarity)
    if not candidates or dry_run:
        return AnalysisResult(
            candidates_detected=len(candidates),
            instincts_created=0,
            instincts_merged=0,
            candidates=tuple(candidates),
        )

    known_ids = {i.id for i in store.all()}
    created = 0
    merged = 0
    rejected = 0
    warnings: list[str] = []
    touched: list[str] = []

    for candidate in candidates:
        try:
            instinct_id = store.create_or_merge(candidate)
        except (InvalidCandidateError, MalformedRecordError) as e:
            logger.warning("Rejected candidate %r: %s", candidate.trigger, e)
            warnings.append(f"Rejected candidate: {e}")
            rejected += 1
            continue

        if instinct_id in known_ids:
            merged += 1
        else:
            created += 1
            known_ids.add(instinct_id)
        touched.append(instinct_id)

    if len(known_ids) >= MAX_INSTINCT_FILES_WARNING:
        warnings.append(
            f"Warning: {len(known_ids)} instinct records in {store.directory} - "
            "this may impact performance"
        )

    logger.info(
        "Learned from session: %d candidates, %d created, %d merged, %d rejected",
        len(candidates),
        created,
        merged,
        rejected,
    )

    return AnalysisResult(
        candidates_detected=len(candidates),
        instincts_created=created,
        instincts_merged=merged,
        candidates_rejected=rejected,
        warnings=tuple(warnings),
        candidates=tuple(candidates),
        instinct_ids=tuple(touched),
    )


def analyze_project(
    start_path: Path,
    session_id: str | None = None,
    dry_run: bool = False,
) -> AnalysisResult:
    """Learn from the observations recorded for a project.

    Each session is processed separately, in order of first appearance.

    Args:
        start_path: Any directory inside the project.
        session_id: If given, only learn from this session.
        dry_run: If True, detect only.

    Returns:
        Combined AnalysisResult over the processed sessions.
    """
    project_root = detect_project_root(start_path)
    settings = load_settings(project_root)
    store = InstinctStore(get_learned_dir(project_root), settings)
    observations_file = get_observations_file(project_root)

    sessions = [session_id] if session_id else list_sessions(observations_file)
    result = EMPTY_RESULT
    for session in sessions:
        result = result.combine(
            learn_from_session(store, SessionSource(observations_file, session), settings, dry_run)
        )

    return result


def format_analysis_summary(result: AnalysisResult) -> str:
    """Format analysis result as a human-readable summary.

    Args:
        result: AnalysisResult from analysis.

    Returns:
        Formatted summary string.
    """
    lines = [
        "",
        "=" * 60,
        "  INSTINCT ANALYSIS SUMMARY",
        "=" * 60,
        "",
        f"  Candidates detected: {result.candidates_detected}",
        f"  Instincts created:   {result.instincts_created}",
        f"  Instincts merged:    {result.instincts_merged}",
        f"  Candidates rejected: {result.candidates_rejected}",
    ]

    if result.warnings:
        lines.append("")
        lines.append("  Warnings:")
        for warning in result.warnings:
            lines.append(f"    - {warning}")

    if result.candidates_detected == 0:
        lines.append("")
        lines.append("  No patterns detected in observations.")

    lines.append("")
    lines.append("=" * 60)
    lines.append("")

    return "\n".join(lines)
