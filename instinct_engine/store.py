"""Instinct Store: durable, versioned instinct records.

One markdown file per instinct under the store directory. The store is an
explicit handle; nothing here is module-level state, so tests and callers
can run several stores side by side.

Every mutation goes through update(), which reads the record, computes the
new value and commits it only if the on-disk version is still the one that
was read (compare-and-swap under a short per-record fcntl lock). A lost race
re-reads and retries up to max_commit_retries times before raising
VersionConflictError.
"""

import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator

from instinct_engine.confidence import (
    apply_staleness_decay,
    default_polarity,
    find_contradictions,
    is_contradicting_pair,
    record_outcome,
    record_success,
)
from instinct_engine.config import DEFAULT_SETTINGS, EngineSettings
from instinct_engine.errors import (
    InstinctNotFoundError,
    InvalidCandidateError,
    MalformedRecordError,
    VersionConflictError,
)
from instinct_engine.models import (
    INSTINCT_SOURCES,
    Candidate,
    Domain,
    Instinct,
    is_observation_ref,
)
from instinct_engine.records import (
    build_instinct,
    parse_record,
    render_export_bundle,
    render_record,
    split_records,
)
from instinct_engine.similarity import PolarityFn, SimilarityFn, text_similarity
from instinct_engine.utils import generate_instinct_id, sanitize_id

logger = logging.getLogger(__name__)

RECORD_SUFFIX: str = ".md"
LOCK_SUFFIX: str = ".lock"

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _atomic_write_text(file_path: Path, content: str) -> None:
    """Write file atomically using temp file + rename.

    Raises:
        OSError: If write or rename fails.
    """
    directory = file_path.parent
    directory.mkdir(parents=True, exist_ok=True, mode=0o700)
    fd, temp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.rename(temp_path, file_path)
    except Exception:
        # Clean up temp file on failure
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


class InstinctStore:
    """File-backed instinct store with optimistic concurrency.

    Args:
        directory: Directory holding one record file per instinct.
        settings: Engine settings (thresholds, retry bound, decay).
        similarity: Trigger similarity used for merging and contradictions.
        polarity: Mutual-exclusion check for actions; defaults to the
            negation-aware check built on similarity.
        clock: Returns the current time; defaults to UTC now.
    """

    def __init__(
        self,
        directory: Path,
        settings: EngineSettings = DEFAULT_SETTINGS,
        similarity: SimilarityFn = text_similarity,
        polarity: PolarityFn | None = None,
        clock: Clock | None = None,
    ):
        self.directory = directory
        self.settings = settings
        self.similarity = similarity
        self.polarity = polarity or default_polarity(similarity, settings)
        self._clock = clock or _utc_now

    def __repr__(self) -> str:
        return f"InstinctStore({str(self.directory)!r})"

    # Paths and locking

    def _path(self, instinct_id: str) -> Path:
        """Map an instinct ID to its record file.

        Raises:
            ValueError: If the path is a symlink or escapes the directory.
        """
        file_path = self.directory / f"{sanitize_id(instinct_id)}{RECORD_SUFFIX}"

        # Must be checked before resolve() which follows symlinks
        if file_path.is_symlink():
            raise ValueError(f"Refusing to use symlink: {file_path}")

        if not file_path.resolve().is_relative_to(self.directory.resolve()):
            raise ValueError(f"Path traversal detected: {instinct_id}")

        return file_path

    @contextmanager
    def _locked(self, instinct_id: str) -> Iterator[None]:
        """Hold the per-record lock for the duration of a commit."""
        self.directory.mkdir(parents=True, exist_ok=True, mode=0o700)
        lock_path = self.directory / f".{sanitize_id(instinct_id)}{LOCK_SUFFIX}"
        with lock_path.open("a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    # Reading

    def _read_file(self, file_path: Path) -> Instinct | None:
        """Read one record, skipping unreadable or malformed files."""
        try:
            return parse_record(file_path.read_text(), str(file_path))
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read instinct file %s: %s", file_path, e)
        except MalformedRecordError as e:
            logger.warning("Skipping malformed instinct record: %s", e)
        return None

    def _load(self, instinct_id: str) -> Instinct | None:
        file_path = self._path(instinct_id)
        if not file_path.exists():
            return None
        return self._read_file(file_path)

    def get(self, instinct_id: str) -> Instinct | None:
        """Get an instinct by ID, or None if there is no readable record."""
        return self._load(instinct_id)

    def all(self) -> list[Instinct]:
        """Load every readable record, sorted by ID.

        Malformed records and symlinks are skipped with a warning.
        """
        if not self.directory.exists():
            return []

        instincts: list[Instinct] = []
        for file_path in sorted(self.directory.glob(f"*{RECORD_SUFFIX}")):
            if file_path.is_symlink():
                logger.warning("Skipping symlink: %s", file_path)
                continue
            instinct = self._read_file(file_path)
            if instinct is not None:
                instincts.append(instinct)

        return instincts

    def list_by_domain(
        self,
        domain: Domain,
        min_confidence: float = 0.0,
        include_archived: bool = False,
    ) -> list[Instinct]:
        """List instincts of one domain, highest confidence first."""
        matches = [
            i
            for i in self.all()
            if i.domain == domain
            and i.confidence >= min_confidence
            and (include_archived or i.status != "archived")
        ]
        return sorted(matches, key=lambda i: (-i.confidence, i.id))

    def snapshot_key(self) -> tuple[tuple[str, int], ...]:
        """Identify the current store contents by (id, version) pairs."""
        return tuple((i.id, i.version) for i in self.all())

    # Writing

    def _commit(self, instinct: Instinct, expected_version: int) -> Instinct:
        """Write a record if the on-disk version still matches.

        Args:
            instinct: The new record value.
            expected_version: Version read before computing the new value;
                0 means the record must not exist yet.

        Returns:
            The written record, with its version incremented.

        Raises:
            VersionConflictError: If another writer committed in between.
            MalformedRecordError: If an unreadable record is in the way.
        """
        file_path = self._path(instinct.id)

        with self._locked(instinct.id):
            actual_version = 0
            if file_path.exists():
                current = parse_record(file_path.read_text(), str(file_path))
                actual_version = current.version

            if actual_version != expected_version:
                raise VersionConflictError(instinct.id, expected_version, actual_version)

            committed = replace(instinct, version=expected_version + 1)
            _atomic_write_text(file_path, render_record(committed))

        return committed

    def update(self, instinct_id: str, mutate: Callable[[Instinct], Instinct]) -> Instinct:
        """Apply a read-compute-commit mutation to one record.

        The mutation may run more than once; it must be a pure function of
        the record it receives.

        Args:
            instinct_id: ID of the record to update.
            mutate: Computes the new record from the current one.

        Returns:
            The committed record.

        Raises:
            InstinctNotFoundError: If no readable record has this ID.
            VersionConflictError: If every attempt lost a race.
        """
        attempts = max(1, self.settings.max_commit_retries)
        attempt = 0

        while True:
            attempt += 1
            current = self._load(instinct_id)
            if current is None:
                raise InstinctNotFoundError(instinct_id)

            updated = mutate(current)
            if updated.id != current.id:
                raise ValueError(f"Mutation changed instinct id {current.id} -> {updated.id}")

            try:
                return self._commit(updated, current.version)
            except VersionConflictError as e:
                if attempt >= attempts:
                    raise
                logger.debug("Commit attempt %d/%d lost a race: %s", attempt, attempts, e)

    def validate_candidate(self, candidate: Candidate) -> None:
        """Check a candidate before it becomes a record.

        Raises:
            InvalidCandidateError: If the candidate cannot become an instinct.
        """
        if not candidate.trigger or not candidate.trigger.strip():
            raise InvalidCandidateError("Candidate trigger must not be empty")
        if not candidate.action or not candidate.action.strip():
            raise InvalidCandidateError("Candidate action must not be empty")
        if not isinstance(candidate.domain, Domain):
            raise InvalidCandidateError(f"Unknown domain: {candidate.domain!r}")
        if candidate.source not in INSTINCT_SOURCES:
            raise InvalidCandidateError(f"Unknown source: {candidate.source!r}")
        if not 0.0 < candidate.confidence < 1.0:
            raise InvalidCandidateError(
                f"Seed confidence out of range: {candidate.confidence}"
            )

    def _find_merge_target(self, candidate: Candidate) -> Instinct | None:
        """Find the most similar active record of the same domain.

        Records whose action the candidate's action negates are never merge
        targets; the pair goes through the contradiction check instead.
        """
        best: Instinct | None = None
        best_score = self.settings.merge_similarity_threshold

        for instinct in self.all():
            if instinct.status != "active" or instinct.domain != candidate.domain:
                continue
            if self.polarity(candidate.action, instinct.action):
                continue
            score = self.similarity(candidate.trigger, instinct.trigger)
            if score >= best_score and (best is None or score > best_score):
                best = instinct
                best_score = score

        return best

    def _merge(self, instinct_id: str, candidate: Candidate) -> Instinct:
        now = self._clock()

        def absorb(current: Instinct) -> Instinct:
            merged = current.with_evidence(candidate.evidence, now)
            if candidate.fresh_success:
                merged = record_success(merged, now)
            return merged

        merged = self.update(instinct_id, absorb)
        logger.debug("Merged candidate into %s (%d evidence)", instinct_id, len(merged.evidence))
        return merged

    def create_or_merge(self, candidate: Candidate) -> str:
        """Add a candidate to the store.

        A record with the same derived ID, or the most similar active
        same-domain record above the merge threshold, absorbs the candidate's
        evidence. Otherwise a new record is inserted and checked for
        contradictions against the active records of its domain.

        Args:
            candidate: The candidate to add.

        Returns:
            ID of the record that now holds the candidate.

        Raises:
            InvalidCandidateError: If the candidate fails validation.
        """
        self.validate_candidate(candidate)

        trigger = " ".join(candidate.trigger.split())
        action = candidate.action.strip()
        instinct_id = generate_instinct_id(trigger, action)

        target = self._load(instinct_id) or self._find_merge_target(candidate)
        if target is not None:
            return self._merge(target.id, candidate).id

        now = self._clock()
        instinct = Instinct(
            id=instinct_id,
            trigger=trigger,
            action=action,
            domain=candidate.domain,
            confidence=candidate.confidence,
            source=candidate.source,
            applications=0,
            successes=0,
            evidence=tuple(candidate.evidence),
            status="active",
            created_at=now,
            updated_at=now,
            pattern=candidate.pattern_type,
        )

        try:
            inserted = self._commit(instinct, expected_version=0)
        except VersionConflictError:
            # Another writer inserted the same ID first
            logger.debug("Concurrent insert of %s, merging instead", instinct_id)
            return self._merge(instinct_id, candidate).id

        logger.info("Created instinct %s (%s)", inserted.id, inserted.domain.value)
        self._mark_contradictions(inserted)
        return inserted.id

    def _set_status(self, instinct_id: str, status: str, **changes: object) -> Instinct:
        now = self._clock()
        return self.update(
            instinct_id,
            lambda i: replace(i.with_status(status, now), **changes),  # type: ignore[arg-type]
        )

    def _mark_contradictions(self, instinct: Instinct) -> list[tuple[str, str]]:
        """Mark instinct and every active record it contradicts."""
        pairs: list[tuple[str, str]] = []

        for other in self.all():
            if other.status != "active" or other.domain != instinct.domain:
                continue
            if is_contradicting_pair(
                instinct, other, self.similarity, self.polarity, self.settings
            ):
                pairs.append((instinct.id, other.id))

        for a_id, b_id in pairs:
            logger.warning("Instincts %s and %s contradict each other", a_id, b_id)
            self._set_status(b_id, "contradicted")
        if pairs:
            self._set_status(instinct.id, "contradicted")

        return pairs

    def detect_contradictions(self) -> list[tuple[str, str]]:
        """Mark every contradicting pair of active records.

        Returns:
            The (id, id) pairs found.
        """
        pairs = find_contradictions(self.all(), self.similarity, self.polarity, self.settings)
        marked: set[str] = set()
        for a_id, b_id in pairs:
            logger.warning("Instincts %s and %s contradict each other", a_id, b_id)
            for instinct_id in (a_id, b_id):
                if instinct_id not in marked:
                    self._set_status(instinct_id, "contradicted")
                    marked.add(instinct_id)
        return pairs

    def apply_outcome(self, instinct_id: str, success: bool) -> float:
        """Record one application outcome.

        Returns:
            The new confidence.

        Raises:
            InstinctNotFoundError: If no record has this ID.
        """
        now = self._clock()
        updated = self.update(instinct_id, lambda i: record_outcome(i, success, now))
        return updated.confidence

    def archive(self, instinct_id: str, artifact: str | None = None) -> Instinct:
        """Retire an instinct, optionally recording the artifact it became.

        The record stays on disk with its evidence intact.
        """
        current = self._load(instinct_id)
        if current is None:
            raise InstinctNotFoundError(instinct_id)
        return self._set_status(instinct_id, "archived", artifact=artifact or current.artifact)

    def reactivate(self, instinct_id: str) -> Instinct:
        """Return a contradicted or archived instinct to active use."""
        return self._set_status(instinct_id, "active")

    def decay_stale(self, now: datetime | None = None) -> list[Instinct]:
        """Apply staleness decay to every non-archived record.

        Returns:
            The records whose confidence changed.
        """
        current_time = now or self._clock()
        decayed: list[Instinct] = []

        for instinct in self.all():
            if instinct.status == "archived":
                continue
            if apply_staleness_decay(instinct, current_time, self.settings) is instinct:
                continue
            decayed.append(
                self.update(
                    instinct.id,
                    lambda i: apply_staleness_decay(i, current_time, self.settings),
                )
            )

        return decayed

    # Export and import

    def export(self, path: Path) -> int:
        """Export active instincts to a bundle file.

        Only id, trigger, action, domain, confidence, source and observation
        references are written.

        Returns:
            Number of exported instincts.
        """
        instincts = [i for i in self.all() if i.status == "active"]
        _atomic_write_text(path, render_export_bundle(instincts))
        logger.info("Exported %d instincts to %s", len(instincts), path)
        return len(instincts)

    def import_file(self, path: Path) -> list[str]:
        """Import a bundle through create-or-merge as inherited instincts.

        Malformed records in the bundle are skipped with a warning.

        Returns:
            IDs of the records that absorbed the imported instincts.
        """
        imported: list[str] = []

        for index, (metadata, body) in enumerate(split_records(path.read_text()), 1):
            try:
                instinct = build_instinct(metadata, body, f"{path}#{index}")
            except MalformedRecordError as e:
                logger.warning("Skipping malformed imported record: %s", e)
                continue

            candidate = Candidate(
                pattern_type=instinct.pattern,
                trigger=instinct.trigger,
                action=instinct.action,
                domain=instinct.domain,
                evidence=tuple(r for r in instinct.evidence if is_observation_ref(r)),
                source="inherited",
                confidence=instinct.confidence,
            )
            try:
                imported.append(self.create_or_merge(candidate))
            except InvalidCandidateError as e:
                logger.warning("Skipping invalid imported record %s: %s", instinct.id, e)

        logger.info("Imported %d instincts from %s", len(imported), path)
        return imported
