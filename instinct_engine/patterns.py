"""Pattern detection for the instinct lifecycle engine.

This module turns one session's observations into candidate instincts:
- User corrections (a tool call rejected and corrected by the user)
- Error resolutions (a failure followed by a successful, changed retry)
- Repeated workflows (the same tool sequence recurring in the session)

The three detectors consume the observation sequence in a single lazy pass.
Their results are unioned, and candidates from different detectors that
share an observation are merged into one.
"""

import re
from collections import defaultdict
from dataclasses import replace
from typing import Any, Iterable

from instinct_engine.config import DEFAULT_SETTINGS, EngineSettings
from instinct_engine.domains import tag_domain
from instinct_engine.models import (
    Candidate,
    Observation,
    ObservationKind,
    PatternType,
    observation_ref,
)
from instinct_engine.similarity import SimilarityFn, text_similarity
from instinct_engine.utils import normalize_text

# Correction keywords marking a prompt as a rejection of the last tool call
CORRECTION_KEYWORDS: tuple[str, ...] = ("no", "instead", "actually", "don't", "dont", "wrong")

# Maximum length of text lifted from a payload into a trigger or action
MAX_SUMMARY_LENGTH: int = 160

# Merge priority when candidates from different detectors overlap
PATTERN_PRIORITY: tuple[PatternType, ...] = (
    PatternType.USER_CORRECTION,
    PatternType.ERROR_RESOLUTION,
    PatternType.REPEATED_WORKFLOW,
)

_ERROR_CLASS_PATTERN = re.compile(r"\b(\w+Error|\w+Exception)\b")
_EXIT_STATUS_PATTERN = re.compile(
    r"exit(?:ed)? with (?:non-zero )?status(?: code)? (\d+)", re.IGNORECASE
)
_ERROR_FALLBACK_KEYWORDS: tuple[str, ...] = ("traceback", "exception", "error", "failed", "failure")


def summarize(text: str, limit: int = MAX_SUMMARY_LENGTH) -> str:
    """Collapse a payload to a single line of at most limit characters."""
    first_line = next((line for line in text.splitlines() if line.strip()), "")
    summary = " ".join(first_line.split())
    if len(summary) > limit:
        summary = summary[: limit - 3].rstrip() + "..."
    return summary


def has_correction_keywords(text: str) -> bool:
    """Check if text contains correction keywords at word boundaries."""
    text_lower = text.lower()
    for keyword in CORRECTION_KEYWORDS:
        if re.search(rf"\b{re.escape(keyword)}\b", text_lower):
            return True
    return False


def extract_error_type(error_output: str) -> str:
    """Extract the error signature class from failure output.

    Looks for names like 'ImportError' or 'TimeoutException', then for a
    non-zero exit status, and falls back to the first error keyword.
    """
    match = _ERROR_CLASS_PATTERN.search(error_output)
    if match:
        return match.group(1)

    match = _EXIT_STATUS_PATTERN.search(error_output)
    if match:
        return f"exit status {match.group(1)}"

    lowered = error_output.lower()
    for keyword in _ERROR_FALLBACK_KEYWORDS:
        if keyword in lowered:
            return keyword

    return "failure"


def _context_trigger(prompt: Observation | None, fallback: str) -> str:
    """Build a trigger from the prompt preceding an action."""
    if prompt is not None:
        summary = summarize(prompt.payload)
        if summary:
            return f"when asked: {summary}"
    return fallback


def _file_paths(observations: Iterable[Observation | None]) -> list[str]:
    return [obs.file_path for obs in observations if obs is not None and obs.file_path]


class CorrectionDetector:
    """Detect tool calls that the user rejected and corrected."""

    pattern_type = PatternType.USER_CORRECTION

    def __init__(self, settings: EngineSettings, similarity: SimilarityFn):
        self._settings = settings
        self._similarity = similarity
        self._last_prompt: Observation | None = None
        self._last_call: tuple[int, Observation, Observation | None] | None = None
        self._candidates: list[Candidate] = []

    def feed(self, index: int, obs: Observation) -> None:
        if obs.kind is ObservationKind.TOOL_CALL:
            self._last_call = (index, obs, self._last_prompt)
        elif obs.kind is ObservationKind.EXPLICIT_CORRECTION:
            self._handle_correction(index, obs)
        elif obs.kind is ObservationKind.PROMPT:
            if self._last_call is not None and has_correction_keywords(obs.payload):
                self._handle_correction(index, obs)
            else:
                self._last_prompt = obs

    def _handle_correction(self, index: int, correction: Observation) -> None:
        if self._last_call is None or not correction.payload.strip():
            return

        call_index, call, context = self._last_call
        self._last_call = None

        similarity = self._similarity(correction.payload, call.payload)
        if similarity >= self._settings.correction_similarity_threshold:
            return

        trigger = _context_trigger(context, f"when using {call.tool or 'tools'}")
        action = summarize(correction.payload)
        evidence = tuple(
            observation_ref(o.id) for o in (context, call, correction) if o is not None
        )

        self._candidates.append(
            Candidate(
                pattern_type=self.pattern_type,
                trigger=trigger,
                action=action,
                domain=tag_domain(f"{trigger} {action}", _file_paths((call, correction))),
                evidence=evidence,
                window=(call_index, index),
                confidence=self._settings.seed_confidence,
                metadata=(("tool", call.tool), ("similarity", round(similarity, 3))),
            )
        )

    def finish(self) -> list[Candidate]:
        return self._candidates


class ErrorResolutionDetector:
    """Detect failures that a changed retry resolved."""

    pattern_type = PatternType.ERROR_RESOLUTION

    def __init__(self, settings: EngineSettings, similarity: SimilarityFn):
        self._settings = settings
        self._similarity = similarity
        self._last_call_by_tool: dict[str, tuple[int, Observation]] = {}
        self._last_call: tuple[int, Observation] | None = None
        # tool -> (index, failing call, failing outcome)
        self._failures: dict[str, tuple[int, Observation | None, Observation]] = {}
        self._fixes: dict[str, list[Observation]] = defaultdict(list)
        self._candidates: list[Candidate] = []

    def feed(self, index: int, obs: Observation) -> None:
        if obs.kind is ObservationKind.TOOL_CALL:
            self._last_call = (index, obs)
            self._last_call_by_tool[obs.tool] = (index, obs)
            for failed_tool in self._failures:
                if failed_tool != obs.tool:
                    self._fixes[failed_tool].append(obs)
        elif obs.kind is ObservationKind.OUTCOME:
            self._handle_outcome(index, obs)

    def _call_for(self, outcome: Observation) -> tuple[int, Observation] | None:
        if outcome.tool:
            return self._last_call_by_tool.get(outcome.tool)
        return self._last_call

    def _handle_outcome(self, index: int, outcome: Observation) -> None:
        call = self._call_for(outcome)
        tool = outcome.tool or (call[1].tool if call else "")
        call_obs = call[1] if call else None

        if outcome.success is False:
            start = call[0] if call else index
            self._failures[tool] = (start, call_obs, outcome)
            self._fixes[tool] = []
            return

        if outcome.success is not True or tool not in self._failures:
            return

        start, failed_call, failure = self._failures.pop(tool)
        fixes = self._fixes.pop(tool, [])
        fix_action = self._describe_fix(tool, failed_call, call_obs, fixes)
        if fix_action is None:
            return

        error_type = extract_error_type(failure.payload)
        trigger = f"when encountering {error_type}"
        involved = [failed_call, failure, *fixes, call_obs, outcome]
        evidence = tuple(
            dict.fromkeys(observation_ref(o.id) for o in involved if o is not None)
        )

        self._candidates.append(
            Candidate(
                pattern_type=self.pattern_type,
                trigger=trigger,
                action=fix_action,
                domain=tag_domain(f"{trigger} {fix_action}", _file_paths(involved)),
                evidence=evidence,
                window=(start, index),
                confidence=self._settings.seed_confidence,
                fresh_success=True,
                metadata=(
                    ("error_type", error_type),
                    ("tool", tool),
                    ("error_output", summarize(failure.payload)),
                ),
            )
        )

    def _describe_fix(
        self,
        tool: str,
        failed_call: Observation | None,
        retry_call: Observation | None,
        fixes: list[Observation],
    ) -> str | None:
        """Describe the fix applied between a failure and its successful retry.

        Returns:
            The fix description, or None when the retry changed nothing.
        """
        if fixes:
            steps = "; ".join(
                f"{fix.tool} {summarize(fix.file_path or fix.payload, 60)}".strip()
                for fix in fixes
            )
            return summarize(f"Apply fix ({steps}) then retry {tool}")

        if retry_call is None or failed_call is None or retry_call is failed_call:
            return None

        if normalize_text(retry_call.payload) == normalize_text(failed_call.payload):
            return None

        return summarize(f"Retry {tool} with: {retry_call.payload}")

    def finish(self) -> list[Candidate]:
        return self._candidates


class WorkflowDetector:
    """Detect tool sequences that recur within the session."""

    pattern_type = PatternType.REPEATED_WORKFLOW

    def __init__(self, settings: EngineSettings, similarity: SimilarityFn):
        self._settings = settings
        self._last_prompt: Observation | None = None
        # (index, observation id, tool, file path, preceding prompt)
        self._actions: list[tuple[int, str, str, str | None, Observation | None]] = []

    def feed(self, index: int, obs: Observation) -> None:
        if obs.kind is ObservationKind.PROMPT:
            self._last_prompt = obs
        elif obs.kind is ObservationKind.TOOL_CALL and obs.tool:
            self._actions.append((index, obs.id, obs.tool, obs.file_path, self._last_prompt))

    def _find_repeats(self) -> list[tuple[tuple[str, ...], list[int]]]:
        """Find sequences with enough non-overlapping occurrences."""
        tools = [action[2] for action in self._actions]
        min_repeats = self._settings.min_workflow_repeats
        max_length = min(self._settings.max_workflow_length, len(tools) // max(min_repeats, 1))

        repeats: list[tuple[tuple[str, ...], list[int]]] = []
        for length in range(self._settings.min_workflow_length, max_length + 1):
            positions: dict[tuple[str, ...], list[int]] = defaultdict(list)
            for start in range(len(tools) - length + 1):
                positions[tuple(tools[start : start + length])].append(start)

            for seq, starts in positions.items():
                # A single tool repeated is not a workflow
                if len(set(seq)) < 2:
                    continue
                occurrences: list[int] = []
                next_free = 0
                for start in starts:
                    if start >= next_free:
                        occurrences.append(start)
                        next_free = start + length
                if len(occurrences) >= min_repeats:
                    repeats.append((seq, occurrences))

        return repeats

    def finish(self) -> list[Candidate]:
        repeats = self._find_repeats()
        repeats.sort(key=lambda r: len(r[0]), reverse=True)

        candidates: list[Candidate] = []
        kept: list[tuple[str, ...]] = []
        for seq, occurrences in repeats:
            if any(_is_contiguous_subsequence(seq, longer) for longer in kept):
                continue
            kept.append(seq)
            candidates.append(self._build(seq, occurrences))

        return candidates

    def _build(self, seq: tuple[str, ...], occurrences: list[int]) -> Candidate:
        covered = [
            self._actions[start + offset]
            for start in occurrences
            for offset in range(len(seq))
        ]
        first_prompt = self._actions[occurrences[0]][4]
        trigger = _context_trigger(first_prompt, f"when starting {seq[0]} work")
        action = f"Run {' -> '.join(seq)} in order"
        file_paths = [action_[3] for action_ in covered if action_[3]]

        return Candidate(
            pattern_type=self.pattern_type,
            trigger=trigger,
            action=action,
            domain=tag_domain(f"{trigger} {action}", file_paths),
            evidence=tuple(observation_ref(action_[1]) for action_ in covered),
            window=(covered[0][0], covered[-1][0]),
            confidence=self._settings.seed_confidence,
            metadata=(("sequence", list(seq)), ("repeats", len(occurrences))),
        )


def _is_contiguous_subsequence(shorter: tuple[str, ...], longer: tuple[str, ...]) -> bool:
    """Check if shorter is a contiguous subsequence of longer."""
    if len(shorter) >= len(longer):
        return False
    for i in range(len(longer) - len(shorter) + 1):
        if longer[i : i + len(shorter)] == shorter:
            return True
    return False


def _get_metadata_value(
    metadata: tuple[tuple[str, Any], ...], key: str, default: Any = None
) -> Any:
    """Extract a value from tuple-based metadata by key."""
    for k, v in metadata:
        if k == key:
            return v
    return default


def _merge_pair(kept: Candidate, other: Candidate) -> Candidate:
    """Fold an overlapping lower-priority candidate into a kept one."""
    merged_patterns = list(_get_metadata_value(kept.metadata, "merged_patterns", []))
    if other.pattern_type is not None:
        merged_patterns.append(other.pattern_type.value)
    metadata = tuple((k, v) for k, v in kept.metadata if k != "merged_patterns")

    return replace(
        kept,
        evidence=tuple(dict.fromkeys(kept.evidence + other.evidence)),
        window=(min(kept.window[0], other.window[0]), max(kept.window[1], other.window[1])),
        fresh_success=kept.fresh_success or other.fresh_success,
        metadata=metadata + (("merged_patterns", merged_patterns),),
    )


def merge_overlapping(candidates: list[Candidate]) -> list[Candidate]:
    """Merge candidates from different detectors that share an observation.

    The candidate from the higher-priority detector survives and takes the
    union of evidence.

    Args:
        candidates: Candidates from all detectors.

    Returns:
        Candidates with overlaps merged, in priority order.
    """
    ordered = sorted(
        candidates,
        key=lambda c: PATTERN_PRIORITY.index(c.pattern_type)
        if c.pattern_type in PATTERN_PRIORITY
        else len(PATTERN_PRIORITY),
    )

    merged: list[Candidate] = []
    for candidate in ordered:
        refs = set(candidate.evidence)
        for i, kept in enumerate(merged):
            if kept.pattern_type == candidate.pattern_type:
                continue
            if refs & set(kept.evidence):
                merged[i] = _merge_pair(kept, candidate)
                break
        else:
            merged.append(candidate)

    return merged


def detect_candidates(
    observations: Iterable[Observation],
    settings: EngineSettings = DEFAULT_SETTINGS,
    similarity: SimilarityFn = text_similarity,
) -> list[Candidate]:
    """Run all pattern detectors over one session's observations.

    Args:
        observations: Ordered observations of a single session, consumed once.
        settings: Engine settings.
        similarity: Similarity function used by the correction detector.

    Returns:
        Combined list of candidates; empty if no pattern qualifies.
    """
    detectors = (
        CorrectionDetector(settings, similarity),
        ErrorResolutionDetector(settings, similarity),
        WorkflowDetector(settings, similarity),
    )

    for index, obs in enumerate(observations):
        for detector in detectors:
            detector.feed(index, obs)

    candidates: list[Candidate] = []
    for detector in detectors:
        candidates.extend(detector.finish())

    return merge_overlapping(candidates)


def _run_single(
    detector_cls: type,
    observations: Iterable[Observation],
    settings: EngineSettings,
    similarity: SimilarityFn,
) -> list[Candidate]:
    detector = detector_cls(settings, similarity)
    for index, obs in enumerate(observations):
        detector.feed(index, obs)
    return detector.finish()


def detect_user_corrections(
    observations: Iterable[Observation],
    settings: EngineSettings = DEFAULT_SETTINGS,
    similarity: SimilarityFn = text_similarity,
) -> list[Candidate]:
    """Detect user correction patterns only."""
    return _run_single(CorrectionDetector, observations, settings, similarity)


def detect_error_resolutions(
    observations: Iterable[Observation],
    settings: EngineSettings = DEFAULT_SETTINGS,
    similarity: SimilarityFn = text_similarity,
) -> list[Candidate]:
    """Detect error resolution patterns only."""
    return _run_single(ErrorResolutionDetector, observations, settings, similarity)


def detect_repeated_workflows(
    observations: Iterable[Observation],
    settings: EngineSettings = DEFAULT_SETTINGS,
    similarity: SimilarityFn = text_similarity,
) -> list[Candidate]:
    """Detect repeated workflow patterns only."""
    return _run_single(WorkflowDetector, observations, settings, similarity)
