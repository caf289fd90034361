"""Data models for the instinct lifecycle engine.

This module contains the core data structures:
- Observation: A single session event consumed by the pattern detector
- Candidate: A candidate instinct emitted by the pattern detector
- Instinct: A durable, confidence-scored trigger -> action record
- Cluster: A proposed grouping of mature instincts for evolution
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

# Valid status values for Instinct
InstinctStatus = Literal["active", "contradicted", "archived"]

# Valid provenance values for Instinct
InstinctSource = Literal["session-observation", "inherited", "manual"]

INSTINCT_STATUSES: tuple[str, ...] = ("active", "contradicted", "archived")
INSTINCT_SOURCES: tuple[str, ...] = ("session-observation", "inherited", "manual")

# Evidence reference prefixes
OBSERVATION_REF_PREFIX: str = "obs:"
NOTE_REF_PREFIX: str = "note:"


class ObservationKind(Enum):
    """Kinds of session events."""

    PROMPT = "prompt"
    TOOL_CALL = "tool_call"
    OUTCOME = "outcome"
    EXPLICIT_CORRECTION = "explicit_correction"


class PatternType(Enum):
    """Types of patterns that can be detected."""

    USER_CORRECTION = "user_correction"
    ERROR_RESOLUTION = "error_resolution"
    REPEATED_WORKFLOW = "repeated_workflow"


class Domain(Enum):
    """Fixed set of domains an instinct can belong to."""

    SECURITY = "security"
    TESTING = "testing"
    WORKFLOW = "workflow"
    ARCHITECTURE = "architecture"
    STYLE = "style"
    DEBUGGING = "debugging"
    DOCUMENTATION = "documentation"
    GIT = "git"


class ArtifactType(Enum):
    """Types of higher-order artifacts a cluster can evolve into."""

    SKILL = "skill"
    COMMAND = "command"
    AGENT = "agent"


class ClusterRejection(Enum):
    """Reasons a proposed cluster is not eligible for evolution."""

    TOO_FEW_MEMBERS = "too few members"
    LOW_CONFIDENCE = "confidence below threshold"
    UNRESOLVED_CONTRADICTION = "unresolved contradiction"


def observation_ref(observation_id: str) -> str:
    """Build an evidence reference pointing at an observation."""
    return f"{OBSERVATION_REF_PREFIX}{observation_id}"


def note_ref(text: str) -> str:
    """Build a free-text evidence note."""
    return f"{NOTE_REF_PREFIX}{' '.join(text.split())}"


def is_observation_ref(ref: str) -> bool:
    return ref.startswith(OBSERVATION_REF_PREFIX)


@dataclass(frozen=True)
class Observation:
    """A timestamped record of one session event.

    Attributes:
        id: Identifier of the observation, unique within its source.
        session_id: The session in which the event happened.
        timestamp: When the event happened.
        kind: The kind of event.
        payload: Free-form payload text (prompt text, tool input, output...).
        tool: Tool name for tool calls and outcomes.
        success: Outcome flag; None for events that are not outcomes.
        file_path: File touched by the event, when known.
    """

    id: str
    session_id: str
    timestamp: datetime
    kind: ObservationKind
    payload: str
    tool: str = ""
    success: bool | None = None
    file_path: str | None = None


@dataclass(frozen=True)
class Candidate:
    """A candidate instinct produced by the pattern detector.

    Attributes:
        pattern_type: The detection pass that produced this candidate.
        trigger: The condition under which the behavior applies.
        action: The prescribed behavior.
        domain: The domain tag.
        evidence: Tuple of evidence references.
        window: Indices of the first and last observation covered.
        source: Provenance tag for the resulting instinct.
        confidence: Seed confidence.
        fresh_success: True when the candidate carries a successful application.
        metadata: Additional metadata as tuple of key-value pairs (immutable).
    """

    pattern_type: PatternType | None
    trigger: str
    action: str
    domain: Domain
    evidence: tuple[str, ...]
    window: tuple[int, int] = (0, 0)
    source: InstinctSource = "session-observation"
    confidence: float = 0.3
    fresh_success: bool = False
    metadata: tuple[tuple[str, Any], ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Instinct:
    """A learned instinct with Bayesian confidence scoring.

    Attributes:
        id: Stable identifier derived from trigger and action.
        trigger: The condition that triggers this instinct.
        action: The prescribed behavior.
        domain: The domain this instinct belongs to.
        confidence: Confidence score, strictly inside (0, 1).
        source: How this instinct entered the store.
        applications: Number of recorded applications.
        successes: Number of successful applications.
        evidence: Append-only tuple of evidence references.
        status: "active", "contradicted" or "archived".
        created_at: When the instinct was created.
        updated_at: When the instinct was last updated.
        last_applied_at: When an outcome was last recorded.
        version: Optimistic concurrency version, starts at 1.
        pattern: Detection pattern that produced the instinct, if any.
        decay_windows: Staleness windows already folded into confidence.
        artifact: Identifier of the artifact this instinct evolved into.
        extra: Unrecognized metadata fields, preserved verbatim.
    """

    id: str
    trigger: str
    action: str
    domain: Domain
    confidence: float
    source: InstinctSource
    applications: int
    successes: int
    evidence: tuple[str, ...]
    status: InstinctStatus
    created_at: datetime
    updated_at: datetime
    last_applied_at: datetime | None = None
    version: int = 1
    pattern: PatternType | None = None
    decay_windows: int = 0
    artifact: str | None = None
    extra: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    def with_status(
        self, new_status: InstinctStatus, now: datetime | None = None
    ) -> "Instinct":
        """Return a new Instinct with updated status."""
        return replace(
            self,
            status=new_status,
            updated_at=now or datetime.now(timezone.utc),
        )

    def with_evidence(
        self, refs: tuple[str, ...], now: datetime | None = None
    ) -> "Instinct":
        """Return a new Instinct with refs appended to its evidence."""
        return replace(
            self,
            evidence=self.evidence + tuple(refs),
            updated_at=now or datetime.now(timezone.utc),
        )


@dataclass(frozen=True)
class Cluster:
    """A proposed grouping of instincts for evolution.

    Attributes:
        domain: The dominant domain of the members.
        member_ids: Member instinct IDs (set semantics).
        artifact_type: Proposed artifact type.
        valid: Whether the cluster is eligible for evolution.
        reason: Why the cluster is not eligible, when invalid.
        domains: All domains spanned by the members.
        theme: Common keywords shared by the members.
    """

    domain: Domain
    member_ids: frozenset[str]
    artifact_type: ArtifactType
    valid: bool
    reason: ClusterRejection | None = None
    domains: frozenset[Domain] = field(default_factory=frozenset)
    theme: str = ""
