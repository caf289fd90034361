"""Evolution of mature instincts into higher-order artifacts.

This module provides:
- Clustering of active instincts by domain and action similarity
- A cross-domain pass grouping instincts by trigger theme (agent proposals)
- Validation of clusters (size, member confidence, contradictions)
- A caching clusterer bound to a store, and the emitter boundary

Artifact type selection:
1. Clusters whose members are mostly repeated workflows -> Commands
2. Other single-domain clusters -> Skills
3. Theme groups spanning two or more domains -> Agents

Writing the artifact itself is the emitter's job; this module only decides
what is eligible and archives the members once an artifact exists.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from itertools import combinations
from typing import Iterable, Protocol

from instinct_engine.confidence import default_polarity, is_contradicting_pair
from instinct_engine.config import DEFAULT_SETTINGS, EngineSettings
from instinct_engine.errors import InstinctNotFoundError
from instinct_engine.models import (
    ArtifactType,
    Cluster,
    ClusterRejection,
    Domain,
    Instinct,
    PatternType,
)
from instinct_engine.similarity import (
    PolarityFn,
    SimilarityFn,
    extract_keywords,
    keyword_similarity,
    text_similarity,
)
from instinct_engine.store import InstinctStore

logger = logging.getLogger(__name__)

# Maximum number of keywords kept in a cluster theme
MAX_THEME_KEYWORDS: int = 3

# Minimum number of distinct domains for an agent proposal
MIN_AGENT_DOMAINS: int = 2


@dataclass(frozen=True)
class MemberSummary:
    """What an emitter learns about one cluster member."""

    id: str
    trigger: str
    action: str
    confidence: float


@dataclass(frozen=True)
class ClusterDescription:
    """The payload handed to an ArtifactEmitter.

    Attributes:
        domain: Dominant domain of the cluster.
        artifact_type: Kind of artifact to produce.
        theme: Common keywords of the member triggers.
        members: Member summaries, highest confidence first.
        domains: Every domain the members span.
    """

    domain: Domain
    artifact_type: ArtifactType
    theme: str
    members: tuple[MemberSummary, ...]
    domains: tuple[Domain, ...] = ()


class ArtifactEmitter(Protocol):
    """Turns a cluster description into an artifact.

    emit returns the artifact identifier, or None when no artifact was
    produced (the cluster's members then stay active).
    """

    def emit(self, description: ClusterDescription) -> str | None: ...


def _group_by_domain(instincts: list[Instinct]) -> dict[Domain, list[Instinct]]:
    by_domain: dict[Domain, list[Instinct]] = {}
    for instinct in instincts:
        by_domain.setdefault(instinct.domain, []).append(instinct)
    return by_domain


def _group_similar(
    instincts: list[Instinct],
    similarity: SimilarityFn,
    threshold: float,
    text_of: str,
) -> list[list[Instinct]]:
    """Greedily group instincts around seeds.

    Each unassigned instinct becomes a seed and collects every later
    unassigned instinct whose text (trigger or action) is similar enough.
    """
    groups: list[list[Instinct]] = []
    used_indices: set[int] = set()

    for i, seed in enumerate(instincts):
        if i in used_indices:
            continue
        used_indices.add(i)
        group = [seed]

        for j in range(i + 1, len(instincts)):
            if j in used_indices:
                continue
            other = instincts[j]
            if similarity(getattr(seed, text_of), getattr(other, text_of)) >= threshold:
                group.append(other)
                used_indices.add(j)

        groups.append(group)

    return groups


def _theme(members: list[Instinct]) -> str:
    """Keywords shared by every member trigger, or by most when none are."""
    keyword_sets = [extract_keywords(m.trigger) for m in members]
    if not keyword_sets:
        return ""

    shared = set.intersection(*keyword_sets)
    if not shared:
        counts = Counter(k for keywords in keyword_sets for k in keywords)
        shared = {k for k, n in counts.items() if n > 1}

    return " ".join(sorted(shared)[:MAX_THEME_KEYWORDS])


def _dominant_domain(members: list[Instinct]) -> Domain:
    counts = Counter(m.domain for m in members)
    order = list(Domain)
    return max(counts, key=lambda d: (counts[d], -order.index(d)))


def _artifact_type(members: list[Instinct]) -> ArtifactType:
    workflows = sum(1 for m in members if m.pattern is PatternType.REPEATED_WORKFLOW)
    if workflows * 2 > len(members):
        return ArtifactType.COMMAND
    return ArtifactType.SKILL


def validate_members(
    members: list[Instinct],
    similarity: SimilarityFn = text_similarity,
    polarity: PolarityFn | None = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> ClusterRejection | None:
    """Check whether a group of instincts may evolve.

    Checks run in order: member count, member confidence (every member
    strictly above min_member_confidence), then contradictions between any
    two members regardless of domain.

    Returns:
        None if the group is eligible, otherwise the first failing reason.
    """
    if len(members) < settings.min_cluster_size:
        return ClusterRejection.TOO_FEW_MEMBERS

    if any(m.confidence <= settings.min_member_confidence for m in members):
        return ClusterRejection.LOW_CONFIDENCE

    if polarity is None:
        polarity = default_polarity(similarity, settings)
    for a, b in combinations(members, 2):
        if is_contradicting_pair(a, b, similarity, polarity, settings, require_same_domain=False):
            return ClusterRejection.UNRESOLVED_CONTRADICTION

    return None


def _make_cluster(
    members: list[Instinct],
    artifact_type: ArtifactType,
    similarity: SimilarityFn,
    polarity: PolarityFn | None,
    settings: EngineSettings,
) -> Cluster:
    reason = validate_members(members, similarity, polarity, settings)
    return Cluster(
        domain=_dominant_domain(members),
        member_ids=frozenset(m.id for m in members),
        artifact_type=artifact_type,
        valid=reason is None,
        reason=reason,
        domains=frozenset(m.domain for m in members),
        theme=_theme(members),
    )


def propose_clusters(
    instincts: Iterable[Instinct],
    settings: EngineSettings = DEFAULT_SETTINGS,
    similarity: SimilarityFn = text_similarity,
    polarity: PolarityFn | None = None,
) -> list[Cluster]:
    """Propose evolution clusters from a snapshot of instincts.

    Pure: reads nothing but its arguments and writes nothing.

    Args:
        instincts: Instinct snapshot; only active instincts are clustered.
        settings: Engine settings with the clustering thresholds.
        similarity: Similarity applied to actions (the merge similarity).
        polarity: Mutual-exclusion check for actions.

    Returns:
        Every proposed cluster, valid or not. Invalid clusters carry the
        reason they were rejected.
    """
    if polarity is None:
        polarity = default_polarity(similarity, settings)

    active = sorted((i for i in instincts if i.status == "active"), key=lambda i: i.id)
    clusters: list[Cluster] = []
    clustered: set[str] = set()

    by_domain = _group_by_domain(active)
    for domain in Domain:
        for members in _group_similar(
            by_domain.get(domain, []),
            similarity,
            settings.cluster_similarity_threshold,
            "action",
        ):
            cluster = _make_cluster(
                members, _artifact_type(members), similarity, polarity, settings
            )
            clusters.append(cluster)
            if cluster.valid:
                clustered.update(cluster.member_ids)

    remaining = [i for i in active if i.id not in clustered]
    for members in _group_similar(
        remaining, keyword_similarity, settings.theme_similarity_threshold, "trigger"
    ):
        if len({m.domain for m in members}) < MIN_AGENT_DOMAINS:
            continue
        clusters.append(
            _make_cluster(members, ArtifactType.AGENT, similarity, polarity, settings)
        )

    return clusters


def describe_cluster(cluster: Cluster, instincts: Iterable[Instinct]) -> ClusterDescription:
    """Build the emitter payload for a cluster.

    Args:
        cluster: The cluster to describe.
        instincts: Instincts to look the members up in.

    Raises:
        InstinctNotFoundError: If a member is missing from instincts.
    """
    by_id = {i.id: i for i in instincts}
    members: list[Instinct] = []
    for member_id in sorted(cluster.member_ids):
        if member_id not in by_id:
            raise InstinctNotFoundError(member_id)
        members.append(by_id[member_id])

    members.sort(key=lambda m: (-m.confidence, m.id))
    order = list(Domain)

    return ClusterDescription(
        domain=cluster.domain,
        artifact_type=cluster.artifact_type,
        theme=cluster.theme,
        members=tuple(
            MemberSummary(id=m.id, trigger=m.trigger, action=m.action, confidence=m.confidence)
            for m in members
        ),
        domains=tuple(sorted(cluster.domains, key=order.index)),
    )


class EvolutionClusterer:
    """Proposes clusters from a store and archives accepted ones.

    Proposals are cached on the store's (id, version) snapshot, so repeated
    calls do not recompute groups until some record changes.
    """

    def __init__(
        self,
        store: InstinctStore,
        similarity: SimilarityFn | None = None,
        polarity: PolarityFn | None = None,
    ):
        self.store = store
        self.similarity = similarity or store.similarity
        self.polarity = polarity or store.polarity
        self._cache_key: tuple[tuple[str, int], ...] | None = None
        self._cache: list[Cluster] = []

    def propose(self) -> list[Cluster]:
        """Return cluster proposals for the current store contents."""
        key = self.store.snapshot_key()
        if key != self._cache_key:
            self._cache = propose_clusters(
                self.store.all(), self.store.settings, self.similarity, self.polarity
            )
            self._cache_key = key
            logger.debug("Proposed %d clusters from %d records", len(self._cache), len(key))
        return list(self._cache)

    def valid_clusters(self) -> list[Cluster]:
        return [c for c in self.propose() if c.valid]

    def describe(self, cluster: Cluster) -> ClusterDescription:
        return describe_cluster(cluster, self.store.all())

    def accept(self, cluster: Cluster, artifact_id: str) -> list[Instinct]:
        """Archive every member of an evolved cluster.

        Members are re-read from the store and must still be active and
        pass validate_members.

        Args:
            cluster: A valid cluster.
            artifact_id: Identifier of the artifact the members became.

        Returns:
            The archived records, each referencing artifact_id.

        Raises:
            ValueError: If the cluster is not valid, or no longer is.
            InstinctNotFoundError: If a member has no readable record.
        """
        if not cluster.valid:
            raise ValueError(f"Cannot accept invalid cluster: {cluster.reason}")

        current = {i.id: i for i in self.store.all()}
        members: list[Instinct] = []
        for member_id in sorted(cluster.member_ids):
            if member_id not in current:
                raise InstinctNotFoundError(member_id)
            if current[member_id].status != "active":
                raise ValueError(f"Cluster member {member_id} is {current[member_id].status}")
            members.append(current[member_id])

        reason = validate_members(members, self.similarity, self.polarity, self.store.settings)
        if reason is not None:
            raise ValueError(f"Cluster is no longer valid: {reason.value}")

        archived = [
            self.store.archive(member_id, artifact=artifact_id)
            for member_id in sorted(cluster.member_ids)
        ]
        logger.info(
            "Archived %d instincts into %s %s",
            len(archived),
            cluster.artifact_type.value,
            artifact_id,
        )
        return archived


def evolve(clusterer: EvolutionClusterer, emitter: ArtifactEmitter) -> list[tuple[Cluster, str]]:
    """Hand every valid cluster to the emitter and archive accepted ones.

    Returns:
        (cluster, artifact id) pairs for every emitted artifact.
    """
    evolved: list[tuple[Cluster, str]] = []

    for cluster in clusterer.valid_clusters():
        artifact_id = emitter.emit(clusterer.describe(cluster))
        if not artifact_id:
            logger.info(
                "Emitter declined %s cluster in %s",
                cluster.artifact_type.value,
                cluster.domain.value,
            )
            continue
        clusterer.accept(cluster, artifact_id)
        evolved.append((cluster, artifact_id))

    return evolved
