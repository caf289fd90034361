"""Text similarity and polarity checks.

Similarity is a pluggable capability: every component takes a
SimilarityFn (text, text -> score in [0, 1]) so callers and tests can
substitute their own. Two implementations are provided:
- text_similarity: character-level SequenceMatcher ratio on normalized text
- keyword_similarity: Jaccard index over meaningful keywords

Contradiction detection additionally needs a PolarityFn deciding whether two
action texts prescribe mutually exclusive behavior.
"""

import re
from difflib import SequenceMatcher
from typing import Callable

from instinct_engine.utils import normalize_text, normalize_trigger

SimilarityFn = Callable[[str, str], float]
PolarityFn = Callable[[str, str], bool]

KEYWORD_STOP_WORDS: frozenset[str] = frozenset(
    {"when", "the", "a", "an", "to", "for", "of", "in", "on", "is", "are", "and", "or", "with"}
)

# Words that flip the polarity of an action, mapped to the word that
# replaces them in the polarity-free core ("" drops the word).
POLARITY_FLIPS: dict[str, str] = {
    "no": "",
    "not": "",
    "never": "",
    "don't": "",
    "dont": "",
    "avoid": "use",
    "disable": "enable",
    "remove": "add",
    "exclude": "include",
    "forbid": "allow",
    "without": "with",
    "skip": "run",
}

# Words that carry no polarity but differ between phrasings
POLARITY_NEUTRAL: frozenset[str] = frozenset({"always", "do", "does", "please"})

_TOKEN_PATTERN = re.compile(r"[\w']+")


def text_similarity(a: str, b: str) -> float:
    """Calculate similarity between two texts.

    Args:
        a: First text.
        b: Second text.

    Returns:
        Similarity score between 0.0 and 1.0.
    """
    normalized_a = normalize_trigger(a)
    normalized_b = normalize_trigger(b)
    if normalized_a == normalized_b:
        return 1.0
    return SequenceMatcher(None, normalized_a, normalized_b).ratio()


def extract_keywords(text: str) -> set[str]:
    """Extract meaningful lowercase keywords from a text."""
    words = _TOKEN_PATTERN.findall(text.lower())
    return {w for w in words if w not in KEYWORD_STOP_WORDS and len(w) > 2}


def keyword_similarity(a: str, b: str) -> float:
    """Calculate Jaccard similarity between two texts based on keyword overlap.

    Returns:
        Similarity score between 0.0 and 1.0 (Jaccard index).
    """
    keywords_a = extract_keywords(a)
    keywords_b = extract_keywords(b)

    if not keywords_a or not keywords_b:
        return 0.0

    return len(keywords_a & keywords_b) / len(keywords_a | keywords_b)


def polarity_core(text: str) -> tuple[bool, str]:
    """Split an action text into its polarity and a polarity-free core.

    Args:
        text: Action text such as "Never commit secrets".

    Returns:
        Tuple of (negated, core). "Never commit secrets" gives
        (True, "commit secrets"); "Always commit secrets" gives
        (False, "commit secrets").
    """
    negated = False
    core: list[str] = []

    for token in _TOKEN_PATTERN.findall(normalize_text(text)):
        if token in POLARITY_FLIPS:
            negated = not negated
            replacement = POLARITY_FLIPS[token]
            if replacement:
                core.append(replacement)
        elif token not in POLARITY_NEUTRAL:
            core.append(token)

    return negated, " ".join(core)


def opposite_polarity(
    a: str,
    b: str,
    similarity: SimilarityFn = text_similarity,
    threshold: float = 0.6,
) -> bool:
    """Check whether two action texts prescribe mutually exclusive behavior.

    The actions must talk about the same thing once negations are stripped,
    and exactly one of them must be negated.

    Args:
        a: First action text.
        b: Second action text.
        similarity: Similarity function applied to the polarity-free cores.
        threshold: Minimum core similarity.

    Returns:
        True if the actions contradict each other.
    """
    negated_a, core_a = polarity_core(a)
    negated_b, core_b = polarity_core(b)

    if negated_a == negated_b:
        return False
    if not core_a or not core_b:
        return False

    return similarity(core_a, core_b) >= threshold
