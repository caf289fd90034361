"""Keyword and path based domain tagging."""

import re
from typing import Iterable

from instinct_engine.models import Domain

DEFAULT_DOMAIN: Domain = Domain.WORKFLOW

# Keywords matched at word boundaries against trigger and action text
DOMAIN_KEYWORDS: dict[Domain, tuple[str, ...]] = {
    Domain.SECURITY: (
        "security", "secret", "secrets", "password", "token", "credential",
        "credentials", "auth", "authentication", "injection", "xss", "csrf",
        "vulnerability", "sanitize", "encrypt", "permission",
    ),
    Domain.TESTING: (
        "test", "tests", "testing", "pytest", "unittest", "coverage", "assert",
        "fixture", "mock", "jest", "vitest", "spec",
    ),
    Domain.ARCHITECTURE: (
        "architecture", "module", "interface", "dependency", "layer", "service",
        "refactor", "schema", "migration", "package", "api",
    ),
    Domain.STYLE: (
        "style", "format", "formatting", "lint", "linter", "naming", "indent",
        "indentation", "camelcase", "snake_case", "prettier", "black", "ruff",
        "gofmt", "eslint",
    ),
    Domain.DEBUGGING: (
        "error", "exception", "traceback", "debug", "stack", "failure", "crash",
        "bug", "fix",
    ),
    Domain.DOCUMENTATION: (
        "docs", "documentation", "readme", "docstring", "comment", "changelog",
    ),
    Domain.GIT: (
        "git", "commit", "branch", "merge", "rebase", "push", "pull", "pr",
    ),
    Domain.WORKFLOW: (
        "workflow", "build", "deploy", "run", "setup", "install",
    ),
}

# Path patterns matched against file paths touched by the evidence
DOMAIN_PATH_PATTERNS: dict[Domain, tuple[re.Pattern[str], ...]] = {
    Domain.TESTING: (
        re.compile(r"(^|/)tests?/"),
        re.compile(r"(^|/)test_[^/]+\.py$"),
        re.compile(r"_test\.(py|go)$"),
        re.compile(r"\.(test|spec)\.(ts|tsx|js|jsx)$"),
    ),
    Domain.DOCUMENTATION: (
        re.compile(r"\.(md|rst|adoc)$"),
        re.compile(r"(^|/)docs?/"),
    ),
    Domain.SECURITY: (
        re.compile(r"(^|/)\.env"),
        re.compile(r"(^|/)(auth|security)/"),
    ),
    Domain.GIT: (
        re.compile(r"(^|/)\.git(hub|ignore|attributes)?(/|$)"),
    ),
    Domain.ARCHITECTURE: (
        re.compile(r"(^|/)migrations?/"),
        re.compile(r"(^|/)(internal|domain|handlers?)/"),
    ),
    Domain.STYLE: (
        re.compile(r"(^|/)(\.editorconfig|\.prettierrc[^/]*|pyproject\.toml|\.eslintrc[^/]*)$"),
    ),
}

_KEYWORD_PATTERNS: dict[Domain, re.Pattern[str]] = {
    domain: re.compile(r"\b(" + "|".join(re.escape(k) for k in keywords) + r")\b")
    for domain, keywords in DOMAIN_KEYWORDS.items()
}

# Path hits weigh more than a single keyword hit
PATH_MATCH_WEIGHT: int = 2


def parse_domain(value: str) -> Domain:
    """Parse a domain tag.

    Raises:
        ValueError: If the value is not a known domain.
    """
    return Domain(value.strip().lower())


def score_domains(text: str, file_paths: Iterable[str] = ()) -> dict[Domain, int]:
    """Score every domain by keyword and path matches.

    Args:
        text: Text to scan (trigger and action).
        file_paths: File paths touched by the evidence.

    Returns:
        Mapping of domain to match score; domains without matches are omitted.
    """
    scores: dict[Domain, int] = {}
    text_lower = text.lower()

    for domain, pattern in _KEYWORD_PATTERNS.items():
        hits = len(pattern.findall(text_lower))
        if hits:
            scores[domain] = scores.get(domain, 0) + hits

    for path in file_paths:
        normalized = path.replace("\\", "/").lower()
        for domain, patterns in DOMAIN_PATH_PATTERNS.items():
            if any(p.search(normalized) for p in patterns):
                scores[domain] = scores.get(domain, 0) + PATH_MATCH_WEIGHT

    return scores


def tag_domain(text: str, file_paths: Iterable[str] = ()) -> Domain:
    """Pick the best matching domain for a candidate.

    Ties are broken by the declaration order of Domain. Falls back to
    the workflow domain when nothing matches.

    Args:
        text: Text to scan (trigger and action).
        file_paths: File paths touched by the evidence.

    Returns:
        The chosen Domain.
    """
    scores = score_domains(text, file_paths)
    if not scores:
        return DEFAULT_DOMAIN

    order = list(Domain)
    return max(scores, key=lambda d: (scores[d], -order.index(d)))
