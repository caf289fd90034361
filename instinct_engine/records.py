"""Persisted instinct record format.

Each record is a metadata block delimited by "---" lines, followed by
free-text "## Action" and "## Evidence" sections:

    ---
    id: "run-tests-3f2a9c01de"
    trigger: "when asked: run the tests"
    confidence: 0.75
    domain: "testing"
    source: "session-observation"
    ...
    ---

    ## Action

    Run pytest -x before committing

    ## Evidence

    - obs:session-1-12

Metadata is parsed against an explicit schema. Unknown fields are kept as an
opaque passthrough and written back verbatim, continuation lines included,
so newer writers can add fields without older ones dropping them.

Action lines that would read as a delimiter or a heading (or that start with
a backslash) are written with a leading backslash, which is dropped again on
read.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable

from instinct_engine.errors import MalformedRecordError
from instinct_engine.models import (
    INSTINCT_SOURCES,
    INSTINCT_STATUSES,
    Instinct,
    PatternType,
    is_observation_ref,
)
from instinct_engine.domains import parse_domain

logger = logging.getLogger(__name__)

FRONTMATTER_DELIMITER: str = "---"
ACTION_HEADING: str = "## Action"
EVIDENCE_HEADING: str = "## Evidence"

REQUIRED_FIELDS: tuple[str, ...] = ("id", "trigger", "confidence", "domain", "source")

# Field order used when writing records
KNOWN_FIELDS: tuple[str, ...] = (
    "id",
    "trigger",
    "confidence",
    "domain",
    "source",
    "status",
    "applications",
    "successes",
    "version",
    "created_at",
    "updated_at",
    "last_applied_at",
    "pattern",
    "decay_windows",
    "artifact",
)

EXPORT_FIELDS: tuple[str, ...] = ("id", "trigger", "confidence", "domain", "source")

_HEADING_PATTERN = re.compile(r"^##\s+(.+?)\s*$")
ACTION_ESCAPE: str = "\\"
_UNESCAPES: dict[str, str] = {"\\": "\\", '"': '"', "n": "\n", "r": "\r", "t": "\t"}


def _escape_yaml_string(value: str) -> str:
    """Escape a string for safe YAML double-quoted string.

    Args:
        value: The raw string value.

    Returns:
        Escaped string safe for YAML double-quoted context.
    """
    # Order matters: escape backslashes first to avoid double-escaping
    escaped = value.replace("\\", "\\\\")
    escaped = escaped.replace('"', '\\"')
    escaped = escaped.replace("\n", "\\n")
    escaped = escaped.replace("\r", "\\r")
    return escaped


def _unescape_yaml_string(value: str) -> str:
    """Reverse _escape_yaml_string."""
    result: list[str] = []
    chars = iter(value)
    for char in chars:
        if char != "\\":
            result.append(char)
            continue
        following = next(chars, "")
        result.append(_UNESCAPES.get(following, "\\" + following))
    return "".join(result)


def _parse_scalar(raw: str) -> str:
    """Parse a raw metadata value into a string."""
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return _unescape_yaml_string(value[1:-1])
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1].replace("''", "'")
    return value


def _quoted(value: str) -> str:
    return f'"{_escape_yaml_string(value)}"'


def _needs_escape(line: str) -> bool:
    stripped = line.strip()
    return (
        stripped == FRONTMATTER_DELIMITER
        or stripped.startswith("#")
        or stripped.startswith(ACTION_ESCAPE)
    )


def escape_action(action: str) -> str:
    """Escape action lines that would break the record structure."""
    return "\n".join(
        ACTION_ESCAPE + line if _needs_escape(line) else line for line in action.split("\n")
    )


def unescape_action(text: str) -> str:
    """Reverse escape_action."""
    return "\n".join(
        line[len(ACTION_ESCAPE):] if line.startswith(ACTION_ESCAPE) else line
        for line in text.split("\n")
    )


def split_records(content: str) -> list[tuple[list[tuple[str, str]], str]]:
    """Split text into (metadata, body) pairs.

    Args:
        content: Text holding one or more records.

    Returns:
        List of (metadata items as (key, raw value) pairs, body text).
    """
    records: list[tuple[list[tuple[str, str]], str]] = []
    metadata: list[tuple[str, str]] | None = None
    body_lines: list[str] = []
    in_frontmatter = False

    for line in content.split("\n"):
        if line.strip() == FRONTMATTER_DELIMITER:
            if in_frontmatter:
                in_frontmatter = False
                continue
            if metadata is not None:
                records.append((metadata, "\n".join(body_lines).strip()))
            metadata = []
            body_lines = []
            in_frontmatter = True
        elif in_frontmatter:
            if not line.strip():
                continue
            if metadata and (line[0] in " \t" or line.startswith("- ") or ":" not in line):
                # Continuation of a multi-line value (YAML list or block)
                key, value = metadata[-1]
                metadata[-1] = (key, f"{value}\n{line.rstrip()}")
                continue
            if ":" not in line:
                logger.warning("Ignoring metadata line without a key: %r", line)
                continue
            key, value = line.split(":", 1)
            metadata.append((key.strip(), value.strip()))  # type: ignore[union-attr]
        elif metadata is not None:
            body_lines.append(line)

    if metadata is not None:
        records.append((metadata, "\n".join(body_lines).strip()))

    return records


def _parse_sections(body: str) -> dict[str, list[str]]:
    """Group body lines by their "## " heading."""
    sections: dict[str, list[str]] = {}
    current: list[str] | None = None
    for line in body.split("\n"):
        match = _HEADING_PATTERN.match(line)
        if match:
            current = sections.setdefault(match.group(1).strip().lower(), [])
        elif current is not None:
            current.append(line)
    return sections


def parse_body(body: str) -> tuple[str, tuple[str, ...]]:
    """Extract the action text and evidence references from a record body."""
    sections = _parse_sections(body)
    action = unescape_action("\n".join(sections.get("action", [])).strip())
    evidence = tuple(
        line.strip()[2:].strip()
        for line in sections.get("evidence", [])
        if line.strip().startswith("- ") and line.strip()[2:].strip()
    )
    return action, evidence


def _convert(source: str, key: str, raw: str, converter: Callable[[str], Any]) -> Any:
    try:
        return converter(_parse_scalar(raw))
    except (TypeError, ValueError) as e:
        raise MalformedRecordError(source, f"invalid {key}: {raw!r} ({e})") from e


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_source(value: str) -> str:
    if value not in INSTINCT_SOURCES:
        raise ValueError(f"unknown source {value!r}")
    return value


def _parse_status(value: str) -> str:
    if value not in INSTINCT_STATUSES:
        raise ValueError(f"unknown status {value!r}")
    return value


def _parse_optional(converter: Callable[[str], Any]) -> Callable[[str], Any]:
    def parse(value: str) -> Any:
        return converter(value) if value else None

    return parse


def _parse_non_negative(value: str) -> int:
    number = int(value)
    if number < 0:
        raise ValueError("must be non-negative")
    return number


FIELD_PARSERS: dict[str, Callable[[str], Any]] = {
    "id": str,
    "trigger": str,
    "confidence": float,
    "domain": parse_domain,
    "source": _parse_source,
    "status": _parse_status,
    "applications": _parse_non_negative,
    "successes": _parse_non_negative,
    "version": int,
    "created_at": _parse_timestamp,
    "updated_at": _parse_timestamp,
    "last_applied_at": _parse_optional(_parse_timestamp),
    "pattern": _parse_optional(PatternType),
    "decay_windows": _parse_non_negative,
    "artifact": _parse_optional(str),
}


def build_instinct(metadata: list[tuple[str, str]], body: str, source: str) -> Instinct:
    """Build an Instinct from parsed metadata and body.

    Args:
        metadata: (key, raw value) pairs from the metadata block.
        body: Body text holding the action and evidence sections.
        source: Where the record came from, for error messages.

    Returns:
        The parsed Instinct.

    Raises:
        MalformedRecordError: If a required field is missing or a known
            field holds an invalid value.
    """
    values: dict[str, Any] = {}
    extra: list[tuple[str, str]] = []

    for key, raw in metadata:
        parser = FIELD_PARSERS.get(key)
        if parser is None:
            extra.append((key, raw))
            continue
        values[key] = _convert(source, key, raw, parser)

    missing = [f for f in REQUIRED_FIELDS if f not in values]
    if missing:
        raise MalformedRecordError(source, f"missing required fields: {', '.join(missing)}")

    if not values["id"] or not values["trigger"]:
        raise MalformedRecordError(source, "id and trigger must not be empty")

    confidence = values["confidence"]
    if not 0.0 < confidence < 1.0:
        raise MalformedRecordError(source, f"confidence out of range: {confidence}")

    applications = values.get("applications", 0)
    successes = values.get("successes", 0)
    if successes > applications:
        raise MalformedRecordError(source, "successes exceed applications")

    action, evidence = parse_body(body)
    if not action:
        raise MalformedRecordError(source, "missing action section")

    now = datetime.now(timezone.utc)
    created_at = values.get("created_at", now)

    return Instinct(
        id=values["id"],
        trigger=values["trigger"],
        action=action,
        domain=values["domain"],
        confidence=confidence,
        source=values["source"],
        applications=applications,
        successes=successes,
        evidence=evidence,
        status=values.get("status", "active"),
        created_at=created_at,
        updated_at=values.get("updated_at", created_at),
        last_applied_at=values.get("last_applied_at"),
        version=values.get("version", 1),
        pattern=values.get("pattern"),
        decay_windows=values.get("decay_windows", 0),
        artifact=values.get("artifact"),
        extra=tuple(extra),
    )


def parse_record(content: str, source: str) -> Instinct:
    """Parse a single-record file.

    Raises:
        MalformedRecordError: If the content holds no valid record.
    """
    records = split_records(content)
    if not records:
        raise MalformedRecordError(source, "no metadata block")
    if len(records) > 1:
        logger.warning("Record file %s holds %d records, using the first", source, len(records))
    metadata, body = records[0]
    return build_instinct(metadata, body, source)


def _format_value(key: str, instinct: Instinct) -> str | None:
    """Render one known field, or None to omit it."""
    value = getattr(instinct, key)
    if value is None:
        return None
    if key == "domain" or key == "pattern":
        return _quoted(value.value)
    if isinstance(value, datetime):
        return _quoted(value.isoformat())
    if isinstance(value, str):
        return _quoted(value)
    return str(value)


def _render(instinct: Instinct, fields: tuple[str, ...], evidence: tuple[str, ...],
            extra: tuple[tuple[str, str], ...]) -> str:
    lines = [FRONTMATTER_DELIMITER]
    for key in fields:
        rendered = _format_value(key, instinct)
        if rendered is not None:
            lines.append(f"{key}: {rendered}")
    for key, raw in extra:
        # Multi-line values start on the line after the key
        separator = ":" if not raw or raw.startswith("\n") else ": "
        lines.append(f"{key}{separator}{raw}")
    lines.append(FRONTMATTER_DELIMITER)
    action = escape_action(instinct.action.strip())
    lines.extend(["", ACTION_HEADING, "", action, "", EVIDENCE_HEADING, ""])
    lines.extend(f"- {' '.join(ref.split())}" for ref in evidence)
    return "\n".join(lines) + "\n"


def render_record(instinct: Instinct) -> str:
    """Render an instinct in the persisted record format."""
    return _render(instinct, KNOWN_FIELDS, instinct.evidence, instinct.extra)


def render_export_record(instinct: Instinct) -> str:
    """Render an instinct for export.

    Only the exportable fields and observation references leave the store:
    no counters, no free-text notes, no passthrough fields.
    """
    refs = tuple(ref for ref in instinct.evidence if is_observation_ref(ref))
    return _render(instinct, EXPORT_FIELDS, refs, ())


def render_export_bundle(instincts: list[Instinct]) -> str:
    """Render several instincts as one export document."""
    return "\n".join(render_export_record(instinct) for instinct in instincts)
