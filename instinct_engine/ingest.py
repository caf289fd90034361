"""Observation ingest for the instinct lifecycle engine.

Reads session events from a JSONL file and adapts them into Observation
records. Observations are yielded lazily, one line at a time, so a session
never has to fit in memory; a SessionSource can be iterated again to replay
the same session.

Both the engine's own field names and the hook dialect are accepted:
- kind / event: "prompt", "tool_call", "outcome", "explicit_correction"
  (also "user_message", "tool_start", "tool_complete", "tool_failure", "correction")
- session_id / session, tool / tool_name
- payload / content / prompt / input / tool_input / output / tool_output / error
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from instinct_engine.models import Observation, ObservationKind

logger = logging.getLogger(__name__)

# Security limits for observations file
MAX_OBSERVATIONS_FILE_SIZE: int = 50 * 1024 * 1024  # 50MB
MAX_OBSERVATIONS_LINES: int = 100000

# Maximum length for payload strings
MAX_PAYLOAD_LENGTH: int = 5000

# Maximum length kept from a tool failure message
MAX_ERROR_LENGTH: int = 200

# Error keywords marking an outcome as failed when no explicit flag is given
ERROR_KEYWORDS: tuple[str, ...] = ("error", "failed", "exception", "failure", "traceback")

EVENT_KIND_MAP: dict[str, ObservationKind] = {
    "prompt": ObservationKind.PROMPT,
    "user_message": ObservationKind.PROMPT,
    "user_prompt": ObservationKind.PROMPT,
    "tool_call": ObservationKind.TOOL_CALL,
    "tool_start": ObservationKind.TOOL_CALL,
    "outcome": ObservationKind.OUTCOME,
    "tool_complete": ObservationKind.OUTCOME,
    "tool_failure": ObservationKind.OUTCOME,
    "explicit_correction": ObservationKind.EXPLICIT_CORRECTION,
    "explicit-correction": ObservationKind.EXPLICIT_CORRECTION,
    "correction": ObservationKind.EXPLICIT_CORRECTION,
}

PAYLOAD_KEYS: tuple[str, ...] = ("payload", "content", "prompt", "input", "tool_input")
OUTCOME_PAYLOAD_KEYS: tuple[str, ...] = ("payload", "output", "tool_output", "error", "content")


def has_error_keywords(text: str) -> bool:
    """Check if text contains error keywords."""
    text_lower = text.lower()
    return any(keyword in text_lower for keyword in ERROR_KEYWORDS)


def _to_text(value: Any) -> str:
    """Render a payload value as text, truncated to MAX_PAYLOAD_LENGTH."""
    if isinstance(value, (dict, list)):
        text = json.dumps(value)
    else:
        text = str(value)
    return text[:MAX_PAYLOAD_LENGTH]


def _extract_field(data: dict[str, Any], primary: str, fallback: str, default: Any = "") -> Any:
    """Extract a field from data, trying primary key first, then fallback."""
    return data.get(primary, data.get(fallback, default))


def _extract_payload(data: dict[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = data.get(key)
        if value not in (None, "", {}, []):
            if key == "error":
                return _to_text(value)[:MAX_ERROR_LENGTH]
            return _to_text(value)
    return ""


def _extract_file_path(data: dict[str, Any]) -> str | None:
    """Extract file_path from the event or from its tool input."""
    file_path = data.get("file_path")
    if isinstance(file_path, str) and file_path:
        return file_path

    tool_input = _extract_field(data, "input", "tool_input", None)
    if isinstance(tool_input, str):
        try:
            tool_input = json.loads(tool_input)
        except (json.JSONDecodeError, TypeError):
            return None

    if isinstance(tool_input, dict):
        for key in ("file_path", "filePath", "path"):
            value = tool_input.get(key)
            if isinstance(value, str) and value:
                return value

    return None


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _extract_success(data: dict[str, Any], event: str, payload: str) -> bool | None:
    success = data.get("success")
    if isinstance(success, bool):
        return success
    if event == "tool_failure" or data.get("error"):
        return False
    return not has_error_keywords(payload)


def parse_observation(data: dict[str, Any], fallback_id: str) -> Observation | None:
    """Adapt one raw event dictionary into an Observation.

    Args:
        data: Raw event dictionary.
        fallback_id: ID to use when the event carries none.

    Returns:
        Observation, or None if the event is unusable (unknown kind,
        missing timestamp, or an interrupted tool failure).
    """
    event = str(_extract_field(data, "kind", "event"))
    kind = EVENT_KIND_MAP.get(event)
    if kind is None:
        return None

    # User interrupts are not real failures
    if data.get("is_interrupt") is True:
        return None

    timestamp = _parse_timestamp(data.get("timestamp"))
    if timestamp is None:
        return None

    success: bool | None = None
    if kind is ObservationKind.OUTCOME:
        payload = _extract_payload(data, OUTCOME_PAYLOAD_KEYS)
        success = _extract_success(data, event, payload)
    else:
        payload = _extract_payload(data, PAYLOAD_KEYS)

    return Observation(
        id=str(data.get("id") or fallback_id),
        session_id=str(_extract_field(data, "session_id", "session", "unknown")),
        timestamp=timestamp,
        kind=kind,
        payload=payload,
        tool=str(_extract_field(data, "tool", "tool_name")),
        success=success,
        file_path=_extract_file_path(data),
    )


def _check_file_size(file_path: Path) -> None:
    """Refuse observation files above the size limit.

    Raises:
        ValueError: If file exceeds size limit.
    """
    file_size = file_path.stat().st_size
    if file_size > MAX_OBSERVATIONS_FILE_SIZE:
        raise ValueError(
            f"Observations file exceeds size limit "
            f"({file_size} > {MAX_OBSERVATIONS_FILE_SIZE} bytes)"
        )


def _iter_raw_events(file_path: Path) -> Iterator[tuple[int, dict[str, Any]]]:
    """Yield (line number, event dict) pairs, skipping invalid JSON lines."""
    with file_path.open() as f:
        for line_no, line in enumerate(f, 1):
            if line_no > MAX_OBSERVATIONS_LINES:
                logger.warning(
                    "Observations file %s exceeds %d lines, ignoring the rest",
                    file_path,
                    MAX_OBSERVATIONS_LINES,
                )
                break

            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping invalid JSON at %s:%d", file_path, line_no)
                continue
            if isinstance(data, dict):
                yield line_no, data


def iter_observations(
    file_path: Path, session_id: str | None = None
) -> Iterator[Observation]:
    """Lazily read observations from a JSONL file.

    Args:
        file_path: Path to the observations.jsonl file.
        session_id: If given, only yield observations from this session.

    Yields:
        Observation records in file order.

    Raises:
        ValueError: If file exceeds size limit.
    """
    if not file_path.exists():
        return

    _check_file_size(file_path)

    for line_no, data in _iter_raw_events(file_path):
        observation = parse_observation(data, fallback_id=f"{file_path.stem}-{line_no}")
        if observation is None:
            continue
        if session_id is not None and observation.session_id != session_id:
            continue
        yield observation


def list_sessions(file_path: Path) -> list[str]:
    """List session IDs in order of first appearance.

    Args:
        file_path: Path to the observations.jsonl file.

    Returns:
        List of session IDs.
    """
    seen: dict[str, None] = {}
    for observation in iter_observations(file_path):
        seen.setdefault(observation.session_id, None)
    return list(seen)


class SessionSource:
    """A replayable sequence of one session's observations.

    Every iteration re-reads the file from the start, so a failed run can be
    restarted without keeping the session in memory.
    """

    def __init__(self, file_path: Path, session_id: str):
        self.file_path = file_path
        self.session_id = session_id

    def __iter__(self) -> Iterator[Observation]:
        return iter_observations(self.file_path, self.session_id)

    def __repr__(self) -> str:
        return f"SessionSource({str(self.file_path)!r}, {self.session_id!r})"
