"""Shared utility functions for the instinct lifecycle engine."""

import hashlib
import os
import re

# Number of trigger words kept in an instinct ID
ID_WORD_LIMIT: int = 4

# Length of the content hash suffix in an instinct ID
ID_HASH_LENGTH: int = 10


def sanitize_id(raw_id: str, allow_dots: bool = False) -> str:
    """Sanitize an ID or filename to prevent path traversal attacks.

    Args:
        raw_id: The raw ID or filename string.
        allow_dots: If True, preserve dots (for filenames). Default False (for IDs).

    Returns:
        A safe string containing only alphanumeric characters, dash, and underscore.
        Returns 'unnamed' if input is empty or fully invalid.
    """
    safe_id = os.path.basename(raw_id)

    if allow_dots:
        safe_id = re.sub(r"[^a-zA-Z0-9_.-]", "-", safe_id)
    else:
        safe_id = re.sub(r"[^a-zA-Z0-9_-]", "-", safe_id)

    safe_id = re.sub(r"-+", "-", safe_id).strip("-")

    if not safe_id:
        safe_id = "unnamed"

    return safe_id


# Common stop words to remove when normalizing trigger strings
TRIGGER_STOP_WORDS: tuple[str, ...] = (
    "when",
    "while",
    "before",
    "after",
)


def normalize_text(text: str) -> str:
    """Normalize text for comparison: lowercase, collapse whitespace."""
    return " ".join(text.lower().split())


def normalize_trigger(trigger: str) -> str:
    """Normalize a trigger string for comparison and clustering.

    Removes leading condition words and normalizes case and whitespace.

    Args:
        trigger: The trigger string to normalize.

    Returns:
        Normalized trigger string.
    """
    words = normalize_text(trigger).split()
    return " ".join(w for w in words if w not in TRIGGER_STOP_WORDS)


def generate_instinct_id(trigger: str, action: str) -> str:
    """Derive a stable kebab-case ID from trigger and action content.

    The same trigger/action text always yields the same ID, so identical
    candidates land on the same record.

    Args:
        trigger: The trigger text.
        action: The action text.

    Returns:
        ID of the form "<trigger-words>-<hash>".
    """
    digest = hashlib.sha256(
        f"{normalize_text(trigger)}\n{normalize_text(action)}".encode()
    ).hexdigest()[:ID_HASH_LENGTH]

    normalized = "".join(c if c.isalnum() else " " for c in normalize_trigger(trigger))
    words = normalized.split()[:ID_WORD_LIMIT]
    prefix = sanitize_id("-".join(words)) if words else "instinct"
    return f"{prefix}-{digest}"
