"""Configuration and path definitions for the instinct lifecycle engine."""

import json
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Seed confidence for freshly detected instincts
SEED_CONFIDENCE: float = 0.3

# Similarity thresholds (0.0 - 1.0)
MERGE_SIMILARITY_THRESHOLD: float = 0.85  # Triggers this close are the same instinct
CONTRADICTION_TRIGGER_THRESHOLD: float = 0.8
CONTRADICTION_ACTION_THRESHOLD: float = 0.6  # Actions compared with negations stripped
CORRECTION_SIMILARITY_THRESHOLD: float = 0.8  # Corrections must differ more than this
CLUSTER_SIMILARITY_THRESHOLD: float = 0.5
THEME_SIMILARITY_THRESHOLD: float = 0.5  # Cross-domain grouping by trigger theme

# Evolution thresholds
MIN_CLUSTER_SIZE: int = 3
MIN_MEMBER_CONFIDENCE: float = 0.75  # Every member must be strictly above this

# Staleness decay
STALENESS_WINDOW_DAYS: float = 14.0  # Two weeks of daily sessions without use
DECAY_FRACTION: float = 0.25  # Pull toward 0.5 per elapsed window

# Optimistic concurrency
MAX_COMMIT_RETRIES: int = 5

# Repeated workflow detection
MIN_WORKFLOW_LENGTH: int = 2
MIN_WORKFLOW_REPEATS: int = 2
MAX_WORKFLOW_LENGTH: int = 8

SETTINGS_FILE_NAME: str = "settings.json"


@dataclass(frozen=True)
class EngineSettings:
    """Tunable parameters of the engine.

    Defaults come from the module constants; a project can override any of
    them in docs/instincts/settings.json.
    """

    seed_confidence: float = SEED_CONFIDENCE
    merge_similarity_threshold: float = MERGE_SIMILARITY_THRESHOLD
    contradiction_trigger_threshold: float = CONTRADICTION_TRIGGER_THRESHOLD
    contradiction_action_threshold: float = CONTRADICTION_ACTION_THRESHOLD
    correction_similarity_threshold: float = CORRECTION_SIMILARITY_THRESHOLD
    cluster_similarity_threshold: float = CLUSTER_SIMILARITY_THRESHOLD
    theme_similarity_threshold: float = THEME_SIMILARITY_THRESHOLD
    min_cluster_size: int = MIN_CLUSTER_SIZE
    min_member_confidence: float = MIN_MEMBER_CONFIDENCE
    staleness_window_days: float = STALENESS_WINDOW_DAYS
    decay_fraction: float = DECAY_FRACTION
    max_commit_retries: int = MAX_COMMIT_RETRIES
    min_workflow_length: int = MIN_WORKFLOW_LENGTH
    min_workflow_repeats: int = MIN_WORKFLOW_REPEATS
    max_workflow_length: int = MAX_WORKFLOW_LENGTH


DEFAULT_SETTINGS = EngineSettings()


def _coerce_setting(name: str, default: Any, value: Any) -> Any:
    """Coerce a raw JSON value to the type of the default.

    Raises:
        ValueError: If the value cannot be coerced.
    """
    if isinstance(value, bool):
        raise ValueError(f"{name} must be numeric")
    if isinstance(default, int):
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"{name} must be an integer")
        return int(value)
    return float(value)


def settings_from_dict(
    data: dict[str, Any], base: EngineSettings = DEFAULT_SETTINGS
) -> EngineSettings:
    """Build settings from a dictionary of overrides.

    Unknown keys and invalid values are logged and ignored.

    Args:
        data: Mapping of setting name to value.
        base: Settings to apply the overrides to.

    Returns:
        A new EngineSettings instance.
    """
    known = {f.name: getattr(base, f.name) for f in fields(base)}
    overrides: dict[str, Any] = {}

    for key, value in data.items():
        if key not in known:
            logger.warning("Ignoring unknown setting: %s", key)
            continue
        try:
            overrides[key] = _coerce_setting(key, known[key], value)
        except (TypeError, ValueError) as e:
            logger.warning("Ignoring invalid value for setting %s: %s", key, e)

    return replace(base, **overrides)


def load_settings(project_root: Path) -> EngineSettings:
    """Load engine settings for a project.

    Args:
        project_root: Path to the project root.

    Returns:
        EngineSettings with overrides from the settings file, or defaults
        when the file is missing or unreadable.
    """
    settings_file = get_settings_file(project_root)

    if not settings_file.exists():
        return DEFAULT_SETTINGS

    try:
        data = json.loads(settings_file.read_text())
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Failed to load settings %s: %s", settings_file, e)
        return DEFAULT_SETTINGS

    if not isinstance(data, dict):
        logger.warning("Settings file %s must contain a JSON object", settings_file)
        return DEFAULT_SETTINGS

    return settings_from_dict(data)


def detect_project_root(start_path: Path) -> Path:
    """Detect the project root by finding markers (.git or CLAUDE.md).

    Args:
        start_path: Directory to start searching from.

    Returns:
        Path to project root, or start_path as fallback if no markers found.
    """
    current = start_path.resolve()

    while current != current.parent:
        if (current / ".git").is_dir():
            return current
        if (current / "CLAUDE.md").is_file():
            return current
        current = current.parent

    return start_path.resolve()


def get_project_instincts_dir(project_root: Path) -> Path:
    """Get the instincts directory for a project.

    Returns:
        Path to <project>/docs/instincts/
    """
    return project_root / "docs" / "instincts"


def get_learned_dir(project_root: Path) -> Path:
    """Get the instinct store directory for a project.

    Returns:
        Path to <project>/docs/instincts/learned/
    """
    return get_project_instincts_dir(project_root) / "learned"


def get_observations_file(project_root: Path) -> Path:
    """Get the observations file path for a project.

    Returns:
        Path to <project>/docs/instincts/observations.jsonl
    """
    return get_project_instincts_dir(project_root) / "observations.jsonl"


def get_settings_file(project_root: Path) -> Path:
    """Get the settings override file path for a project.

    Returns:
        Path to <project>/docs/instincts/settings.json
    """
    return get_project_instincts_dir(project_root) / SETTINGS_FILE_NAME
