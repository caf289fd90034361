"""Tests for instinct_engine.config module."""

import json
import logging
from pathlib import Path


class TestDefaults:
    """Tests for default settings."""

    def test_default_thresholds(self):
        from instinct_engine.config import DEFAULT_SETTINGS

        assert DEFAULT_SETTINGS.seed_confidence == 0.3
        assert DEFAULT_SETTINGS.min_cluster_size == 3
        assert DEFAULT_SETTINGS.min_member_confidence == 0.75
        assert DEFAULT_SETTINGS.max_commit_retries == 5
        assert DEFAULT_SETTINGS.min_workflow_length == 2
        assert DEFAULT_SETTINGS.min_workflow_repeats == 2

    def test_merge_threshold_above_contradiction_threshold(self):
        from instinct_engine.config import DEFAULT_SETTINGS

        assert (
            DEFAULT_SETTINGS.merge_similarity_threshold
            > DEFAULT_SETTINGS.contradiction_trigger_threshold
        )


class TestSettingsFromDict:
    """Tests for settings_from_dict function."""

    def test_applies_overrides(self):
        from instinct_engine.config import settings_from_dict

        settings = settings_from_dict({"min_cluster_size": 4, "decay_fraction": 0.5})

        assert settings.min_cluster_size == 4
        assert settings.decay_fraction == 0.5

    def test_coerces_int_to_float(self):
        from instinct_engine.config import settings_from_dict

        settings = settings_from_dict({"staleness_window_days": 7})

        assert settings.staleness_window_days == 7.0
        assert isinstance(settings.staleness_window_days, float)

    def test_ignores_unknown_keys(self, caplog):
        from instinct_engine.config import DEFAULT_SETTINGS, settings_from_dict

        with caplog.at_level(logging.WARNING):
            settings = settings_from_dict({"no_such_setting": 1})

        assert settings == DEFAULT_SETTINGS
        assert "no_such_setting" in caplog.text

    def test_ignores_invalid_values(self, caplog):
        from instinct_engine.config import DEFAULT_SETTINGS, settings_from_dict

        with caplog.at_level(logging.WARNING):
            settings = settings_from_dict(
                {"min_cluster_size": 2.5, "decay_fraction": "lots", "max_commit_retries": True}
            )

        assert settings == DEFAULT_SETTINGS
        assert "min_cluster_size" in caplog.text


class TestLoadSettings:
    """Tests for load_settings function."""

    def test_missing_file_gives_defaults(self, tmp_path: Path):
        from instinct_engine.config import DEFAULT_SETTINGS, load_settings

        assert load_settings(tmp_path) == DEFAULT_SETTINGS

    def test_reads_settings_file(self, tmp_path: Path):
        from instinct_engine.config import get_settings_file, load_settings

        settings_file = get_settings_file(tmp_path)
        settings_file.parent.mkdir(parents=True)
        settings_file.write_text(json.dumps({"merge_similarity_threshold": 0.9}))

        assert load_settings(tmp_path).merge_similarity_threshold == 0.9

    def test_invalid_json_gives_defaults(self, tmp_path: Path):
        from instinct_engine.config import DEFAULT_SETTINGS, get_settings_file, load_settings

        settings_file = get_settings_file(tmp_path)
        settings_file.parent.mkdir(parents=True)
        settings_file.write_text("{not json")

        assert load_settings(tmp_path) == DEFAULT_SETTINGS

    def test_non_object_gives_defaults(self, tmp_path: Path):
        from instinct_engine.config import DEFAULT_SETTINGS, get_settings_file, load_settings

        settings_file = get_settings_file(tmp_path)
        settings_file.parent.mkdir(parents=True)
        settings_file.write_text("[1, 2]")

        assert load_settings(tmp_path) == DEFAULT_SETTINGS


class TestPaths:
    """Tests for project path helpers."""

    def test_detects_git_root(self, tmp_path: Path):
        from instinct_engine.config import detect_project_root

        (tmp_path / ".git").mkdir()
        nested = tmp_path / "src" / "pkg"
        nested.mkdir(parents=True)

        assert detect_project_root(nested) == tmp_path.resolve()

    def test_detects_claudemd_root(self, tmp_path: Path):
        from instinct_engine.config import detect_project_root

        (tmp_path / "CLAUDE.md").write_text("# project")

        assert detect_project_root(tmp_path) == tmp_path.resolve()

    def test_project_layout(self, tmp_path: Path):
        from instinct_engine.config import (
            get_learned_dir,
            get_observations_file,
            get_project_instincts_dir,
        )

        assert get_project_instincts_dir(tmp_path) == tmp_path / "docs" / "instincts"
        assert get_learned_dir(tmp_path) == tmp_path / "docs" / "instincts" / "learned"
        assert (
            get_observations_file(tmp_path)
            == tmp_path / "docs" / "instincts" / "observations.jsonl"
        )
