"""Tests for instinct_engine.records module."""

from datetime import datetime, timezone

import pytest

T0 = datetime(2026, 1, 1, 9, 30, tzinfo=timezone.utc)

RECORD = """---
id: "run-pytest-0123456789"
trigger: "when finishing a feature"
confidence: 0.75
domain: "testing"
source: "session-observation"
applications: 2
successes: 2
owner: "team-a"
review_after: 2026-06-01
---

## Action

Run pytest before committing

## Evidence

- obs:s1-4
- note:seen in code review
"""


def _make_instinct(**overrides):
    """Helper to create test instincts."""
    from instinct_engine.models import Domain, Instinct, PatternType

    values = dict(
        id="run-pytest-0123456789",
        trigger='when asked: "run the tests"\nplease',
        action="Run pytest before committing",
        domain=Domain.TESTING,
        confidence=2 / 3,
        source="session-observation",
        applications=1,
        successes=1,
        evidence=("obs:s1-4", "obs:s1-5", "note:from a code review"),
        status="active",
        created_at=T0,
        updated_at=T0,
        last_applied_at=T0,
        version=3,
        pattern=PatternType.USER_CORRECTION,
        decay_windows=1,
    )
    values.update(overrides)
    return Instinct(**values)


class TestParseRecord:
    """Tests for parse_record function."""

    def test_parses_fields_and_sections(self):
        from instinct_engine.models import Domain
        from instinct_engine.records import parse_record

        instinct = parse_record(RECORD, "test.md")

        assert instinct.id == "run-pytest-0123456789"
        assert instinct.trigger == "when finishing a feature"
        assert instinct.action == "Run pytest before committing"
        assert instinct.domain is Domain.TESTING
        assert instinct.confidence == 0.75
        assert instinct.applications == 2
        assert instinct.successes == 2
        assert instinct.evidence == ("obs:s1-4", "note:seen in code review")

    def test_defaults_for_optional_fields(self):
        from instinct_engine.records import parse_record

        instinct = parse_record(RECORD, "test.md")

        assert instinct.status == "active"
        assert instinct.version == 1
        assert instinct.pattern is None
        assert instinct.artifact is None
        assert instinct.updated_at == instinct.created_at

    def test_unknown_fields_are_kept_verbatim(self):
        from instinct_engine.records import parse_record

        instinct = parse_record(RECORD, "test.md")

        assert instinct.extra == (("owner", '"team-a"'), ("review_after", "2026-06-01"))

    def test_multi_line_unknown_field(self):
        from instinct_engine.records import parse_record

        content = RECORD.replace("owner: \"team-a\"\n", "tags:\n  - alpha\n  - beta\n")

        instinct = parse_record(content, "test.md")

        assert instinct.extra[0] == ("tags", "\n  - alpha\n  - beta")
        assert instinct.domain.value == "testing"

    def test_missing_required_field(self):
        from instinct_engine.errors import MalformedRecordError
        from instinct_engine.records import parse_record

        content = RECORD.replace('domain: "testing"\n', "")

        with pytest.raises(MalformedRecordError, match="domain"):
            parse_record(content, "test.md")

    @pytest.mark.parametrize(
        "old, new",
        [
            ("confidence: 0.75", "confidence: high"),
            ("confidence: 0.75", "confidence: 1.5"),
            ("confidence: 0.75", "confidence: 1.0"),
            ("confidence: 0.75", "confidence: 0.0"),
            ('domain: "testing"', 'domain: "general"'),
            ('source: "session-observation"', 'source: "unknown"'),
            ("successes: 2", "successes: 3"),
            ("applications: 2", "applications: -1"),
        ],
    )
    def test_invalid_values(self, old: str, new: str):
        from instinct_engine.errors import MalformedRecordError
        from instinct_engine.records import parse_record

        with pytest.raises(MalformedRecordError):
            parse_record(RECORD.replace(old, new), "test.md")

    def test_missing_action(self):
        from instinct_engine.errors import MalformedRecordError
        from instinct_engine.records import parse_record

        content = RECORD.split("## Action")[0]

        with pytest.raises(MalformedRecordError, match="action"):
            parse_record(content, "test.md")

    def test_no_metadata_block(self):
        from instinct_engine.errors import MalformedRecordError
        from instinct_engine.records import parse_record

        with pytest.raises(MalformedRecordError):
            parse_record("just some notes", "notes.md")

    def test_error_names_the_source(self):
        from instinct_engine.errors import MalformedRecordError
        from instinct_engine.records import parse_record

        with pytest.raises(MalformedRecordError) as exc_info:
            parse_record("---\nid: x\n---\n", "learned/x.md")

        assert exc_info.value.source == "learned/x.md"


class TestRenderRecord:
    """Tests for render_record function."""

    def test_round_trip(self):
        from instinct_engine.records import parse_record, render_record

        instinct = _make_instinct()

        assert parse_record(render_record(instinct), "x.md") == instinct

    def test_escapes_strings(self):
        from instinct_engine.records import render_record

        content = render_record(_make_instinct())

        assert 'trigger: "when asked: \\"run the tests\\"\\nplease"' in content

    def test_omits_unset_optional_fields(self):
        from instinct_engine.records import render_record

        content = render_record(_make_instinct(last_applied_at=None, pattern=None))

        assert "last_applied_at" not in content
        assert "pattern:" not in content
        assert "artifact:" not in content

    def test_unknown_fields_survive_rewrite(self):
        from dataclasses import replace

        from instinct_engine.records import parse_record, render_record

        instinct = parse_record(RECORD, "test.md")
        rewritten = render_record(replace(instinct, confidence=0.8, version=2))

        assert 'owner: "team-a"' in rewritten
        assert "review_after: 2026-06-01" in rewritten
        assert parse_record(rewritten, "test.md").extra == instinct.extra

    def test_multi_line_unknown_field_survives_rewrite(self):
        from instinct_engine.records import parse_record, render_record

        block = "tags:\n  - alpha\n  - beta\nnotes: |\n  first line\n  second line\n"
        instinct = parse_record(RECORD.replace("owner: \"team-a\"\n", block), "test.md")

        rewritten = render_record(instinct)

        assert block in rewritten
        assert parse_record(rewritten, "test.md").extra == instinct.extra

    @pytest.mark.parametrize(
        "action",
        [
            "Check the layout first:\n\n## Steps\n\n- open the file\n---\n- save it",
            "Keep the header:\n# Title\n  ---  \nthen continue",
            "\\d+ matches digits\n\\\\ is a literal backslash",
            "Sections:\n## Evidence\n- obs:fake-1",
        ],
    )
    def test_structural_action_lines_round_trip(self, action: str):
        from instinct_engine.records import parse_record, render_record, split_records

        instinct = _make_instinct(action=action)
        content = render_record(instinct)

        assert len(split_records(content)) == 1
        parsed = parse_record(content, "x.md")
        assert parsed.action == action
        assert parsed.evidence == instinct.evidence


class TestExport:
    """Tests for export rendering and bundle splitting."""

    def test_export_record_strips_private_fields(self):
        from instinct_engine.records import render_export_record

        content = render_export_record(_make_instinct(extra=(("owner", '"team-a"'),)))

        assert "obs:s1-4" in content
        assert "note:" not in content
        assert "applications" not in content
        assert "version" not in content
        assert "owner" not in content

    def test_bundle_splits_into_records(self):
        from instinct_engine.records import build_instinct, render_export_bundle, split_records

        first = _make_instinct()
        second = _make_instinct(id="other-0123456789", trigger="when releasing")

        records = split_records(render_export_bundle([first, second]))

        assert len(records) == 2
        parsed = [build_instinct(metadata, body, "bundle") for metadata, body in records]
        assert [p.id for p in parsed] == [first.id, second.id]
        assert parsed[0].evidence == ("obs:s1-4", "obs:s1-5")
        assert parsed[1].trigger == "when releasing"
