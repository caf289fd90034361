"""Tests for instinct_engine.utils module."""


class TestSanitizeId:
    """Tests for sanitize_id function."""

    def test_strips_path_traversal(self):
        from instinct_engine.utils import sanitize_id

        assert sanitize_id("../../etc/passwd") == "passwd"

    def test_replaces_invalid_characters(self):
        from instinct_engine.utils import sanitize_id

        assert sanitize_id("run tests!now") == "run-tests-now"

    def test_keeps_dots_when_allowed(self):
        from instinct_engine.utils import sanitize_id

        assert sanitize_id("record.md", allow_dots=True) == "record.md"
        assert sanitize_id("record.md") == "record-md"

    def test_empty_becomes_unnamed(self):
        from instinct_engine.utils import sanitize_id

        assert sanitize_id("///") == "unnamed"


class TestNormalizeTrigger:
    """Tests for normalize_trigger function."""

    def test_removes_condition_words(self):
        from instinct_engine.utils import normalize_trigger

        assert normalize_trigger("When  Running TESTS") == "running tests"

    def test_keeps_other_words(self):
        from instinct_engine.utils import normalize_trigger

        assert normalize_trigger("editing the parser") == "editing the parser"


class TestGenerateInstinctId:
    """Tests for generate_instinct_id function."""

    def test_is_deterministic(self):
        from instinct_engine.utils import generate_instinct_id

        first = generate_instinct_id("when asked: run the tests", "Run pytest -x")
        second = generate_instinct_id("when asked: run the tests", "Run pytest -x")

        assert first == second

    def test_ignores_case_and_whitespace(self):
        from instinct_engine.utils import generate_instinct_id

        assert generate_instinct_id("When running tests", "Use pytest") == generate_instinct_id(
            "when  running tests", "use pytest"
        )

    def test_action_changes_id(self):
        from instinct_engine.utils import generate_instinct_id

        assert generate_instinct_id("when running tests", "Use pytest") != generate_instinct_id(
            "when running tests", "Use unittest"
        )

    def test_id_shape(self):
        from instinct_engine.utils import ID_HASH_LENGTH, generate_instinct_id

        instinct_id = generate_instinct_id("when asked: run the tests", "Run pytest -x")
        prefix, digest = instinct_id.rsplit("-", 1)

        assert prefix == "asked-run-the-tests"
        assert len(digest) == ID_HASH_LENGTH

    def test_symbol_only_trigger(self):
        from instinct_engine.utils import generate_instinct_id

        assert generate_instinct_id("when ???", "do it").startswith("instinct-")
