"""Tests for layered template merging."""

from labelsync.templates.merge import deep_merge


class TestDeepMerge:
    """Test cases for deep_merge."""

    def test_nested_dicts_merge(self):
        """Test keys from both documents survive."""
        base = {"labels": {"A": {"color": "#000000", "intent": "a"}}}
        overlay = {"labels": {"A": {"color": "#ffffff"}, "B": {}}}

        merged = deep_merge(base, overlay)

        assert merged == {"labels": {"A": {"color": "#ffffff", "intent": "a"}, "B": {}}}

    def test_lists_concatenate(self):
        """Test overlay list items follow base items."""
        merged = deep_merge({"order": ["A", "B"]}, {"order": ["C"]})

        assert merged["order"] == ["A", "B", "C"]

    def test_inputs_not_mutated(self):
        """Test neither input changes."""
        base = {"labels": {"A": {"sub": [{"name": "x"}]}}}
        overlay = {"labels": {"A": {"sub": [{"name": "y"}]}}}

        merged = deep_merge(base, overlay)
        merged["labels"]["A"]["sub"][0]["name"] = "changed"

        assert base == {"labels": {"A": {"sub": [{"name": "x"}]}}}
        assert overlay == {"labels": {"A": {"sub": [{"name": "y"}]}}}

    def test_scalar_replaces(self):
        """Test scalars and mismatched types take the overlay value."""
        assert deep_merge({"a": 1}, {"a": 2}) == {"a": 2}
        assert deep_merge({"a": [1]}, {"a": None}) == {"a": None}
