"""
Unit tests for field transforms and shallow-merge patches.
"""

from pathdb.timestamp import Timestamp
from pathdb.transforms import (
    apply_patch,
    array_remove,
    array_union,
    delete_field,
    increment,
    server_timestamp,
)

NOW = Timestamp(1_700_000_000, 0)


class TestApplyPatch:
    """Tests for apply_patch."""

    def test_shallow_merge_replaces_nested(self):
        """Nested mappings are replaced, not merged."""
        existing = {"a": {"x": 1, "y": 2}, "b": 1}
        assert apply_patch(existing, {"a": {"x": 9}}, NOW) == {"a": {"x": 9}, "b": 1}

    def test_does_not_modify_existing(self):
        """The input mapping is left untouched."""
        existing = {"a": 1}
        apply_patch(existing, {"a": 2}, NOW)
        assert existing == {"a": 1}

    def test_increment(self):
        """increment adds to numbers and starts missing fields at zero."""
        result = apply_patch({"n": 5}, {"n": increment(2), "m": increment(1.5)}, NOW)
        assert result == {"n": 7, "m": 1.5}

    def test_increment_non_numeric_replaced(self):
        """A non-numeric field is replaced by the amount."""
        assert apply_patch({"n": "x", "b": True}, {"n": increment(3), "b": increment(1)}, NOW) == {
            "n": 3,
            "b": 1,
        }

    def test_array_union(self):
        """array_union appends only missing values."""
        result = apply_patch({"tags": ["a", "b"]}, {"tags": array_union("b", "c")}, NOW)
        assert result == {"tags": ["a", "b", "c"]}

    def test_array_union_on_missing_field(self):
        """array_union creates the array."""
        assert apply_patch({}, {"tags": array_union("a", "a")}, NOW) == {"tags": ["a"]}

    def test_array_remove(self):
        """array_remove drops every occurrence."""
        result = apply_patch({"tags": ["a", "b", "a", "c"]}, {"tags": array_remove("a", "z")}, NOW)
        assert result == {"tags": ["b", "c"]}

    def test_delete_field(self):
        """delete_field removes the key; deleting a missing key is harmless."""
        result = apply_patch({"a": 1, "b": 2}, {"a": delete_field(), "zz": delete_field()}, NOW)
        assert result == {"b": 2}

    def test_server_timestamp(self):
        """server_timestamp resolves to the commit time."""
        assert apply_patch({}, {"at": server_timestamp()}, NOW) == {"at": NOW}

    def test_array_union_keeps_booleans_distinct_from_numbers(self):
        """True is not treated as already present in [1], and 1.0 matches 1."""
        result = apply_patch({"v": [1]}, {"v": array_union(True, 1.0)}, NOW)
        assert result == {"v": [1, True]}
        assert result["v"][1] is True

    def test_array_remove_keeps_booleans_distinct_from_numbers(self):
        """Removing 1 leaves True in place."""
        result = apply_patch({"v": [1, True, 0, False]}, {"v": array_remove(1, False)}, NOW)
        assert result["v"] == [True, 0]
        assert result["v"][0] is True
