"""
Unit tests for the query engine.

Tests cover:
- Filter operators and cross-type comparison rules
- Multi-field ordering with document ID tie-breaks
- Cursor pagination
- Limit handling and malformed queries
"""

from datetime import datetime, timezone

import pytest

from pathdb.backend.base import StoredDocument
from pathdb.document import Document
from pathdb.errors import InvalidQueryError
from pathdb.query import DOCUMENT_ID, FieldFilter, Order, QueryEngine, QueryOptions
from pathdb.timestamp import Timestamp


def make_docs(rows):
    """Build stored documents from (doc_id, data) pairs."""
    return [StoredDocument("items", doc_id, data, Timestamp(1), Timestamp(1)) for doc_id, data in rows]


def ids(results):
    return [d.doc_id for d in results]


class TestFilters:
    """Tests for where clauses."""

    @pytest.fixture
    def engine(self):
        return QueryEngine()

    @pytest.fixture
    def docs(self):
        return make_docs(
            [
                ("a", {"n": 1, "tags": ["x", "y"], "status": "active", "meta": {"level": 3}}),
                ("b", {"n": 2, "tags": ["y"], "status": "inactive", "meta": {"level": 1}}),
                ("c", {"n": 3, "tags": [], "status": "active"}),
                ("d", {"n": "3", "status": None}),
                ("e", {"flag": True}),
            ]
        )

    @pytest.mark.parametrize(
        "where,expected",
        [
            (("n", "==", 2), ["b"]),
            (("n", "!=", 2), ["a", "c", "d"]),
            (("n", "<", 3), ["a", "b"]),
            (("n", "<=", 2), ["a", "b"]),
            (("n", ">", 1), ["b", "c"]),
            (("n", ">=", 3), ["c"]),
            (("tags", "array-contains", "y"), ["a", "b"]),
            (("tags", "array-contains-any", ["x", "z"]), ["a"]),
            (("status", "in", ["active", None]), ["a", "c", "d"]),
            (("status", "not-in", ["active"]), ["b", "d"]),
            (("meta.level", ">", 2), ["a"]),
        ],
    )
    def test_operators(self, engine, docs, where, expected):
        """Each operator selects the expected documents."""
        assert ids(engine.execute(docs, QueryOptions(where=[where]))) == expected

    def test_comparisons_do_not_cross_types(self, engine, docs):
        """A string '3' never matches a numeric range."""
        assert ids(engine.execute(docs, QueryOptions(where=[("n", ">=", 3)]))) == ["c"]
        assert ids(engine.execute(docs, QueryOptions(where=[("n", ">=", "3")]))) == ["d"]

    def test_bool_is_not_number(self, engine, docs):
        """True does not equal 1."""
        assert ids(engine.execute(docs, QueryOptions(where=[("flag", "==", 1)]))) == []
        assert ids(engine.execute(docs, QueryOptions(where=[("flag", "==", True)]))) == ["e"]

    def test_filters_are_conjunctive(self, engine, docs):
        """Multiple filters must all match."""
        options = QueryOptions(where=[("status", "==", "active"), ("n", ">", 1)])
        assert ids(engine.execute(docs, options)) == ["c"]

    def test_filter_forms(self, engine, docs):
        """FieldFilter, tuple and dict forms are equivalent."""
        for clause in (
            FieldFilter("n", "==", 1),
            ("n", "==", 1),
            {"field": "n", "op": "==", "value": 1},
        ):
            assert ids(engine.execute(docs, QueryOptions(where=[clause]))) == ["a"]

    def test_document_id_filter(self, engine, docs):
        """The __name__ pseudo-field filters on document IDs."""
        options = QueryOptions(where=[(DOCUMENT_ID, "in", ["b", "e"])])
        assert ids(engine.execute(docs, options)) == ["b", "e"]

    def test_datetime_operands(self, engine):
        """Datetime operands compare against stored timestamps."""
        when = datetime(2024, 1, 1, tzinfo=timezone.utc)
        docs = make_docs(
            [
                ("old", {"at": Timestamp.from_datetime(datetime(2023, 1, 1, tzinfo=timezone.utc))}),
                ("new", {"at": Timestamp.from_datetime(datetime(2025, 1, 1, tzinfo=timezone.utc))}),
            ]
        )
        assert ids(engine.execute(docs, QueryOptions(where=[("at", ">", when)]))) == ["new"]

    def test_unknown_operator(self, engine, docs):
        """Unknown operators fail instead of matching nothing."""
        with pytest.raises(InvalidQueryError):
            engine.execute(docs, QueryOptions(where=[("n", "~=", 1)]))

    def test_list_operator_needs_list(self, engine, docs):
        """'in' requires a list operand."""
        with pytest.raises(InvalidQueryError):
            engine.execute(docs, QueryOptions(where=[("n", "in", 1)]))

    def test_malformed_filter(self, engine, docs):
        """Filters must have three parts."""
        with pytest.raises(InvalidQueryError):
            engine.execute(docs, QueryOptions(where=[("n", "==")]))


class TestOrderingAndLimit:
    """Tests for order_by and limit."""

    @pytest.fixture
    def engine(self):
        return QueryEngine(max_limit=100)

    @pytest.fixture
    def docs(self):
        return make_docs([("x", {"value": 10}), ("y", {"value": 20}), ("z", {"value": 30})])

    def test_filter_order_limit_one(self, engine, docs):
        """value > 15 ordered desc with limit 1 returns [30]."""
        options = QueryOptions(where=[("value", ">", 15)], order_by=[("value", "desc")], limit=1)
        assert [d.data["value"] for d in engine.execute(docs, options)] == [30]

    def test_filter_order_limit_two(self, engine, docs):
        """value > 15 ordered desc with limit 2 returns [30, 20]."""
        options = QueryOptions(where=[("value", ">", 15)], order_by=[("value", "desc")], limit=2)
        assert [d.data["value"] for d in engine.execute(docs, options)] == [30, 20]

    def test_ties_broken_by_id(self, engine):
        """Equal ordering values fall back to document ID ascending."""
        docs = make_docs([("c", {"g": 1}), ("a", {"g": 1}), ("b", {"g": 0})])
        assert ids(engine.execute(docs, QueryOptions(order_by=["g"]))) == ["b", "a", "c"]
        assert ids(engine.execute(docs, QueryOptions(order_by=[("g", "desc")]))) == ["a", "c", "b"]

    def test_multiple_orderings(self, engine):
        """Orderings apply in listed priority."""
        docs = make_docs(
            [
                ("1", {"team": "b", "score": 5}),
                ("2", {"team": "a", "score": 1}),
                ("3", {"team": "a", "score": 9}),
            ]
        )
        options = QueryOptions(order_by=[Order("team"), {"field": "score", "direction": "desc"}])
        assert ids(engine.execute(docs, options)) == ["3", "2", "1"]

    def test_missing_order_field_excluded(self, engine):
        """Documents without the ordering field are left out."""
        docs = make_docs([("a", {"v": 1}), ("b", {}), ("c", {"v": 0})])
        assert ids(engine.execute(docs, QueryOptions(order_by=["v"]))) == ["c", "a"]

    def test_mixed_types_order_by_type_rank(self, engine):
        """Values of different types order null < bool < number < string."""
        docs = make_docs([("s", {"v": "a"}), ("n", {"v": 1}), ("b", {"v": False}), ("z", {"v": None})])
        assert ids(engine.execute(docs, QueryOptions(order_by=["v"]))) == ["z", "b", "n", "s"]

    def test_no_ordering_returns_id_order(self, engine, docs):
        """Without orderings results come back by ID."""
        assert ids(engine.execute(reversed(docs))) == ["x", "y", "z"]

    @pytest.mark.parametrize("limit", [0, -1, 101, True, 1.5])
    def test_invalid_limit(self, engine, docs, limit):
        """Limits must be positive integers within the ceiling."""
        with pytest.raises(InvalidQueryError):
            engine.execute(docs, QueryOptions(limit=limit))

    def test_invalid_direction(self, engine, docs):
        """Unknown directions are rejected."""
        with pytest.raises(InvalidQueryError):
            engine.execute(docs, QueryOptions(order_by=[("value", "sideways")]))


class TestCursors:
    """Tests for cursor pagination."""

    @pytest.fixture
    def engine(self):
        return QueryEngine()

    @pytest.fixture
    def docs(self):
        return make_docs(
            [
                ("a", {"v": 10}),
                ("b", {"v": 20}),
                ("c", {"v": 20}),
                ("d", {"v": 30}),
                ("e", {"v": 40}),
            ]
        )

    def test_cursor_requires_ordering(self, engine, docs):
        """Cursor pagination without orderings is rejected."""
        with pytest.raises(InvalidQueryError):
            engine.execute(docs, QueryOptions(start_after=20))

    def test_start_after_value(self, engine, docs):
        """A bare value is compared with the first ordering field."""
        options = QueryOptions(order_by=["v"], start_after=20)
        assert ids(engine.execute(docs, options)) == ["d", "e"]

    def test_start_at_value(self, engine, docs):
        """start_at includes equal values."""
        options = QueryOptions(order_by=["v"], start_at=20)
        assert ids(engine.execute(docs, options)) == ["b", "c", "d", "e"]

    def test_end_before_and_end_at(self, engine, docs):
        """Upper cursors bound the results."""
        assert ids(engine.execute(docs, QueryOptions(order_by=["v"], end_before=20))) == ["a"]
        assert ids(engine.execute(docs, QueryOptions(order_by=["v"], end_at=20))) == ["a", "b", "c"]

    def test_start_after_document_uses_id_tie_break(self, engine, docs):
        """A document cursor resumes exactly after that document."""
        page1 = engine.execute(docs, QueryOptions(order_by=["v"], limit=2))
        assert ids(page1) == ["a", "b"]

        page2 = engine.execute(docs, QueryOptions(order_by=["v"], start_after=page1[-1], limit=2))
        assert ids(page2) == ["c", "d"]

    def test_start_after_native_document(self, engine, docs):
        """Documents returned by the store work as cursors too."""
        cursor = Document.from_stored(docs[1])
        options = QueryOptions(order_by=["v"], start_after=cursor)
        assert ids(engine.execute(docs, options)) == ["c", "d", "e"]

    def test_descending_cursor(self, engine, docs):
        """Cursors follow the ordering direction."""
        options = QueryOptions(order_by=[("v", "desc")], start_after=30)
        assert ids(engine.execute(docs, options)) == ["b", "c", "a"]

    def test_mapping_cursor(self, engine, docs):
        """A mapping of ordering values works as a cursor."""
        options = QueryOptions(order_by=["v"], start_after={"v": 10})
        assert ids(engine.execute(docs, options)) == ["b", "c", "d", "e"]

    def test_cursor_then_limit(self, engine, docs):
        """Limit applies after the cursor."""
        options = QueryOptions(order_by=["v"], start_at=20, limit=1)
        assert ids(engine.execute(docs, options)) == ["b"]

    def test_too_many_cursor_values(self, engine, docs):
        """A cursor cannot have more values than orderings."""
        with pytest.raises(InvalidQueryError):
            engine.execute(docs, QueryOptions(order_by=["v"], start_after=[1, 2]))

    def test_conflicting_cursors(self, engine, docs):
        """start_at and start_after cannot be combined."""
        with pytest.raises(InvalidQueryError):
            engine.execute(docs, QueryOptions(order_by=["v"], start_at=1, start_after=1))
