"""
Structured queries over a collection's documents.

A query is a conjunction of field filters, an optional list of orderings,
optional cursors and an optional limit. Evaluation order is fixed:

    filter -> order -> cursors -> limit

so the limit never truncates before the result window is established.

Value ordering across types (lowest first):
    null < boolean < number < timestamp < string < array < map

Invariants:
    - Filters are conjunctive (logical AND)
    - Unknown operators raise InvalidQueryError, never match nothing
    - Comparison filters only match values of the same type class
    - Filters and orderings on a missing field exclude the document
    - Ties are broken by document ID ascending
    - Cursors require at least one ordering
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from . import codec
from .backend.base import StoredDocument
from .document import Document
from .errors import InvalidQueryError
from .timestamp import Timestamp
from .values import sort_key, type_rank, values_equal

logger = logging.getLogger(__name__)

# Pseudo-field addressing the document ID in filters and orderings
DOCUMENT_ID = "__name__"

_MISSING = object()


class FilterOperator(Enum):
    """Supported filter operators."""

    EQ = "=="
    NE = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    ARRAY_CONTAINS = "array-contains"
    IN = "in"
    ARRAY_CONTAINS_ANY = "array-contains-any"
    NOT_IN = "not-in"


class Direction(Enum):
    """Sort direction."""

    ASC = "asc"
    DESC = "desc"


_LIST_OPERATORS = (FilterOperator.IN, FilterOperator.NOT_IN, FilterOperator.ARRAY_CONTAINS_ANY)


@dataclass(frozen=True)
class FieldFilter:
    """A single ``(field, operator, value)`` predicate.

    Attributes:
        field: Field name, dotted for nested fields, or DOCUMENT_ID
        op: Operator (FilterOperator or its string form)
        value: Operand in native form
    """

    field: str
    op: FilterOperator | str
    value: Any


@dataclass(frozen=True)
class Order:
    """A single ordering clause."""

    field: str
    direction: Direction | str = Direction.ASC


@dataclass
class QueryOptions:
    """Everything a query can specify.

    Attributes:
        where: Filters; FieldFilter, (field, op, value) tuples or
            {"field", "op", "value"} dicts
        order_by: Orderings; Order, field names, (field, direction) tuples
            or {"field", "direction"} dicts
        limit: Maximum number of results
        start_at / start_after: Lower cursor (inclusive / exclusive)
        end_at / end_before: Upper cursor (inclusive / exclusive)

    A cursor is a Document (its ordering-field values and ID), a mapping of
    field values, a sequence of values for the leading orderings, or a
    single value for the first ordering.
    """

    where: list[Any] = field(default_factory=list)
    order_by: list[Any] = field(default_factory=list)
    limit: int | None = None
    start_at: Any = None
    start_after: Any = None
    end_at: Any = None
    end_before: Any = None


@dataclass(frozen=True)
class _Filter:
    field: str
    op: FilterOperator
    value: Any


@dataclass(frozen=True)
class _Cursor:
    values: tuple[Any, ...]
    doc_id: str | None
    inclusive: bool


def _parse_operator(op: FilterOperator | str) -> FilterOperator:
    if isinstance(op, FilterOperator):
        return op
    try:
        return FilterOperator(op)
    except ValueError:
        raise InvalidQueryError(f"Unsupported filter operator: {op!r}", details={"op": str(op)})


def _parse_direction(direction: Direction | str | None) -> Direction:
    if direction is None:
        return Direction.ASC
    if isinstance(direction, Direction):
        return direction
    try:
        return Direction(str(direction).lower())
    except ValueError:
        raise InvalidQueryError(
            f"Unsupported sort direction: {direction!r}", details={"direction": str(direction)}
        )


def _parse_filter(clause: Any) -> _Filter:
    if isinstance(clause, FieldFilter):
        name, op, value = clause.field, clause.op, clause.value
    elif isinstance(clause, Mapping):
        try:
            name, op, value = clause["field"], clause["op"], clause["value"]
        except KeyError as e:
            raise InvalidQueryError(f"Filter is missing {e}")
    elif isinstance(clause, Sequence) and not isinstance(clause, str) and len(clause) == 3:
        name, op, value = clause
    else:
        raise InvalidQueryError(f"Invalid filter: {clause!r}")

    operator = _parse_operator(op)
    if operator in _LIST_OPERATORS:
        if not isinstance(value, (list, tuple)):
            raise InvalidQueryError(
                f"Operator '{operator.value}' requires a list value",
                details={"field": name},
            )
        operand: Any = tuple(codec.to_storage_value(v) for v in value)
    else:
        operand = codec.to_storage_value(value)
    return _Filter(field=name, op=operator, value=operand)


def _parse_order(clause: Any) -> Order:
    if isinstance(clause, Order):
        return Order(clause.field, _parse_direction(clause.direction))
    if isinstance(clause, str):
        return Order(clause, Direction.ASC)
    if isinstance(clause, Mapping):
        if "field" not in clause:
            raise InvalidQueryError("Ordering is missing 'field'")
        return Order(clause["field"], _parse_direction(clause.get("direction")))
    if isinstance(clause, Sequence) and len(clause) == 2:
        return Order(clause[0], _parse_direction(clause[1]))
    raise InvalidQueryError(f"Invalid ordering: {clause!r}")


def _lookup(doc: StoredDocument, field_path: str) -> Any:
    if field_path == DOCUMENT_ID:
        return doc.doc_id
    value: Any = doc.data
    for part in field_path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _matches(doc: StoredDocument, flt: _Filter) -> bool:
    value = _lookup(doc, flt.field)
    if value is _MISSING:
        return False

    op = flt.op
    if op is FilterOperator.EQ:
        return values_equal(value, flt.value)
    if op is FilterOperator.NE:
        return not values_equal(value, flt.value)
    if op is FilterOperator.IN:
        return any(values_equal(value, v) for v in flt.value)
    if op is FilterOperator.NOT_IN:
        return not any(values_equal(value, v) for v in flt.value)
    if op is FilterOperator.ARRAY_CONTAINS:
        return isinstance(value, list) and any(values_equal(item, flt.value) for item in value)
    if op is FilterOperator.ARRAY_CONTAINS_ANY:
        return isinstance(value, list) and any(
            values_equal(item, v) for item in value for v in flt.value
        )

    if type_rank(value) != type_rank(flt.value):
        return False
    left, right = sort_key(value), sort_key(flt.value)
    if op is FilterOperator.LT:
        return left < right
    if op is FilterOperator.LE:
        return left <= right
    if op is FilterOperator.GT:
        return left > right
    if op is FilterOperator.GE:
        return left >= right

    raise InvalidQueryError(f"Unsupported filter operator: {op!r}")


class QueryEngine:
    """Evaluates QueryOptions over a list of stored documents.

    The engine is stateless apart from its limit ceiling; the store hands it
    a full collection scan.

    Example:
        >>> engine = QueryEngine()
        >>> engine.execute(docs, QueryOptions(
        ...     where=[("value", ">", 15)],
        ...     order_by=[("value", "desc")],
        ...     limit=1,
        ... ))
    """

    def __init__(self, max_limit: int = 10000) -> None:
        self.max_limit = max_limit

    def execute(
        self,
        documents: Iterable[StoredDocument],
        options: QueryOptions | None = None,
    ) -> list[StoredDocument]:
        """Run a query.

        Args:
            documents: Candidate documents (one collection)
            options: Query options; all documents ordered by ID if omitted

        Returns:
            Matching documents in query order

        Raises:
            InvalidQueryError: If the query is malformed
        """
        options = options or QueryOptions()
        filters = [_parse_filter(clause) for clause in options.where]
        orders = [_parse_order(clause) for clause in options.order_by]
        limit = self._check_limit(options.limit)
        lower, upper = self._parse_cursors(options, orders)

        results = [doc for doc in documents if all(_matches(doc, f) for f in filters)]

        if orders:
            results = [
                doc for doc in results if all(_lookup(doc, o.field) is not _MISSING for o in orders)
            ]
        results = self._sort(results, orders)

        if lower is not None:
            results = [
                doc for doc in results if self._compare(doc, lower, orders) >= (0 if lower.inclusive else 1)
            ]
        if upper is not None:
            results = [
                doc for doc in results if self._compare(doc, upper, orders) <= (0 if upper.inclusive else -1)
            ]

        if limit is not None:
            results = results[:limit]

        logger.debug(
            "Executed query",
            extra={"filters": len(filters), "orders": len(orders), "results": len(results)},
        )
        return results

    def _check_limit(self, limit: int | None) -> int | None:
        if limit is None:
            return None
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise InvalidQueryError(f"Limit must be a positive integer, got {limit!r}")
        if limit > self.max_limit:
            raise InvalidQueryError(
                f"Limit {limit} exceeds the maximum of {self.max_limit}",
                details={"limit": limit, "max_limit": self.max_limit},
            )
        return limit

    def _sort(self, documents: list[StoredDocument], orders: list[Order]) -> list[StoredDocument]:
        result = sorted(documents, key=lambda d: d.doc_id)
        # Stable sorts applied from the lowest priority ordering up
        for order in reversed(orders):
            result.sort(
                key=lambda d, f=order.field: sort_key(_lookup(d, f)),
                reverse=order.direction is Direction.DESC,
            )
        return result

    def _parse_cursors(
        self,
        options: QueryOptions,
        orders: list[Order],
    ) -> tuple[_Cursor | None, _Cursor | None]:
        if options.start_at is not None and options.start_after is not None:
            raise InvalidQueryError("Use only one of start_at and start_after")
        if options.end_at is not None and options.end_before is not None:
            raise InvalidQueryError("Use only one of end_at and end_before")

        cursors = (
            options.start_at,
            options.start_after,
            options.end_at,
            options.end_before,
        )
        if any(c is not None for c in cursors) and not orders:
            raise InvalidQueryError("Cursor pagination requires at least one ordering")

        lower = None
        if options.start_at is not None:
            lower = self._cursor(options.start_at, orders, inclusive=True)
        elif options.start_after is not None:
            lower = self._cursor(options.start_after, orders, inclusive=False)

        upper = None
        if options.end_at is not None:
            upper = self._cursor(options.end_at, orders, inclusive=True)
        elif options.end_before is not None:
            upper = self._cursor(options.end_before, orders, inclusive=False)

        return lower, upper

    def _cursor(self, value: Any, orders: list[Order], inclusive: bool) -> _Cursor:
        if isinstance(value, (Document, StoredDocument)):
            stored_data = value.data if isinstance(value, StoredDocument) else codec.to_storage(value.data)
            doc_id = value.doc_id if isinstance(value, StoredDocument) else value.id
            cursor_doc = StoredDocument("", doc_id, stored_data, Timestamp(0), Timestamp(0))
            values = []
            for order in orders:
                field_value = _lookup(cursor_doc, order.field)
                if field_value is _MISSING:
                    raise InvalidQueryError(
                        f"Cursor document has no value for ordering field '{order.field}'"
                    )
                values.append(field_value)
            return _Cursor(tuple(values), doc_id, inclusive)

        if isinstance(value, Mapping):
            stored_data = codec.to_storage(dict(value))
            doc_id = value.get("id") if isinstance(value.get("id"), str) else None
            cursor_doc = StoredDocument("", doc_id or "", stored_data, Timestamp(0), Timestamp(0))
            values = []
            for order in orders:
                field_value = _lookup(cursor_doc, order.field)
                if field_value is _MISSING:
                    break
                values.append(field_value)
            if not values:
                raise InvalidQueryError("Cursor mapping has no value for the first ordering field")
            if len(values) < len(orders):
                doc_id = None
            return _Cursor(tuple(values), doc_id, inclusive)

        if isinstance(value, (list, tuple)):
            if not value or len(value) > len(orders):
                raise InvalidQueryError(
                    f"Cursor has {len(value)} values but the query has {len(orders)} orderings"
                )
            return _Cursor(tuple(codec.to_storage_value(v) for v in value), None, inclusive)

        return _Cursor((codec.to_storage_value(value),), None, inclusive)

    def _compare(self, doc: StoredDocument, cursor: _Cursor, orders: list[Order]) -> int:
        """Position of ``doc`` relative to ``cursor`` in query order (-1, 0, 1)."""
        for order, cursor_value in zip(orders, cursor.values):
            left = sort_key(_lookup(doc, order.field))
            right = sort_key(cursor_value)
            if left != right:
                result = -1 if left < right else 1
                return -result if order.direction is Direction.DESC else result
        if cursor.doc_id is not None and len(cursor.values) == len(orders):
            if doc.doc_id != cursor.doc_id:
                return -1 if doc.doc_id < cursor.doc_id else 1
        return 0
