"""Predicate expressions used as pre- or post-filters for vector search.

A :class:`FilterExpression` is built through :class:`FilterBuilder` and is
immutable afterwards. The same expression compiles to parameterized SQL for
the store (pre-filter) and evaluates in-process against scored payloads
(post-filter).

Fields resolve as follows: ``id`` is the record id, ``metadata`` is the whole
metadata value, and any other name (dotted paths allowed, an optional
``metadata.`` prefix is ignored) is a key inside the metadata object.

Example:
    >>> expr = FilterBuilder().field("category").operator("=").value("'A'").build()
    >>> str(expr)
    "category = 'A'"
    >>> expr.matches("doc-1", {"category": "A"})
    True
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Iterable, Mapping

from vecdex.core.errors import FilterError

__all__ = [
    "FilterBuilder",
    "FilterCondition",
    "FilterExpression",
    "FilterOperator",
    "normalize_field",
    "parse_literal",
]


class FilterOperator(StrEnum):
    EQ = "="
    NE = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    LIKE = "LIKE"
    IN = "IN"


_OPERATOR_ALIASES = {"==": FilterOperator.EQ, "<>": FilterOperator.NE}
_PATH_SEGMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")
_NUMBER = re.compile(r"[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")
_KEYWORDS = {"true": True, "false": False, "null": None}
_UNSET: Any = object()


def _normalize_operator(raw: str) -> FilterOperator:
    text = raw.strip().upper()
    if text in _OPERATOR_ALIASES:
        return _OPERATOR_ALIASES[text]
    try:
        return FilterOperator(text)
    except ValueError as exc:
        raise FilterError(
            f"Unsupported filter operator {raw!r}",
            field="operator",
        ) from exc


class _LiteralParser:
    def __init__(self, text: str) -> None:
        self._text = text
        self._pos = 0

    def parse(self) -> Any:
        value = self._value()
        self._skip_space()
        if self._pos != len(self._text):
            self._fail("unexpected trailing input")
        return value

    def _fail(self, reason: str) -> None:
        raise FilterError(
            f"Unparsable filter value {self._text!r}: {reason}",
            field="value",
        )

    def _skip_space(self) -> None:
        while self._pos < len(self._text) and self._text[self._pos].isspace():
            self._pos += 1

    def _value(self) -> Any:
        self._skip_space()
        if self._pos >= len(self._text):
            self._fail("expected a literal")
        head = self._text[self._pos]
        if head in "'\"":
            return self._string(head)
        if head in "([":
            return self._list("]" if head == "[" else ")")
        match = _NUMBER.match(self._text, self._pos)
        if match:
            self._pos = match.end()
            token = match.group(0)
            if match.group(2) or match.group(3) or token.lstrip("+-").startswith("."):
                return float(token)
            return int(token)
        for keyword, literal in _KEYWORDS.items():
            end = self._pos + len(keyword)
            if self._text[self._pos:end].lower() == keyword and (
                end == len(self._text) or not self._text[end].isalnum()
            ):
                self._pos = end
                return literal
        self._fail(f"unexpected character {head!r}")

    def _string(self, quote: str) -> str:
        self._pos += 1
        chars: list[str] = []
        while self._pos < len(self._text):
            char = self._text[self._pos]
            if char == quote:
                # A doubled quote is an escaped quote.
                if self._text[self._pos + 1:self._pos + 2] == quote:
                    chars.append(quote)
                    self._pos += 2
                    continue
                self._pos += 1
                return "".join(chars)
            chars.append(char)
            self._pos += 1
        self._fail("unterminated string")

    def _list(self, closer: str) -> list[Any]:
        self._pos += 1
        items: list[Any] = []
        self._skip_space()
        if self._text[self._pos:self._pos + 1] == closer:
            self._pos += 1
            return items
        while True:
            items.append(self._value())
            self._skip_space()
            token = self._text[self._pos:self._pos + 1]
            if token == ",":
                self._pos += 1
                continue
            if token == closer:
                self._pos += 1
                return items
            self._fail(f"expected ',' or {closer!r}")


def parse_literal(text: str) -> Any:
    """Parse a filter literal into a Python value.

    Strings are single- or double-quoted with doubled quotes as escapes;
    numbers, ``true``, ``false``, ``null`` and bracketed or parenthesized lists
    are also accepted.

    Raises:
        FilterError: If ``text`` is not a single well-formed literal.
    """

    return _LiteralParser(text).parse()


def _render_literal(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        escaped = value.replace("'", "''")
        return f"'{escaped}'"
    if isinstance(value, (list, tuple)):
        return "(" + ", ".join(_render_literal(item) for item in value) + ")"
    return repr(value)


def _like_pattern(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True, slots=True)
class FilterCondition:
    """A single validated ``field operator value`` triple."""

    field: str
    operator: FilterOperator
    value: Any

    @property
    def path(self) -> tuple[str, ...]:
        if self.field in {"id", "metadata"}:
            return ()
        return tuple(self.field.split("."))

    def _sql_target(self, metadata_column: str) -> tuple[str, list[Any]]:
        if self.field == "id":
            return "id", []
        if self.field == "metadata":
            return f"json_extract({metadata_column}, '$')", []
        json_path = "$" + "".join(f'."{segment}"' for segment in self.path)
        return f"json_extract({metadata_column}, ?)", [json_path]

    def to_sql(self, metadata_column: str = "metadata") -> tuple[str, list[Any]]:
        target, params = self._sql_target(metadata_column)
        if self.value is None:
            clause = "IS NULL" if self.operator is FilterOperator.EQ else "IS NOT NULL"
            return f"{target} {clause}", params
        if self.operator is FilterOperator.IN:
            placeholders = ", ".join("?" for _ in self.value)
            return f"{target} IN ({placeholders})", [*params, *self.value]
        op = self.operator.value
        return f"{target} {op} ?", [*params, self.value]

    def resolve(self, record_id: str, metadata: Any) -> Any:
        if self.field == "id":
            return record_id
        if self.field == "metadata":
            return metadata
        current = metadata
        for segment in self.path:
            if not isinstance(current, Mapping) or segment not in current:
                return None
            current = current[segment]
        return current

    def matches(self, record_id: str, metadata: Any) -> bool:
        actual = self.resolve(record_id, metadata)
        op = self.operator
        if self.value is None:
            return (actual is None) == (op is FilterOperator.EQ)
        if actual is None:
            return False
        if op is FilterOperator.IN:
            return any(_equal(actual, candidate) for candidate in self.value)
        if op is FilterOperator.EQ:
            return _equal(actual, self.value)
        if op is FilterOperator.NE:
            return not _equal(actual, self.value)
        if op is FilterOperator.LIKE:
            if isinstance(actual, (dict, list)):
                return False
            text = actual if isinstance(actual, str) else json.dumps(actual)
            return bool(_like_pattern(str(self.value)).match(text))
        try:
            if op is FilterOperator.LT:
                return actual < self.value
            if op is FilterOperator.LE:
                return actual <= self.value
            if op is FilterOperator.GT:
                return actual > self.value
            return actual >= self.value
        except TypeError:
            return False

    def __str__(self) -> str:
        return f"{self.field} {self.operator.value} {_render_literal(self.value)}"


def _equal(left: Any, right: Any) -> bool:
    if isinstance(left, str) != isinstance(right, str):
        return False
    return left == right


@dataclass(frozen=True, slots=True)
class FilterExpression:
    """Immutable predicate: a single condition or an AND/OR composite."""

    condition: FilterCondition | None = None
    combinator: str | None = None
    children: tuple["FilterExpression", ...] = ()

    @classmethod
    def all_of(cls, *expressions: "FilterExpression") -> "FilterExpression":
        return cls._combine("AND", expressions)

    @classmethod
    def any_of(cls, *expressions: "FilterExpression") -> "FilterExpression":
        return cls._combine("OR", expressions)

    @classmethod
    def _combine(
        cls,
        combinator: str,
        expressions: Iterable["FilterExpression"],
    ) -> "FilterExpression":
        children = tuple(expressions)
        if not children:
            raise FilterError(
                f"{combinator} requires at least one expression",
                field="expression",
            )
        for child in children:
            if not isinstance(child, FilterExpression):
                raise FilterError(
                    f"Cannot combine {type(child)!r} with a filter expression",
                    field="expression",
                )
        if len(children) == 1:
            return children[0]
        return cls(combinator=combinator, children=children)

    def __and__(self, other: "FilterExpression") -> "FilterExpression":
        return FilterExpression.all_of(self, other)

    def __or__(self, other: "FilterExpression") -> "FilterExpression":
        return FilterExpression.any_of(self, other)

    def to_sql(self, metadata_column: str = "metadata") -> tuple[str, list[Any]]:
        """Return a parameterized SQL predicate and its bound values."""

        if self.condition is not None:
            return self.condition.to_sql(metadata_column)
        clauses: list[str] = []
        params: list[Any] = []
        for child in self.children:
            sql, child_params = child.to_sql(metadata_column)
            clauses.append(f"({sql})")
            params.extend(child_params)
        return f" {self.combinator} ".join(clauses), params

    def matches(self, record_id: str, metadata: Any) -> bool:
        """Evaluate the predicate against an in-memory record."""

        if self.condition is not None:
            return self.condition.matches(record_id, metadata)
        results = (child.matches(record_id, metadata) for child in self.children)
        return all(results) if self.combinator == "AND" else any(results)

    def __str__(self) -> str:
        if self.condition is not None:
            return str(self.condition)
        return f" {self.combinator} ".join(f"({child})" for child in self.children)


class FilterBuilder:
    """Accumulate a field, operator and value, then :meth:`build`.

    ``value`` accepts either literal text (``"'A'"``, ``"42"``, ``"[1, 2]"``)
    or an already-typed Python scalar or list.
    """

    def __init__(self) -> None:
        self._field: str | None = None
        self._operator: str | None = None
        self._value: Any = _UNSET

    def field(self, name: str) -> "FilterBuilder":
        self._field = name
        return self

    def operator(self, op: str) -> "FilterBuilder":
        self._operator = op
        return self

    def value(self, value: Any) -> "FilterBuilder":
        self._value = value
        return self

    def build(self) -> FilterExpression:
        """Validate the accumulated parts into a :class:`FilterExpression`.

        Raises:
            FilterError: If a part is missing, the operator is unknown, the
                value is not a parsable literal, or the value shape does not
                suit the operator.
        """

        if self._field is None or not self._field.strip():
            raise FilterError("Filter field is required", field="field")
        if self._operator is None or not self._operator.strip():
            raise FilterError("Filter operator is required", field="operator")
        if self._value is _UNSET:
            raise FilterError("Filter value is required", field="value")

        field = normalize_field(self._field)
        operator = _normalize_operator(self._operator)
        value = self._value
        if isinstance(value, str):
            value = parse_literal(value)
        elif isinstance(value, tuple):
            value = list(value)

        if operator is FilterOperator.IN:
            if not isinstance(value, list) or not value:
                raise FilterError(
                    "IN requires a non-empty list of literals",
                    field="value",
                )
            if any(isinstance(item, (list, dict)) for item in value):
                raise FilterError(
                    "IN lists may only contain scalar literals",
                    field="value",
                )
        elif isinstance(value, (list, dict)):
            raise FilterError(
                f"Operator {operator.value} requires a scalar literal",
                field="value",
            )
        elif value is None and operator not in {
            FilterOperator.EQ,
            FilterOperator.NE,
        }:
            raise FilterError(
                f"null can only be compared with = or != (got {operator.value})",
                field="value",
            )
        elif operator is FilterOperator.LIKE and not isinstance(value, str):
            raise FilterError("LIKE requires a string pattern", field="value")

        return FilterExpression(
            condition=FilterCondition(field=field, operator=operator, value=value),
        )


def normalize_field(raw: str) -> str:
    name = raw.strip()
    if name in {"id", "metadata"}:
        return name
    if name.startswith("metadata."):
        name = name[len("metadata."):]
    segments = name.split(".")
    for segment in segments:
        if not _PATH_SEGMENT.match(segment):
            raise FilterError(
                f"Invalid filter field {raw!r}",
                field="field",
            )
    return name
