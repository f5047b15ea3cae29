"""
Backend-neutral filter model and the shared predicate evaluator.

A filter is a sequence of predicates combined with AND. The local store
evaluates it here; the Firestore adapter pushes what it can server-side and
evaluates the rest here, so both backends agree on every record.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Union

from datastore.errors import InvalidFilterError

Scalar = Union[str, int, float, bool]


class Operator(StrEnum):
    EQ = "=="
    NE = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    CONTAINS = "contains"
    IN = "in"


RANGE_OPERATORS = frozenset({Operator.LT, Operator.LE, Operator.GT, Operator.GE})

_OPERATOR_ALIASES = {
    "array-contains": Operator.CONTAINS,
}


@dataclass(frozen=True)
class Predicate:
    field: str
    operator: Operator
    value: Any

    @classmethod
    def parse(cls, raw: "Predicate | Mapping[str, Any] | Sequence[Any]") -> "Predicate":
        """Builds a validated predicate from a Predicate, mapping or 3-tuple."""
        if isinstance(raw, Predicate):
            field_name, operator, value = raw.field, raw.operator, raw.value
        elif isinstance(raw, Mapping):
            try:
                field_name = raw["field"]
                operator = raw["operator"]
                value = raw["value"]
            except KeyError as exc:
                raise InvalidFilterError(
                    f"Filter is missing {exc.args[0]!r}", details={"filter": dict(raw)}
                ) from None
        elif isinstance(raw, (tuple, list)) and len(raw) == 3:
            field_name, operator, value = raw
        else:
            raise InvalidFilterError(f"Unsupported filter shape: {raw!r}")

        if not isinstance(field_name, str) or not field_name:
            raise InvalidFilterError(f"Filter field must be a non-empty string: {field_name!r}")
        operator = _parse_operator(operator)
        if isinstance(value, tuple):
            value = list(value)
        _check_value(field_name, operator, value)
        return cls(field=field_name, operator=operator, value=value)


def _parse_operator(operator: Any) -> Operator:
    if isinstance(operator, Operator):
        return operator
    if isinstance(operator, str):
        if operator in _OPERATOR_ALIASES:
            return _OPERATOR_ALIASES[operator]
        try:
            return Operator(operator)
        except ValueError:
            pass
    raise InvalidFilterError(f"Unsupported filter operator: {operator!r}")


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def _check_value(field_name: str, operator: Operator, value: Any) -> None:
    if operator is Operator.IN:
        if not isinstance(value, list) or not value:
            raise InvalidFilterError(
                f"'in' on {field_name} needs a non-empty list of scalars"
            )
        if not all(_is_scalar(item) for item in value):
            raise InvalidFilterError(f"'in' on {field_name} accepts scalars only")
        return
    if not _is_scalar(value):
        raise InvalidFilterError(
            f"'{operator}' on {field_name} needs a scalar value, got {type(value).__name__}"
        )


def compile_filters(filters: Iterable[Any] | None) -> tuple[Predicate, ...]:
    if not filters:
        return ()
    return tuple(Predicate.parse(raw) for raw in filters)


_MISSING = object()


def _kind(value: Any) -> str | None:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return None


def _equal(left: Any, right: Any) -> bool:
    kind = _kind(left)
    return kind is not None and kind == _kind(right) and left == right


def matches(record: Mapping[str, Any], predicate: Predicate) -> bool:
    actual = record.get(predicate.field, _MISSING)
    # Unknown collapses to false.
    if actual is _MISSING or actual is None:
        return False

    operator = predicate.operator
    value = predicate.value
    if operator is Operator.EQ:
        return _equal(actual, value)
    if operator is Operator.NE:
        return not _equal(actual, value)
    if operator is Operator.CONTAINS:
        return isinstance(actual, (list, tuple)) and any(
            _equal(item, value) for item in actual
        )
    if operator is Operator.IN:
        return any(_equal(actual, item) for item in value)

    kind = _kind(actual)
    if kind is None or kind != _kind(value):
        return False
    if operator is Operator.LT:
        return actual < value
    if operator is Operator.LE:
        return actual <= value
    if operator is Operator.GT:
        return actual > value
    return actual >= value


def matches_all(record: Mapping[str, Any], predicates: Sequence[Predicate]) -> bool:
    return all(matches(record, predicate) for predicate in predicates)


def apply_filters(
    records: Iterable[Mapping[str, Any]], predicates: Sequence[Predicate]
) -> list:
    if not predicates:
        return list(records)
    return [record for record in records if matches_all(record, predicates)]


_KIND_ORDER = {"bool": 0, "number": 1, "string": 2}


def sort_records(records: Iterable[Mapping[str, Any]], field_name: str, descending: bool = False) -> list:
    """Orders records by one field; records without a usable value go last."""
    present = []
    missing = []
    for record in records:
        value = record.get(field_name)
        kind = _kind(value)
        if kind is None:
            missing.append(record)
        else:
            present.append(((_KIND_ORDER[kind], value), record))
    present.sort(key=lambda item: item[0], reverse=descending)
    return [record for _, record in present] + missing
