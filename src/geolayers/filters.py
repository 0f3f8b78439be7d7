"""Predicate tree over record fields and order-preserving subsetting."""

from __future__ import annotations

import math
import operator
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .models import Record, RecordSet


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "gt": operator.gt,
    "ge": operator.ge,
    "lt": operator.lt,
    "le": operator.le,
    "ne": operator.ne,
}


def _is_null(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, float) and math.isnan(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _values_equal(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return float(left) == float(right)
    return bool(left == right)


class Predicate:
    """Base class; subclasses are pure functions of one record."""

    def __call__(self, record: Record) -> bool:
        raise NotImplementedError

    def __and__(self, other: Predicate) -> Predicate:
        return AllOf((self, other))

    def __or__(self, other: Predicate) -> Predicate:
        return AnyOf((self, other))

    def __invert__(self) -> Predicate:
        return Not(self)


@dataclass(frozen=True, slots=True)
class FieldEquals(Predicate):
    field: str
    value: Any

    def __post_init__(self) -> None:
        if _is_null(self.value):
            raise ValueError("Use FieldIsNull to match null values")

    def __call__(self, record: Record) -> bool:
        actual = record.get(self.field)
        if _is_null(actual):
            return False
        return _values_equal(actual, self.value)


@dataclass(frozen=True, slots=True)
class FieldIn(Predicate):
    field: str
    values: tuple[Any, ...]

    def __call__(self, record: Record) -> bool:
        actual = record.get(self.field)
        if _is_null(actual):
            return False
        return any(_values_equal(actual, value) for value in self.values)


@dataclass(frozen=True, slots=True)
class FieldCompare(Predicate):
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _COMPARATORS:
            raise ValueError(
                f"Unknown comparison '{self.op}' (expected: {', '.join(sorted(_COMPARATORS))})"
            )
        if _is_null(self.value):
            raise ValueError("Comparison value must not be null")

    def __call__(self, record: Record) -> bool:
        actual = record.get(self.field)
        if _is_null(actual):
            return False
        if _is_number(actual) and _is_number(self.value):
            return _COMPARATORS[self.op](float(actual), float(self.value))
        if self.op == "ne":
            return bool(actual != self.value)
        try:
            return _COMPARATORS[self.op](actual, self.value)
        except TypeError:
            return False


@dataclass(frozen=True, slots=True)
class FieldIsNull(Predicate):
    field: str

    def __call__(self, record: Record) -> bool:
        return _is_null(record.get(self.field))


@dataclass(frozen=True, slots=True)
class AllOf(Predicate):
    predicates: tuple[Predicate, ...]

    def __call__(self, record: Record) -> bool:
        return all(predicate(record) for predicate in self.predicates)


@dataclass(frozen=True, slots=True)
class AnyOf(Predicate):
    predicates: tuple[Predicate, ...]

    def __call__(self, record: Record) -> bool:
        return any(predicate(record) for predicate in self.predicates)


@dataclass(frozen=True, slots=True)
class Not(Predicate):
    predicate: Predicate

    def __call__(self, record: Record) -> bool:
        return not self.predicate(record)


def subset(records: RecordSet, predicate: Predicate | None, *, name: str | None = None) -> RecordSet:
    """Return the matching records as a new set, keeping source order."""
    if predicate is None:
        return records.derive(records.records, name=name)
    return records.derive([record for record in records if predicate(record)], name=name)


def predicate_from_mapping(raw: Mapping[str, Any]) -> Predicate:
    """Parse the YAML predicate form used in `layers[].where`.

    Accepted shapes::

        {field: category, equals: STRIKE}
        {field: category, in: [STRIKE, RIOT]}
        {field: fatalities, gt: 10}
        {field: notes, is_null: true}
        {all: [...]} / {any: [...]} / {not: {...}}
    """
    if not isinstance(raw, Mapping):
        raise ValueError("Predicate must be a mapping")

    for key, factory in (("all", AllOf), ("any", AnyOf)):
        if key in raw:
            if len(raw) != 1:
                raise ValueError(f"'{key}' predicate must not carry other keys")
            children = raw[key]
            if not isinstance(children, list) or not children:
                raise ValueError(f"'{key}' predicate needs a non-empty list")
            return factory(tuple(predicate_from_mapping(child) for child in children))

    if "not" in raw:
        if len(raw) != 1:
            raise ValueError("'not' predicate must not carry other keys")
        return Not(predicate_from_mapping(raw["not"]))

    field_name = raw.get("field")
    if not isinstance(field_name, str) or not field_name.strip():
        raise ValueError("Predicate needs a non-empty 'field'")
    field_name = field_name.strip()
    ops = [key for key in raw if key != "field"]
    if len(ops) != 1:
        raise ValueError(f"Predicate on '{field_name}' must have exactly one operator")
    op = ops[0]
    value = raw[op]

    if op == "equals":
        return FieldEquals(field_name, value)
    if op == "in":
        if not isinstance(value, list) or not value:
            raise ValueError(f"'in' predicate on '{field_name}' needs a non-empty list")
        return FieldIn(field_name, tuple(value))
    if op == "is_null":
        if not isinstance(value, bool):
            raise ValueError(f"'is_null' predicate on '{field_name}' needs true/false")
        predicate: Predicate = FieldIsNull(field_name)
        return predicate if value else Not(predicate)
    if op in _COMPARATORS:
        return FieldCompare(field_name, op, value)
    raise ValueError(f"Unknown predicate operator '{op}' on '{field_name}'")


def predicate_fields(predicate: Predicate) -> tuple[str, ...]:
    """Field names a predicate reads, in first-use order."""
    seen: list[str] = []
    stack: list[Predicate] = [predicate]
    while stack:
        current = stack.pop()
        if isinstance(current, (AllOf, AnyOf)):
            stack.extend(reversed(current.predicates))
        elif isinstance(current, Not):
            stack.append(current.predicate)
        else:
            name = getattr(current, "field", None)
            if isinstance(name, str) and name not in seen:
                seen.append(name)
    return tuple(seen)
