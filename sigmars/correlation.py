"""Correlation rules: counts and orderings over the matches of other rules."""

from __future__ import annotations

import enum
import json
import operator
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from .event import Event
from .state import Key, RuleState

_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1
_U64_MAX = 2**64 - 1
_NUMBER_TEXT = re.compile(r"\+?[0-9]+")
_TIMESPAN_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_COMPARISONS: dict[str, Callable[[int, int], bool]] = {
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "eq": operator.eq,
}


class CorrelationError(ValueError):
    """Raised when a correlation rule is invalid or cannot be evaluated."""


def parse_timespan(text: Any) -> int:
    """Parse a timespan such as ``10m`` into seconds (units ``s``, ``m``, ``h``, ``d``)."""
    if not isinstance(text, str) or not text:
        raise CorrelationError(
            "a timespan must be a number followed by a unit (s, m, h, d)"
        )
    number, unit = text[:-1], text[-1]
    if not _NUMBER_TEXT.fullmatch(number) or int(number) > _U64_MAX:
        raise CorrelationError(f"invalid timespan: {text!r}")
    if unit not in _TIMESPAN_UNITS:
        raise CorrelationError(f"invalid format: {unit!r}")
    return int(number) * _TIMESPAN_UNITS[unit]


def format_timespan(seconds: float) -> str:
    """Write a timespan in seconds the way rules are serialised: ``<n>s``."""
    return f"{int(seconds)}s"


def _json_text(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


@dataclass(frozen=True)
class Threshold:
    """A comparison of a count with a bound, such as ``gte: 2``."""

    op: str
    value: int

    def __post_init__(self) -> None:
        if self.op not in _COMPARISONS:
            raise CorrelationError(f"unknown condition: {self.op!r}")
        if (
            not isinstance(self.value, int)
            or isinstance(self.value, bool)
            or not _I64_MIN <= self.value <= _I64_MAX
        ):
            raise CorrelationError(f"invalid condition value: {self.value!r}")

    @classmethod
    def from_mapping(cls, mapping: Any) -> Threshold:
        """Parse a single-entry mapping such as ``{"gte": 2}``."""
        if not isinstance(mapping, Mapping) or len(mapping) != 1:
            raise CorrelationError("a condition must be a mapping with a single entry")
        ((op, value),) = mapping.items()
        if not isinstance(op, str):
            raise CorrelationError(f"unknown condition: {op!r}")
        return cls(op, value)

    def is_match(self, value: int) -> bool:
        """Compare a count with the bound."""
        return _COMPARISONS[self.op](value, self.value)

    def to_dict(self) -> dict[str, int]:
        """Return the condition as a single-entry mapping."""
        return {self.op: self.value}


class CorrelationType(enum.Enum):
    """The kind of a correlation rule."""

    EVENT_COUNT = "event_count"
    VALUE_COUNT = "value_count"
    TEMPORAL = "temporal"
    TEMPORAL_ORDERED = "temporal_ordered"


def _string_list(mapping: Mapping[str, Any], name: str) -> list[str]:
    if name not in mapping:
        raise CorrelationError(f"missing field `{name}`")
    value = mapping[name]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise CorrelationError(f"`{name}` must be a list of strings")
    return list(value)


def _event_condition(mapping: Mapping[str, Any]) -> Union[Threshold, list[Threshold]]:
    if "condition" not in mapping:
        raise CorrelationError("missing field `condition`")
    condition = mapping["condition"]
    if isinstance(condition, list):
        return [Threshold.from_mapping(item) for item in condition]
    return Threshold.from_mapping(condition)


def _value_condition(mapping: Mapping[str, Any]) -> tuple[Threshold, str]:
    condition = mapping.get("condition")
    if not isinstance(condition, Mapping):
        raise CorrelationError("missing field `condition`")
    value_field = condition.get("field")
    if not isinstance(value_field, str):
        raise CorrelationError("a value count condition needs a `field`")
    rest = {key: item for key, item in condition.items() if key != "field"}
    return Threshold.from_mapping(rest), value_field


@dataclass(eq=False)
class CorrelationRule:
    """A correlation rule over the matches of the rules it names."""

    correlation_type: CorrelationType
    rules: list[str]
    timespan: int
    group_by: list[str]
    condition: Union[Threshold, list[Threshold], None] = None
    value_field: str | None = None
    id: str = ""
    state: RuleState | None = field(default=None, repr=False)

    @classmethod
    def from_mapping(cls, mapping: Any, rule_id: str = "") -> CorrelationRule:
        """Parse the ``correlation`` section of a rule with the given id."""
        if not isinstance(mapping, Mapping):
            raise CorrelationError("invalid correlation")
        type_name = mapping.get("type")
        if not isinstance(type_name, str):
            raise CorrelationError("missing field `type`")
        try:
            correlation_type = CorrelationType(type_name)
        except ValueError:
            raise CorrelationError(f"unknown correlation type: {type_name!r}") from None

        rules = _string_list(mapping, "rules")
        if "timespan" not in mapping:
            raise CorrelationError("missing field `timespan`")
        timespan = parse_timespan(mapping["timespan"])
        group_by = _string_list(mapping, "group-by")

        condition: Union[Threshold, list[Threshold], None] = None
        value_field = None
        if correlation_type is CorrelationType.EVENT_COUNT:
            condition = _event_condition(mapping)
        elif correlation_type is CorrelationType.VALUE_COUNT:
            condition, value_field = _value_condition(mapping)

        return cls(
            correlation_type=correlation_type,
            rules=rules,
            timespan=timespan,
            group_by=group_by,
            condition=condition,
            value_field=value_field,
            id=rule_id,
        )

    async def is_match(self, event: Event, prior: list[str]) -> bool:
        """Record the event and decide whether the correlation now holds.

        ``prior`` holds the ids of rules the event already matched. An event
        missing any group-by field never matches.
        """
        hashed = set(prior)
        data = event.data
        group_by = []
        for name in self.group_by:
            if not isinstance(data, dict) or name not in data:
                return False
            group_by.append((name, data[name]))

        state = self.state
        if state is None:
            raise CorrelationError("state not initialized")

        kind = self.correlation_type
        if kind is CorrelationType.EVENT_COUNT:
            if not all(rule in hashed for rule in self.rules):
                return False
            count = await state.incr(Key(tuple(group_by)))
            conditions = self.condition if isinstance(self.condition, list) else [self.condition]
            return all(condition.is_match(count) for condition in conditions)

        if kind is CorrelationType.VALUE_COUNT:
            if not all(rule in hashed for rule in self.rules):
                return False
            if not isinstance(data, dict) or self.value_field not in data:
                return False
            value = f"{self.value_field}:{_json_text(data[self.value_field])}"
            count = await state.incr(Key(tuple(group_by), value))
            return self.condition.is_match(count)

        matched = True
        for rule in self.rules:
            key = Key(tuple(group_by), rule)
            seen = await state.incr(key) if rule in hashed else await state.count(key)
            if seen == 0:
                if kind is CorrelationType.TEMPORAL_ORDERED:
                    return False
                matched = False
        return matched

    def to_dict(self) -> dict[str, Any]:
        """Return the ``correlation`` section as plain data for serialisation."""
        out: dict[str, Any] = {"type": self.correlation_type.value}
        if self.correlation_type is CorrelationType.EVENT_COUNT:
            if isinstance(self.condition, list):
                out["condition"] = [item.to_dict() for item in self.condition]
            else:
                out["condition"] = self.condition.to_dict()
        elif self.correlation_type is CorrelationType.VALUE_COUNT:
            out["condition"] = {**self.condition.to_dict(), "field": self.value_field}
        out["rules"] = list(self.rules)
        out["timespan"] = format_timespan(self.timespan)
        out["group-by"] = list(self.group_by)
        return out