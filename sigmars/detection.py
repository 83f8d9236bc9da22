"""Detection sections of Sigma rules: selections combined by a condition."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

from .condition import Condition, ConditionError
from .event import LogSource
from .selection import Selection, SelectionError

_LOGSOURCE_FIELDS = ("category", "product", "service")


class DetectionError(ValueError):
    """Raised when a detection or a detection rule is invalid."""


class Detection:
    """A compiled detection: named selections and the condition joining them."""

    def __init__(self, detection: Any) -> None:
        if not isinstance(detection, Mapping):
            raise DetectionError("invalid detection")
        rules = dict(detection)
        condition = rules.pop("condition", None)
        if not isinstance(condition, str):
            raise DetectionError("invalid detection")

        selections: dict[str, Selection] = {}
        for key, value in rules.items():
            if not isinstance(key, str):
                raise DetectionError("invalid detection")
            try:
                selections[key] = Selection.parse(value)
            except SelectionError as exc:
                raise DetectionError(str(exc)) from exc

        try:
            self.condition = Condition(condition)
        except ConditionError as exc:
            raise DetectionError(str(exc)) from exc
        self.selections = selections

    def is_match(self, data: Any) -> bool:
        """Evaluate the detection against the data of a log event."""
        results = {name: selection.is_match(data) for name, selection in self.selections.items()}
        return self.condition.is_match(results)


def _parse_logsource(value: Any) -> LogSource:
    if not isinstance(value, Mapping):
        raise DetectionError("invalid logsource")
    known: dict[str, str | None] = {}
    extra: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise DetectionError("invalid logsource key")
        if key in _LOGSOURCE_FIELDS:
            if item is not None and not isinstance(item, str):
                raise DetectionError(f"invalid logsource value for {key}")
            known[key] = item
        else:
            if not isinstance(item, str):
                raise DetectionError(f"invalid logsource value for {key}")
            extra[key] = item
    return LogSource(**known, extra=extra)


class DetectionRule:
    """The detection part of a Sigma rule: its log source and detection."""

    def __init__(self, logsource: LogSource, detection: Any) -> None:
        self.logsource = logsource
        self.detection = copy.deepcopy(detection)
        self._compiled = Detection(self.detection)

    @classmethod
    def from_mapping(cls, mapping: Any) -> DetectionRule:
        """Build a detection rule from the ``logsource`` and ``detection`` of a rule."""
        if not isinstance(mapping, Mapping):
            raise DetectionError("invalid detection rule")
        for required in ("logsource", "detection"):
            if required not in mapping:
                raise DetectionError(f"missing field: {required}")
        return cls(_parse_logsource(mapping["logsource"]), mapping["detection"])

    def is_match(self, data: Any) -> bool:
        """Evaluate the rule's detection against the data of a log event."""
        return self._compiled.is_match(data)

    def to_dict(self) -> dict[str, Any]:
        """Return the rule's fields as plain data for serialisation."""
        logsource: dict[str, Any] = {
            "category": self.logsource.category,
            "product": self.logsource.product,
            "service": self.logsource.service,
        }
        logsource.update(self.logsource.extra)
        return {"logsource": logsource, "detection": copy.deepcopy(self.detection)}

    def __repr__(self) -> str:
        return f"DetectionRule(logsource={self.logsource!r}, detection={self.detection!r})"