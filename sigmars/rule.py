"""Sigma rules: metadata with either a detection or a correlation."""

from __future__ import annotations

import datetime
import enum
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Union

import yaml

from .correlation import CorrelationError, CorrelationRule
from .detection import DetectionError, DetectionRule

_TEXT_FIELDS = ("name", "description", "author", "date", "modified", "license", "scope", "level")
_LIST_FIELDS = ("references", "tags", "fields", "falsepositives")
_KNOWN_FIELDS = frozenset(
    {"title", "id", "status", "logsource", "detection", "correlation"}
    | set(_TEXT_FIELDS)
    | set(_LIST_FIELDS)
)
_SEVERITY_IDS = {"informational": 1, "low": 2, "medium": 3, "high": 4, "critical": 5}


class RuleError(ValueError):
    """Raised when a Sigma rule cannot be parsed."""


class Status(enum.Enum):
    """The maturity status of a rule."""

    STABLE = "stable"
    TEST = "test"
    EXPERIMENTAL = "experimental"
    DEPRECATED = "deprecated"
    UNSUPPORTED = "unsupported"

    @classmethod
    def parse(cls, text: str) -> Status:
        """Look up a status by name; unknown names are unsupported."""
        try:
            return cls(text)
        except ValueError:
            return cls.UNSUPPORTED


def _text(value: Any, name: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, datetime.date):
        return value.isoformat()
    raise RuleError(f"invalid value for `{name}`")


def _optional_text(mapping: Mapping[str, Any], name: str) -> str | None:
    value = mapping.get(name)
    return None if value is None else _text(value, name)


def _optional_list(mapping: Mapping[str, Any], name: str) -> list[str] | None:
    value = mapping.get(name)
    if value is None:
        return None
    if not isinstance(value, list):
        raise RuleError(f"`{name}` must be a list")
    return [_text(item, name) for item in value]


def _plain(value: Any) -> Any:
    """Turn decoded YAML into JSON-like data."""
    if isinstance(value, datetime.date):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def _parse_status(value: Any) -> Status | None:
    if value is None:
        return None
    try:
        return Status(value)
    except ValueError:
        raise RuleError(f"unknown status: {value!r}") from None


def _parse_rule(mapping: Mapping[str, Any], rule_id: str) -> Union[DetectionRule, CorrelationRule]:
    try:
        return DetectionRule.from_mapping(mapping)
    except DetectionError as exc:
        detection_error = exc
    if "correlation" in mapping:
        try:
            return CorrelationRule.from_mapping(mapping["correlation"], rule_id)
        except CorrelationError as exc:
            raise RuleError(f"invalid correlation: {exc}") from exc
    raise RuleError(f"not a detection or correlation rule: {detection_error}") from detection_error


@dataclass(eq=False)
class SigmaRule:
    """A single Sigma rule, detection or correlation; rules are equal by id."""

    title: str
    id: str
    rule: Union[DetectionRule, CorrelationRule]
    name: str | None = None
    description: str | None = None
    references: list[str] | None = None
    author: str | None = None
    date: str | None = None
    modified: str | None = None
    status: Status | None = None
    license: str | None = None
    tags: list[str] | None = None
    scope: str | None = None
    fields: list[str] | None = None
    falsepositives: list[str] | None = None
    level: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, mapping: Any) -> SigmaRule:
        """Build a rule from one decoded YAML document."""
        if not isinstance(mapping, Mapping):
            raise RuleError("expected a Sigma rule")
        for required in ("title", "id"):
            if mapping.get(required) is None:
                raise RuleError(f"missing field `{required}`")
        rule_id = _text(mapping["id"], "id")

        extra = {}
        for key, value in mapping.items():
            if not isinstance(key, str):
                raise RuleError(f"invalid key: {key!r}")
            if key not in _KNOWN_FIELDS:
                extra[key] = _plain(value)

        return cls(
            title=_text(mapping["title"], "title"),
            id=rule_id,
            rule=_parse_rule(mapping, rule_id),
            status=_parse_status(mapping.get("status")),
            extra=extra,
            **{name: _optional_text(mapping, name) for name in _TEXT_FIELDS},
            **{name: _optional_list(mapping, name) for name in _LIST_FIELDS},
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the rule as plain data, in the order rules are written."""
        out: dict[str, Any] = {
            "title": self.title,
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "references": self.references,
            "author": self.author,
            "date": self.date,
            "modified": self.modified,
            "status": self.status.value if self.status is not None else None,
            "license": self.license,
            "tags": self.tags,
            "scope": self.scope,
            "fields": self.fields,
            "falsepositives": self.falsepositives,
            "level": self.level,
        }
        if isinstance(self.rule, CorrelationRule):
            out["correlation"] = self.rule.to_dict()
        else:
            out.update(self.rule.to_dict())
        out.update(self.extra)
        return out

    def to_yaml(self) -> str:
        """Serialise the rule as a YAML document."""
        return yaml.safe_dump(self.to_dict(), sort_keys=False, allow_unicode=True)

    def to_ocsf(self) -> dict[str, Any]:
        """Describe the rule as an OCSF Detection Finding."""
        if self.level is None:
            severity_id = 0
        else:
            severity_id = _SEVERITY_IDS.get(self.level, 99)
        finding: dict[str, Any] = {
            "category_uid": 2,
            "category_name": "Findings",
            "class_uid": 2004,
            "class_name": "Detection Finding",
            "activity_id": 1,
            "activity_name": "Create",
            "type_uid": 200401,
            "type_name": "Detection Finding: Create",
            "status_id": 1,
            "status": "New",
            "time": int(time.time() * 1000),
            "metadata": {
                "version": "1.3.0",
                "product": {"vendor_name": "sigmars", "name": "sigmars"},
            },
            "finding_info": {
                "title": self.title,
                "uid": self.id,
                "analytic": {"type_id": 1, "type": "Rule"},
            },
            "severity_id": severity_id,
        }
        if self.level is not None:
            finding["severity"] = self.level
        return finding

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SigmaRule):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)