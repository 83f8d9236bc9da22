"""Index of detection rules by log source, used to narrow rule evaluation."""

from __future__ import annotations

from collections import defaultdict

from .event import LogSource

_FIELDS = ("category", "product", "service")


class LogSourceFilter:
    """Finds the rules whose log source is compatible with an event's.

    A rule without a value for a log source field matches any event; an event
    without a value for a field does not restrict rules by that field.
    """

    def __init__(self) -> None:
        self._indexes: dict[str, defaultdict[str | None, set[str]]] = {
            name: defaultdict(set) for name in _FIELDS
        }
        self._all: set[str] = set()

    def add(self, rule_id: str, logsource: LogSource) -> None:
        """Index a rule under its log source."""
        for name, index in self._indexes.items():
            index[getattr(logsource, name)].add(rule_id)
        self._all.add(rule_id)

    def filter(self, target: LogSource) -> set[str]:
        """Return the ids of rules compatible with the target log source."""
        result = set(self._all)
        for name, index in self._indexes.items():
            wanted = getattr(target, name)
            if wanted is not None:
                result &= index.get(wanted, set()) | index.get(None, set())
        return result