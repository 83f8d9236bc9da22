"""State kept for correlation rules, and an in-memory backend for it."""

from __future__ import annotations

import abc
import heapq
import itertools
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


class BackendError(RuntimeError):
    """Raised when a correlation rule's state cannot be set up."""

    def __init__(self, message: str) -> None:
        super().__init__(f"state error: {message}")


def _json_text(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


@dataclass(frozen=True)
class Key:
    """A counter key: the group-by fields of an event and, for value counts, a value.

    A key without a value counts events; a key with one counts distinct values.
    """

    group_by: tuple[tuple[str, Any], ...]
    value: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "group_by", tuple(tuple(pair) for pair in self.group_by))

    def parts(self) -> tuple[str, str | None]:
        """Return the sorted, joined group-by text and the counted value."""
        group = ",".join(sorted(f"{name}:{_json_text(item)}" for name, item in self.group_by))
        return group, self.value


class RuleState(abc.ABC):
    """Counts matches for one correlation rule within its timespan."""

    @abc.abstractmethod
    async def incr(self, key: Key) -> int:
        """Record a match for the key and return the resulting count."""

    @abc.abstractmethod
    async def count(self, key: Key) -> int:
        """Return the current count for the key without changing it."""


class Backend(abc.ABC):
    """Shared storage for the state of every correlation rule in a collection."""

    @abc.abstractmethod
    async def register(self, rule: Any) -> None:
        """Attach a state to a correlation rule."""


class MemState(RuleState):
    """The state of one correlation rule, held in a :class:`MemBackend`."""

    def __init__(self, rule_id: str, timespan: float, backend: MemBackend) -> None:
        self.rule_id = rule_id
        self.timespan = timespan
        self.backend = backend

    async def incr(self, key: Key) -> int:
        return await self.backend.incr(self.rule_id, self.timespan, key)

    async def count(self, key: Key) -> int:
        return await self.backend.count(self.rule_id, key)

    def __repr__(self) -> str:
        return f"MemState(rule_id={self.rule_id!r}, timespan={self.timespan!r})"


class MemBackend(Backend):
    """An in-memory backend; each recorded match expires after the rule's timespan.

    ``clock`` returns the current time in seconds and defaults to a monotonic clock.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock if clock is not None else time.monotonic
        self._counts: dict[str, dict[str, dict[str | None, int]]] = {}
        self._expiry: list[tuple[float, int, str, str, str | None]] = []
        self._sequence = itertools.count()

    async def register(self, rule: Any) -> None:
        """Give a correlation rule (with ``id``, ``timespan`` and ``state``) its state."""
        state = MemState(rule.id, rule.timespan, self)
        if getattr(rule, "state", None) is not None:
            raise BackendError(f"{rule.id}: state already initialized")
        rule.state = state

    async def incr(self, rule_id: str, timespan: float, key: Key) -> int:
        """Record a match and return the event count or the number of distinct values."""
        self._expire()
        group, value = key.parts()
        grouping = self._counts.setdefault(rule_id, {}).setdefault(group, {})
        grouping[value] = grouping.get(value, 0) + 1
        heapq.heappush(
            self._expiry,
            (self._clock() + timespan, next(self._sequence), rule_id, group, value),
        )
        if key.value is None:
            return grouping[value]
        return len(grouping)

    async def count(self, rule_id: str, key: Key) -> int:
        """Return the live count recorded for a key."""
        self._expire()
        group, value = key.parts()
        return self._counts.get(rule_id, {}).get(group, {}).get(value, 0)

    def _expire(self) -> None:
        now = self._clock()
        while self._expiry and self._expiry[0][0] <= now:
            _, _, rule_id, group, value = heapq.heappop(self._expiry)
            groups = self._counts.get(rule_id)
            if groups is None or group not in groups:
                continue
            grouping = groups[group]
            if value in grouping:
                grouping[value] -= 1
                if grouping[value] <= 0:
                    del grouping[value]
                    if not grouping:
                        del groups[group]
            else:
                del groups[group]