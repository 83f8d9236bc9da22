"""Log events and the log source information used to filter rules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class LogSource:
    """Log source information from the Sigma taxonomy.

    A field left as ``None`` acts as a wildcard when filtering rules.
    """

    category: str | None = None
    product: str | None = None
    service: str | None = None
    extra: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any) -> LogSource:
        """Build a log source from the string fields of a JSON-like object.

        Only the top-level ``category``, ``product`` and ``service`` fields are
        read; a field whose value is not a string is treated as unset.
        """
        if not isinstance(value, dict):
            return cls()

        def text(name: str) -> str | None:
            item = value.get(name)
            return item if isinstance(item, str) else None

        return cls(
            category=text("category"),
            product=text("product"),
            service=text("service"),
        )


@dataclass
class Event:
    """A log event: its data, its log source and free-form metadata."""

    data: Any = None
    logsource: LogSource = field(default_factory=LogSource)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any) -> Event:
        """Wrap decoded JSON data in an event with an empty log source."""
        return cls(data=value)