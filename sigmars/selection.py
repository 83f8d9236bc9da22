"""Selections of a detection and the field modifiers they use."""

from __future__ import annotations

import enum
import ipaddress
import re
from dataclasses import dataclass, field
from typing import Any, Union

_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1
_INT_TEXT = re.compile(r"[+-]?[0-9]+")
_PREFIX_LENGTH = re.compile(r"[0-9]+")
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}

_MISSING = object()
_ANY_NETWORK = object()


class SelectionError(ValueError):
    """Raised when a selection of a detection cannot be parsed."""


def get_terminal_from_dotted_path(path: str, log: Any) -> Any:
    """Return the value found by following a dotted path through nested objects.

    Raises ``KeyError`` when any part of the path is absent.
    """
    current = log
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            raise KeyError(path)
        current = current[part]
    return current


def _lookup(path: str, log: Any) -> Any:
    try:
        return get_terminal_from_dotted_path(path, log)
    except KeyError:
        return _MISSING


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _json_equal(left: Any, right: Any) -> bool:
    """Compare two JSON values, keeping booleans, integers and floats apart."""
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if _is_number(left) and _is_number(right):
        return type(left) is type(right) and left == right
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(
            _json_equal(a, b) for a, b in zip(left, right)
        )
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(
            _json_equal(item, right[key]) for key, item in left.items()
        )
    return type(left) is type(right) and left == right


def _as_i64(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        if _I64_MIN <= value <= _I64_MAX:
            return value
    return None


def _parse_i64(text: str) -> int | None:
    if not _INT_TEXT.fullmatch(text):
        return None
    return _as_i64(int(text))


def _log_integer(value: Any) -> int | None:
    number = _as_i64(value)
    if number is None and isinstance(value, str):
        number = _parse_i64(value)
    return number


def _parse_cidr(text: str) -> Any:
    if text == "any":
        return _ANY_NETWORK
    _, slash, length = text.partition("/")
    if slash and not _PREFIX_LENGTH.fullmatch(length):
        return None
    try:
        return ipaddress.ip_network(text, strict=True)
    except ValueError:
        return None


def _network_contains(network: Any, address: Any) -> bool:
    return network is _ANY_NETWORK or address in network


def _cidr_match(value: Any, target: Any) -> bool:
    network = _parse_cidr(value) if isinstance(value, str) else None
    if network is None or not isinstance(target, str):
        return False
    try:
        address = ipaddress.ip_address(target)
    except ValueError:
        subnet = _parse_cidr(target)
        if subnet is None or subnet is _ANY_NETWORK:
            return False
        return _network_contains(network, subnet.network_address) and _network_contains(
            network, subnet.broadcast_address
        )
    return _network_contains(network, address)


class Modifier(enum.Enum):
    """A value modifier appended to a field name with ``|``."""

    ALL = "all"
    STARTSWITH = "startswith"
    ENDSWITH = "endswith"
    CONTAINS = "contains"
    EXISTS = "exists"
    CASED = "cased"
    RE = "re"
    BASE64 = "base64"
    BASE64OFFSET = "base64offset"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    CIDR = "cidr"
    EXPAND = "expand"
    FIELDREF = "fieldref"

    @classmethod
    def parse(cls, text: str) -> Modifier:
        """Look up a modifier by its name in a rule."""
        try:
            return cls(text)
        except ValueError:
            raise SelectionError(f"invalid modifier: {text}") from None

    def evaluate(
        self, key: str, value: Any, log: Any, pattern: re.Pattern[str] | None = None
    ) -> bool:
        """Apply the modifier to the field ``key`` of ``log`` against ``value``."""
        target = _lookup(key, log)
        if target is _MISSING:
            target = None

        if self is Modifier.ALL:
            return (
                isinstance(target, list)
                and isinstance(value, list)
                and all(any(_json_equal(item, wanted) for item in target) for wanted in value)
            )
        if self in (Modifier.STARTSWITH, Modifier.ENDSWITH, Modifier.CONTAINS, Modifier.CASED):
            if not (isinstance(value, str) and isinstance(target, str)):
                return False
            if self is Modifier.STARTSWITH:
                return target.startswith(value)
            if self is Modifier.ENDSWITH:
                return target.endswith(value)
            if self is Modifier.CONTAINS:
                return value in target
            return target == value
        if self is Modifier.EXISTS:
            return target is not None
        if self is Modifier.RE:
            return (
                pattern is not None
                and isinstance(target, str)
                and pattern.search(target) is not None
            )
        if self in (Modifier.LT, Modifier.LTE, Modifier.GT, Modifier.GTE):
            bound = _as_i64(value)
            number = _log_integer(target)
            if bound is None or number is None:
                return False
            if self is Modifier.LT:
                return number < bound
            if self is Modifier.LTE:
                return number <= bound
            if self is Modifier.GT:
                return number > bound
            return number >= bound
        if self is Modifier.CIDR:
            return _cidr_match(value, target)
        if self is Modifier.FIELDREF:
            if not isinstance(value, str):
                return False
            other = _lookup(value, log)
            return other is not _MISSING and _json_equal(target, other)
        # base64, base64offset and expand are not supported and never match
        return False


def _number(value: int | float) -> int | float:
    if isinstance(value, int) and _as_i64(value) is None:
        return float(value)
    return value


def _list_item(item: Any) -> Any:
    if isinstance(item, (str, bool)):
        return item
    if _is_number(item):
        return _number(item)
    raise SelectionError("invalid value type")


def _field_values(value: Any) -> list[Any]:
    if value is None:
        return [None]
    if isinstance(value, (str, bool)):
        return [value]
    if _is_number(value):
        return [_number(value)]
    if isinstance(value, list):
        return [_list_item(item) for item in value]
    raise SelectionError("invalid value type")


def _compile_regex(value: Any, flags: list[str]) -> re.Pattern[str]:
    if not isinstance(value, str):
        raise SelectionError("invalid regex")
    combined = 0
    for flag in flags:
        if flag not in _REGEX_FLAGS:
            raise SelectionError(f"invalid modifier: {flag}")
        combined |= _REGEX_FLAGS[flag]
    try:
        return re.compile(value, combined)
    except re.error as exc:
        raise SelectionError(f"invalid regex: {exc}") from exc


def _wildcard_match(wanted: str, text: str) -> bool:
    """Case-insensitive match allowing a leading and/or trailing ``*``."""
    text = text.lower()
    if wanted.startswith("*"):
        if wanted.endswith("*"):
            return wanted[1:-1].lower() in text
        return text.endswith(wanted[1:].lower())
    if wanted.endswith("*"):
        return text.startswith(wanted[:-1].lower())
    return text == wanted.lower()


def _plain_match(wanted: Any, target: Any) -> bool:
    if target is _MISSING:
        return wanted is None
    if isinstance(target, str):
        return isinstance(wanted, str) and _wildcard_match(wanted, target)
    if _is_number(target):
        return _is_number(wanted) and _json_equal(wanted, target)
    return False


@dataclass
class Field:
    """A field test of a selection: a dotted key, its values and modifiers."""

    key: str
    values: list[Any]
    modifiers: list[Modifier] = field(default_factory=list)
    pattern: re.Pattern[str] | None = None

    @classmethod
    def parse(cls, key: str, value: Any) -> Field:
        """Parse a ``name|modifier`` key and its value from a rule."""
        name, *rest = key.split("|")
        modifiers: list[Modifier] = []
        pattern = None
        if rest:
            first, flags = rest[0], rest[1:]
            if first == "re":
                pattern = _compile_regex(value, flags)
                modifiers.append(Modifier.RE)
            else:
                modifiers.append(Modifier.parse(first))
        return cls(key=name, values=_field_values(value), modifiers=modifiers, pattern=pattern)

    def is_match(self, log: Any) -> bool:
        """Test the field against a log event."""
        if not self.modifiers:
            target = _lookup(self.key, log)
            return any(_plain_match(wanted, target) for wanted in self.values)
        if not self.values:
            return False
        value = self.values[0] if len(self.values) == 1 else list(self.values)
        return all(
            modifier.evaluate(self.key, value, log, self.pattern) for modifier in self.modifiers
        )


@dataclass(frozen=True)
class _Keyword:
    text: str

    def is_match(self, log: Any) -> bool:
        return isinstance(log, str) and self.text in log


def _fields(mapping: dict[Any, Any]) -> list[Field]:
    fields = []
    for key, value in mapping.items():
        if not isinstance(key, str):
            raise SelectionError("invalid key")
        fields.append(Field.parse(key, value))
    return fields


@dataclass
class Selection:
    """A named selection of a detection; every item in it must match."""

    items: list[Union[Field, _Keyword]]

    @classmethod
    def parse(cls, value: Any) -> Selection:
        """Parse a selection from a mapping or a list of keywords and mappings."""
        if isinstance(value, dict):
            return cls(items=list(_fields(value)))
        if isinstance(value, list):
            items: list[Union[Field, _Keyword]] = []
            for entry in value:
                if isinstance(entry, str):
                    items.append(_Keyword(entry))
                elif isinstance(entry, dict):
                    items.extend(_fields(entry))
                else:
                    raise SelectionError("invalid selection")
            return cls(items=items)
        raise SelectionError("invalid value type")

    def is_match(self, log: Any) -> bool:
        """Test every item of the selection against a log event."""
        return all(item.is_match(log) for item in self.items)