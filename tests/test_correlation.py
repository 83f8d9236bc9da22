import asyncio

import pytest
import yaml

from sigmars.correlation import (
    CorrelationError,
    CorrelationRule,
    CorrelationType,
    Threshold,
    format_timespan,
    parse_timespan,
)
from sigmars.event import Event
from sigmars.state import BackendError, MemBackend

EVENT_COUNT = """
type: event_count
rules:
    - "0"
group-by:
    - correlation_group_by
timespan: 10m
condition:
    gte: 2
"""

VALUE_COUNT = """
type: value_count
rules:
    - "1"
group-by:
    - correlation_group_by
timespan: 10m
condition:
    field: correlation_field
    gte: 2
"""

TEMPORAL = """
type: {kind}
rules:
    - first
    - second
group-by:
    - test
timespan: 10m
"""


def _rule(text, rule_id="2"):
    return CorrelationRule.from_mapping(yaml.safe_load(text), rule_id)


def _run(rule, calls, backend=None):
    backend = backend if backend is not None else MemBackend()

    async def go():
        await backend.register(rule)
        return [await rule.is_match(Event(data=data), prior) for data, prior in calls]

    return asyncio.run(go())


@pytest.mark.parametrize(
    "text, seconds",
    [("45s", 45), ("1m", 60), ("1h", 3600), ("1d", 86400)],
)
def test_parse_timespan(text, seconds):
    assert parse_timespan(text) == seconds


def test_timespan_units_agree():
    assert parse_timespan("10m") == parse_timespan("600s")
    assert format_timespan(parse_timespan("10m")) == "600s"


def test_format_timespan_round_trip():
    assert parse_timespan(format_timespan(3600)) == 3600


@pytest.mark.parametrize("text", ["", "m", "10x", "-5m", "1.5h", 10, None])
def test_parse_timespan_rejects(text):
    with pytest.raises(CorrelationError):
        parse_timespan(text)


@pytest.mark.parametrize(
    "op, bound, count, expected",
    [
        ("gt", 2, 3, True),
        ("gt", 2, 2, False),
        ("gte", 2, 2, True),
        ("gte", 2, 1, False),
        ("lt", 2, 1, True),
        ("lt", 2, 2, False),
        ("lte", 2, 2, True),
        ("lte", 2, 3, False),
        ("eq", 2, 2, True),
        ("eq", 2, 3, False),
    ],
)
def test_threshold_is_match(op, bound, count, expected):
    assert Threshold(op, bound).is_match(count) is expected


def test_threshold_round_trip():
    threshold = Threshold.from_mapping({"lte": 7})
    assert Threshold.from_mapping(threshold.to_dict()) == threshold
    assert threshold.to_dict() == {"lte": 7}


@pytest.mark.parametrize(
    "mapping",
    [{"gte": 1, "lt": 5}, {}, {"between": 3}, {"gte": True}, {"gte": 1.5}, [("gte", 1)]],
)
def test_threshold_rejects(mapping):
    with pytest.raises(CorrelationError):
        Threshold.from_mapping(mapping)


def test_parse_event_count():
    rule = _rule(EVENT_COUNT)
    assert rule.correlation_type is CorrelationType.EVENT_COUNT
    assert rule.rules == ["0"]
    assert rule.group_by == ["correlation_group_by"]
    assert rule.timespan == parse_timespan("10m")
    assert rule.condition == Threshold("gte", 2)
    assert rule.id == "2"
    assert rule.state is None


def test_parse_value_count():
    rule = _rule(VALUE_COUNT, "3")
    assert rule.correlation_type is CorrelationType.VALUE_COUNT
    assert rule.value_field == "correlation_field"
    assert rule.condition == Threshold("gte", 2)


def test_parse_temporal_ordered():
    rule = _rule(TEMPORAL.format(kind="temporal_ordered"))
    assert rule.correlation_type is CorrelationType.TEMPORAL_ORDERED
    assert rule.condition is None
    assert rule.rules == ["first", "second"]


@pytest.mark.parametrize(
    "text", [EVENT_COUNT, VALUE_COUNT, TEMPORAL.format(kind="temporal")]
)
def test_to_dict_round_trip(text):
    rule = _rule(text)
    again = CorrelationRule.from_mapping(rule.to_dict(), rule.id)
    assert again.to_dict() == rule.to_dict()
    assert again.timespan == rule.timespan


def test_to_dict_value_count_layout():
    data = _rule(VALUE_COUNT).to_dict()
    assert data["condition"] == {"gte": 2, "field": "correlation_field"}
    assert data["type"] == "value_count"


@pytest.mark.parametrize(
    "mapping",
    [
        {"type": "sequence", "rules": ["a"], "group-by": [], "timespan": "1m"},
        {"type": "temporal", "group-by": [], "timespan": "1m"},
        {"type": "temporal", "rules": ["a"], "group-by": []},
        {"type": "temporal", "rules": ["a"], "timespan": "1m"},
        {"type": "temporal", "rules": [0], "group-by": [], "timespan": "1m"},
        {"type": "temporal", "rules": ["a"], "group-by": [], "timespan": "1w"},
        {"type": "event_count", "rules": ["a"], "group-by": [], "timespan": "1m"},
        {
            "type": "value_count",
            "rules": ["a"],
            "group-by": [],
            "timespan": "1m",
            "condition": {"gte": 2},
        },
        "temporal",
    ],
)
def test_from_mapping_rejects(mapping):
    with pytest.raises(CorrelationError):
        CorrelationRule.from_mapping(mapping, "x")


def test_event_count():
    data = {"foo": "bar", "correlation_group_by": "test"}
    assert _run(_rule(EVENT_COUNT), [(data, ["0"]), (data, ["0"])]) == [False, True]


def test_event_count_separate_groups():
    calls = [
        ({"correlation_group_by": "test"}, ["0"]),
        ({"correlation_group_by": "test2"}, ["0"]),
    ]
    assert _run(_rule(EVENT_COUNT), calls) == [False, False]


def test_event_count_missing_group_by():
    data = {"foo": "bar"}
    assert _run(_rule(EVENT_COUNT), [(data, ["0"]), (data, ["0"])]) == [False, False]


def test_event_count_needs_dependencies():
    data = {"correlation_group_by": "test"}
    assert _run(_rule(EVENT_COUNT), [(data, []), (data, ["0"])]) == [False, False]


def test_event_count_condition_list():
    text = EVENT_COUNT.replace("    gte: 2", "    - gte: 2\n    - lt: 3")
    data = {"correlation_group_by": "test"}
    assert _run(_rule(text), [(data, ["0"])] * 3) == [False, True, False]


def test_value_count():
    calls = [
        ({"correlation_group_by": "test", "correlation_field": "first"}, ["1"]),
        ({"correlation_group_by": "test", "correlation_field": "second"}, ["1"]),
    ]
    assert _run(_rule(VALUE_COUNT, "3"), calls) == [False, True]


def test_value_count_repeated_value():
    data = {"correlation_group_by": "test", "correlation_field": "first"}
    assert _run(_rule(VALUE_COUNT, "3"), [(data, ["1"]), (data, ["1"])]) == [False, False]


def test_value_count_unmatched_group_by():
    calls = [
        ({"correlation_group_by": "first", "correlation_field": "first"}, ["1"]),
        ({"correlation_group_by": "second", "correlation_field": "second"}, ["1"]),
    ]
    assert _run(_rule(VALUE_COUNT, "3"), calls) == [False, False]


def test_value_count_missing_field():
    data = {"correlation_group_by": "test"}
    assert _run(_rule(VALUE_COUNT, "3"), [(data, ["1"]), (data, ["1"])]) == [False, False]


FIRST = ({"test": "yes", "first": "firstvalue"}, ["first"])
SECOND = ({"test": "yes", "second": "secondvalue"}, ["second"])


def test_temporal_in_order():
    assert _run(_rule(TEMPORAL.format(kind="temporal")), [FIRST, SECOND]) == [False, True]


def test_temporal_out_of_order():
    assert _run(_rule(TEMPORAL.format(kind="temporal")), [SECOND, FIRST]) == [False, True]


def test_temporal_ordered_in_order():
    rule = _rule(TEMPORAL.format(kind="temporal_ordered"))
    assert _run(rule, [FIRST, SECOND]) == [False, True]


def test_temporal_ordered_out_of_order():
    rule = _rule(TEMPORAL.format(kind="temporal_ordered"))
    assert _run(rule, [SECOND, FIRST]) == [False, False]


def test_counts_expire_after_timespan():
    now = [0.0]
    backend = MemBackend(clock=lambda: now[0])
    rule = _rule(EVENT_COUNT)
    data = Event(data={"correlation_group_by": "test"})

    async def go():
        await backend.register(rule)
        first = await rule.is_match(data, ["0"])
        now[0] += rule.timespan + 1
        second = await rule.is_match(data, ["0"])
        third = await rule.is_match(data, ["0"])
        return [first, second, third]

    assert asyncio.run(go()) == [False, False, True]


def test_state_not_initialized():
    rule = _rule(EVENT_COUNT)
    with pytest.raises(CorrelationError):
        asyncio.run(rule.is_match(Event(data={"correlation_group_by": "x"}), ["0"]))


def test_missing_group_by_checked_before_state():
    rule = _rule(EVENT_COUNT)
    assert asyncio.run(rule.is_match(Event(data={}), ["0"])) is False


def test_register_twice():
    rule = _rule(EVENT_COUNT)
    backend = MemBackend()
    asyncio.run(backend.register(rule))
    with pytest.raises(BackendError):
        asyncio.run(backend.register(rule))