from sigmars.event import LogSource
from sigmars.filter import LogSourceFilter

FAILED = "53ba33fd-3a50-4468-a5ef-c583635cfa92"
SUCCESS = "4d0a2c83-c62c-4ed4-b475-c7e23a9269b8"
OTHER = "other-rule"


def make_filter():
    index = LogSourceFilter()
    index.add(FAILED, LogSource(product="windows", service="security"))
    index.add(SUCCESS, LogSource(product="windows"))
    index.add(OTHER, LogSource(category="process_creation", product="linux"))
    return index


def test_empty_target_returns_all():
    assert make_filter().filter(LogSource()) == {FAILED, SUCCESS, OTHER}


def test_product_filter():
    index = make_filter()
    assert index.filter(LogSource(product="windows")) == {FAILED, SUCCESS}
    assert index.filter(LogSource(product="linux")) == {OTHER}


def test_unknown_product_matches_nothing():
    assert make_filter().filter(LogSource(product="notwindows")) == set()


def test_unset_rule_field_is_wildcard():
    index = make_filter()
    assert index.filter(LogSource(service="security")) == {FAILED, SUCCESS, OTHER}
    assert index.filter(LogSource(service="system")) == {SUCCESS, OTHER}


def test_fields_combine():
    index = make_filter()
    target = LogSource(category="process_creation", product="windows")
    assert index.filter(target) == {FAILED, SUCCESS}
    assert index.filter(LogSource(category="process_creation", product="linux")) == {OTHER}


def test_result_is_subset_of_all_rules():
    index = make_filter()
    everything = index.filter(LogSource())
    for target in (
        LogSource(product="windows"),
        LogSource(category="x", product="y", service="z"),
        LogSource(service="security"),
    ):
        assert index.filter(target) <= everything


def test_empty_filter():
    assert LogSourceFilter().filter(LogSource(product="windows")) == set()