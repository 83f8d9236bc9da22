from sigmars.event import Event, LogSource


def test_logsource_from_value_reads_strings():
    source = LogSource.from_value({"category": "linux", "product": "windows", "service": "security"})
    assert source.category == "linux"
    assert source.product == "windows"
    assert source.service == "security"


def test_logsource_from_value_ignores_non_strings():
    source = LogSource.from_value({"category": "linux", "product": 5, "service": None})
    assert source == LogSource(category="linux")


def test_logsource_from_value_non_object():
    assert LogSource.from_value("linux") == LogSource()
    assert LogSource.from_value([1, 2]) == LogSource()


def test_logsource_from_value_ignores_other_keys():
    source = LogSource.from_value({"vendor": "acme"})
    assert source.extra == {}
    assert source == LogSource()


def test_event_from_value_defaults():
    event = Event.from_value({"foo": "bar"})
    assert event.data == {"foo": "bar"}
    assert event.logsource == LogSource()
    assert event.metadata == {}


def test_event_logsource_and_metadata():
    event = Event.from_value({"foo": "bar"})
    event.logsource = LogSource.from_value({"category": "linux"})
    event.metadata["environment"] = "prod"
    assert event.logsource.category == "linux"
    assert event.metadata.get("environment") == "prod"


def test_event_metadata_not_shared():
    first = Event()
    second = Event()
    first.metadata["key"] = 1
    assert second.metadata == {}
    assert second.data is None