# sigmars

A library for working with collections of Sigma rules. It parses detection
and correlation rules from YAML and evaluates them against log events.

## Features

- Detection rules with selections, dotted field paths, case-insensitive
  matching with leading/trailing `*` wildcards, keyword lists, and the field
  modifiers `contains`, `startswith`, `endswith`, `all`, `re` (with `i`, `m`
  and `s` flags), `cidr`, `lt`/`lte`/`gt`/`gte`, `exists`, `cased` and
  `fieldref`.
- Conditions with `and`, `or`, `not`, parentheses, `N of pattern*` and
  `all of pattern*`.
- Log source filtering on `category`, `product` and `service`.
- Correlation rules (`event_count`, `value_count`, `temporal`,
  `temporal_ordered`) evaluated in dependency order, with an in-memory state
  backend that expires counts after the rule's timespan.
- Dependency checking: a correlation rule naming a rule (by id or by `name`)
  that is not in the collection raises `DependencyMissing`, and a cycle raises
  `DependencyCycle`.

## Installation

```
pip install sigmars
```

## Detection rules

```python
from sigmars.collection import SigmaCollection
from sigmars.event import Event, LogSource

RULES = """
title: test rule
id: test-rule
logsource:
  category: test
detection:
  selection:
    foo: bar
  condition: selection
---
title: test rule 2
id: test-rule-2
logsource:
  category: nomatch
detection:
  selection:
    foo: bar
  condition: selection
"""

rules = SigmaCollection.from_yaml(RULES)
event = Event(data={"foo": "bar"}, logsource=LogSource(category="test"))

rules.get_detection_matches(event)             # ["test-rule"]
rules.get_detection_matches_unfiltered(event)  # both rule ids
```

Fields of the event's `LogSource` act as a filter: a field left unset is a
wildcard, and any field that is set must equal the rule's value for that
field, unless the rule leaves it unset.

Both a log source and an event can be built from plain JSON-like data:

```python
event = Event.from_value({"foo": "bar"})
event.logsource = LogSource.from_value({"category": "linux"})
```

`LogSource.from_value` reads only the string values of `category`, `product`
and `service`.

`SigmaCollection.from_yaml` raises `CollectionError` when the YAML or any rule
in it is invalid.

## Correlation rules

Correlation rules need a state backend. The correlation methods are
coroutines: register the collection's correlation rules with a backend, then
await `get_matches`, which runs detection rules first and then, in dependency
order, the correlation rules that depend on what matched:

```python
import asyncio

from sigmars.state import MemBackend


async def main():
    backend = MemBackend()
    await rules.init(backend)
    return await rules.get_matches(event)


matches = asyncio.run(main())
```

`MemBackend` takes an optional `clock` callable returning seconds (a
monotonic clock by default), which decides when recorded matches expire.
A correlation rule can be registered with one backend only; registering it
again raises `BackendError`.

`get_matches_unfiltered` does the same without log source filtering, and
`push_correlation_matches(event, prior)` evaluates correlation rules against
a list of matching rule ids and returns a new list with the ids of the
correlation rules that fire appended.

An event missing any of a correlation rule's `group-by` fields never matches
that rule.

## Loading rules from disk

```python
rules = SigmaCollection.from_dir("rules/")
added = rules.load_from_dir("more-rules/")
```

Every `*.yml` file below the directory is read; files that cannot be read are
skipped, and files that fail to parse are skipped with a logged warning.
`load_from_dir` returns the number of rules it added.

## Working with rules

```python
rule = rules.get("test-rule")
rule.to_yaml()   # the rule as YAML
rule.to_ocsf()   # the rule as an OCSF Detection Finding (a dict)
len(rules)       # number of rules
list(rules)      # the SigmaRule objects
rules.to_yaml()  # the whole collection as a multi-document YAML string
```

## Limitations

- The `base64`, `base64offset` and `expand` modifiers are accepted but never
  match.
- Correlation state is kept in memory only; there is no persistent backend.
- The package is a library; it provides no command-line tool.

## Running the tests

```
pip install -e ".[test]"
pytest
```