"""Collections of Sigma rules with dependency resolution and log source filtering."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Iterator
from pathlib import Path

import yaml

from .correlation import CorrelationRule
from .detection import DetectionRule
from .event import Event
from .filter import LogSourceFilter
from .rule import RuleError, SigmaRule
from .state import Backend

_log = logging.getLogger(__name__)


class CollectionError(Exception):
    """Raised when a collection of rules cannot be built."""


class DependencyMissing(CollectionError):
    """Raised when a correlation rule names a rule that is not in the collection."""

    def __init__(self, rule_id: str, dependency: str) -> None:
        self.rule_id = rule_id
        self.dependency = dependency
        super().__init__(
            f"dependency for {rule_id} not present in collection: {dependency}"
        )


class DependencyCycle(CollectionError):
    """Raised when correlation rules depend on each other in a cycle."""

    def __init__(self) -> None:
        super().__init__("cycle detected in dependencies")


class _DependencyGraph:
    """Edges run from a rule to the correlation rules that depend on it."""

    def __init__(self) -> None:
        self._successors: dict[str, list[str]] = {}
        self.order: list[str] = []

    def add_edge(self, source: str, target: str) -> None:
        self._successors.setdefault(source, []).append(target)
        self._successors.setdefault(target, [])

    def sort(self) -> None:
        indegree = {node: 0 for node in self._successors}
        for targets in self._successors.values():
            for target in targets:
                indegree[target] += 1
        ready = deque(node for node, degree in indegree.items() if degree == 0)
        order = []
        while ready:
            node = ready.popleft()
            order.append(node)
            for target in self._successors[node]:
                indegree[target] -= 1
                if indegree[target] == 0:
                    ready.append(target)
        if len(order) != len(self._successors):
            raise DependencyCycle()
        self.order = order

    def reachable(self, sources: Iterable[str]) -> set[str]:
        """Return the nodes reachable from any of the sources, sources included."""
        seen = {node for node in sources if node in self._successors}
        pending = deque(seen)
        while pending:
            for target in self._successors[pending.popleft()]:
                if target not in seen:
                    seen.add(target)
                    pending.append(target)
        return seen


class SigmaCollection:
    """A collection of Sigma rules, with dependency resolution and log source filtering."""

    def __init__(self, rules: Iterable[SigmaRule] = ()) -> None:
        self._rules: dict[str, SigmaRule] = {}
        self._filter = LogSourceFilter()
        self._named: dict[str, str] = {}
        self._deps = _DependencyGraph()
        for rule in rules:
            self._insert(rule)
        self._solve()

    @classmethod
    def from_yaml(cls, text: str) -> SigmaCollection:
        """Parse a stream of YAML documents, one rule per document."""
        try:
            documents = list(yaml.safe_load_all(text))
        except yaml.YAMLError as exc:
            raise CollectionError(f"error parsing rule: {exc}") from exc
        try:
            rules = [SigmaRule.from_mapping(document) for document in documents]
        except RuleError as exc:
            raise CollectionError(f"error parsing rule: {exc}") from exc
        return cls(rules)

    @classmethod
    def from_dir(cls, path: str | Path) -> SigmaCollection:
        """Build a collection from the ``.yml`` files under a directory."""
        collection = cls()
        collection.load_from_dir(path)
        return collection

    def load_from_dir(self, path: str | Path) -> int:
        """Add the rules of every ``.yml`` file under a directory; return how many.

        Files that cannot be read or parsed on their own are skipped with a warning.
        """
        new_rules: list[SigmaRule] = []
        for file in sorted(Path(path).glob("**/*.yml")):
            if not file.is_file():
                continue
            try:
                text = file.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            try:
                new_rules.extend(type(self).from_yaml(text))
            except CollectionError:
                _log.warning("Error parsing rule: %s, skipping", file)
        for rule in new_rules:
            self._insert(rule)
        self._solve()
        return len(new_rules)

    def add(self, rule: SigmaRule) -> None:
        """Add a rule and resolve the dependencies of the collection again."""
        self._insert(rule)
        self._solve()

    def get(self, rule_id: str) -> SigmaRule | None:
        """Return the rule with the given id, if any."""
        return self._rules.get(rule_id)

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self) -> Iterator[SigmaRule]:
        return iter(list(self._rules.values()))

    def get_detection_matches(self, event: Event) -> list[str]:
        """Return the ids of detection rules matching the event.

        The event's log source restricts which rules are applied: an unset
        field is a wildcard, a set field must agree with the rule's.
        """
        candidates = self._filter.filter(event.logsource)
        return [
            rule_id
            for rule_id, rule in self._rules.items()
            if rule_id in candidates
            and isinstance(rule.rule, DetectionRule)
            and rule.rule.is_match(event.data)
        ]

    def get_detection_matches_unfiltered(self, event: Event) -> list[str]:
        """Return the ids of all detection rules matching the event, ignoring log sources."""
        return [
            rule_id
            for rule_id, rule in self._rules.items()
            if isinstance(rule.rule, DetectionRule) and rule.rule.is_match(event.data)
        ]

    async def init(self, backend: Backend) -> None:
        """Register every correlation rule with a state backend."""
        for rule in self._rules.values():
            if isinstance(rule.rule, CorrelationRule):
                await backend.register(rule.rule)

    async def get_matches(self, event: Event) -> list[str]:
        """Return matching detection rule ids followed by matching correlation rule ids."""
        prior = self.get_detection_matches(event)
        return await self.push_correlation_matches(event, prior)

    async def get_matches_unfiltered(self, event: Event) -> list[str]:
        """Like :meth:`get_matches`, without filtering detection rules by log source."""
        prior = self.get_detection_matches_unfiltered(event)
        return await self.push_correlation_matches(event, prior)

    async def push_correlation_matches(self, event: Event, prior: Iterable[str]) -> list[str]:
        """Return ``prior`` extended with the ids of correlation rules that now match.

        Only correlation rules depending, directly or not, on a rule in ``prior``
        are evaluated, in dependency order.
        """
        matched = list(prior)
        reachable = self._deps.reachable(matched)
        candidates = [
            self._rules[node]
            for node in self._deps.order
            if node in reachable and node in self._rules
        ]
        for rule in candidates:
            if isinstance(rule.rule, CorrelationRule) and await rule.rule.is_match(event, matched):
                matched.append(rule.id)
        return matched

    def to_yaml(self) -> str:
        """Serialise every rule as a stream of YAML documents."""
        return "---\n".join(rule.to_yaml() for rule in self._rules.values())

    def _insert(self, rule: SigmaRule) -> None:
        if rule.name is not None:
            self._named[rule.name] = rule.id
        if isinstance(rule.rule, DetectionRule):
            self._filter.add(rule.id, rule.rule.logsource)
        self._rules[rule.id] = rule

    def _solve(self) -> None:
        graph = _DependencyGraph()
        for rule_id, rule in self._rules.items():
            if not isinstance(rule.rule, CorrelationRule):
                continue
            dependencies = []
            for dependency in rule.rule.rules:
                dependency = self._named.get(dependency, dependency)
                if dependency not in self._rules:
                    raise DependencyMissing(rule_id, dependency)
                dependencies.append(dependency)
            for dependency in dependencies:
                graph.add_edge(dependency, rule_id)
        graph.sort()
        self._deps = graph

    def __repr__(self) -> str:
        return f"SigmaCollection({len(self._rules)} rules)"