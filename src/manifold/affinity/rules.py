from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from manifold.affinity.keys import parse_key_path
from manifold.config.models import AffinityCommand, ApiConfig
from manifold.errors import ConfigurationError


@dataclass(frozen=True)
class AffinityRule:
    """How one method interacts with the affinity index."""

    method: str
    command: AffinityCommand
    key_path: str

    @property
    def reads_request(self) -> bool:
        """True if the key comes from the request rather than the response."""
        return self.command in (AffinityCommand.BOUND, AffinityCommand.UNBIND)


class AffinityRuleTable(Mapping[str, AffinityRule]):
    """Immutable mapping from fully-qualified method name to its affinity rule.

    Methods without a rule are routed by load only and never touch the
    affinity index.
    """

    def __init__(self, rules: Iterable[AffinityRule] = ()):
        table: dict[str, AffinityRule] = {}
        for rule in rules:
            if rule.method in table:
                raise ConfigurationError(
                    f"Duplicate affinity rule for method '{rule.method}'"
                )
            try:
                parse_key_path(rule.key_path)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid key path for '{rule.method}': {e}"
                ) from e
            table[rule.method] = rule
        self._rules = MappingProxyType(table)

    @classmethod
    def from_config(cls, config: ApiConfig) -> "AffinityRuleTable":
        """Build the table from the method section of an API config."""
        rules = []
        for method_config in config.method:
            if method_config.affinity is None:
                continue
            for name in method_config.name:
                rules.append(
                    AffinityRule(
                        method=name,
                        command=method_config.affinity.command,
                        key_path=method_config.affinity.affinity_key,
                    )
                )
        return cls(rules)

    def rule_for(self, method: str) -> AffinityRule | None:
        return self._rules.get(method)

    def __getitem__(self, method: str) -> AffinityRule:
        return self._rules[method]

    def __iter__(self) -> Iterator[str]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"AffinityRuleTable({list(self._rules.values())!r})"
