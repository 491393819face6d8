"""
Static rule registry.

Rules are loaded once at startup, validated eagerly, and never mutated
afterwards. A configuration change is modelled as building a new
registry and swapping it in, so readers never observe a half-edited rule.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from gatekeeper.models import ConfigurationError, Rule

logger = logging.getLogger(__name__)

__all__ = [
    "ConfigurationError",
    "RuleRegistry",
    "UnknownRuleError",
]


class UnknownRuleError(ConfigurationError, KeyError):
    """Raised when a rule id is not registered."""

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"Unknown rule id: {rule_id!r}")
        self.rule_id = rule_id

    def __str__(self) -> str:
        return self.args[0]


class RuleRegistry:
    """Read-only mapping from rule id to ``Rule``."""

    def __init__(self, rules: Iterable[Rule]) -> None:
        table: dict[str, Rule] = {}
        for rule in rules:
            if rule.rule_id in table:
                raise ConfigurationError(f"Duplicate rule id: {rule.rule_id!r}")
            table[rule.rule_id] = rule
        self._rules: Mapping[str, Rule] = MappingProxyType(table)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RuleRegistry:
        """
        Build a registry from ``{rule_id: {capacity, ...}}``.

        A top-level ``{"rules": {...}}`` wrapper is also accepted.

        Raises:
            ConfigurationError: If any rule is invalid
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError("Rule configuration must be an object")
        if set(data) == {"rules"}:
            data = data["rules"]
            if not isinstance(data, Mapping):
                raise ConfigurationError("'rules' must be an object")

        return cls(Rule.from_dict(rule_id, options) for rule_id, options in data.items())

    @classmethod
    def from_file(cls, path: str | Path) -> RuleRegistry:
        """Load and validate rules from a JSON file."""
        path = Path(path)
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Rules file not found: {path}") from None
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Rules file {path} is not valid JSON: {e}") from e

        registry = cls.from_dict(data)
        logger.info(f"Loaded {len(registry)} rate limit rules from {path}")
        return registry

    def get(self, rule_id: str) -> Rule:
        """
        Look up a rule.

        Raises:
            UnknownRuleError: If ``rule_id`` is not registered
        """
        try:
            return self._rules[rule_id]
        except KeyError:
            raise UnknownRuleError(rule_id) from None

    def require(self, rule_ids: Iterable[str]) -> None:
        """
        Verify that every referenced rule id exists.

        Call at startup with the ids your routes reference so a typo fails
        the deployment instead of a request.
        """
        missing = sorted({rid for rid in rule_ids if rid not in self._rules})
        if missing:
            raise ConfigurationError(f"Unknown rule ids referenced: {', '.join(missing)}")

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._rules

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {rule_id: rule.to_dict() for rule_id, rule in self._rules.items()}
