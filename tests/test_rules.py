"""Tests for rules and the rule registry."""

import json

import pytest

from gatekeeper.models import Algorithm, FallbackPolicy, Rule
from gatekeeper.rules import ConfigurationError, RuleRegistry, UnknownRuleError


class TestRule:
    """Tests for Rule validation and derived values."""

    def test_token_bucket_requires_refill_rate(self) -> None:
        """Test token bucket without refill rate is rejected."""
        with pytest.raises(ConfigurationError, match="refill_rate_per_second"):
            Rule(rule_id="a", capacity=5, algorithm=Algorithm.TOKEN_BUCKET)

    def test_sliding_window_requires_window(self) -> None:
        """Test sliding window without window size is rejected."""
        with pytest.raises(ConfigurationError, match="window_seconds"):
            Rule(rule_id="a", capacity=5, algorithm=Algorithm.SLIDING_WINDOW)

    @pytest.mark.parametrize("capacity", [0, -1, 2.5, True])
    def test_capacity_must_be_positive_integer(self, capacity) -> None:
        """Test invalid capacities are rejected."""
        with pytest.raises(ConfigurationError, match="capacity"):
            Rule(rule_id="a", capacity=capacity, refill_rate_per_second=1.0)

    def test_negative_refill_rate_rejected(self) -> None:
        """Test refill rate must be positive."""
        with pytest.raises(ConfigurationError):
            Rule(rule_id="a", capacity=5, refill_rate_per_second=-1.0)

    @pytest.mark.parametrize("rate", ["fast", "2", True, float("nan"), float("inf")])
    def test_refill_rate_must_be_finite_number(self, rate) -> None:
        """Test non-numeric and non-finite refill rates are configuration errors."""
        with pytest.raises(ConfigurationError, match="refill_rate_per_second"):
            Rule(rule_id="a", capacity=5, refill_rate_per_second=rate)

    @pytest.mark.parametrize("window", ["60", False, float("nan"), float("inf")])
    def test_window_must_be_finite_number(self, window) -> None:
        """Test non-numeric and non-finite windows are configuration errors."""
        with pytest.raises(ConfigurationError, match="window_seconds"):
            Rule(
                rule_id="a",
                capacity=5,
                algorithm=Algorithm.SLIDING_WINDOW,
                window_seconds=window,
            )

    def test_unused_parameter_still_validated(self) -> None:
        """Test a bogus window on a token bucket rule is rejected."""
        with pytest.raises(ConfigurationError, match="window_seconds"):
            Rule(rule_id="a", capacity=5, refill_rate_per_second=1.0, window_seconds="soon")

    def test_from_dict_string_rate(self) -> None:
        """Test rules loaded from config report bad rates as ConfigurationError."""
        with pytest.raises(ConfigurationError):
            RuleRegistry.from_dict({"api": {"capacity": 5, "refill_rate_per_second": "fast"}})

    @pytest.mark.parametrize("rule_id", ["", "has:colon", "has space"])
    def test_invalid_rule_ids(self, rule_id: str) -> None:
        """Test rule ids that would break storage keys are rejected."""
        with pytest.raises(ConfigurationError):
            Rule(rule_id=rule_id, capacity=5, refill_rate_per_second=1.0)

    def test_string_enums_are_coerced(self) -> None:
        """Test algorithm and fallback given as strings."""
        rule = Rule(
            rule_id="a",
            capacity=5,
            algorithm="sliding_window",
            window_seconds=10,
            fallback_policy="fail_closed",
        )
        assert rule.algorithm is Algorithm.SLIDING_WINDOW
        assert rule.fallback_policy is FallbackPolicy.FAIL_CLOSED

    def test_unknown_algorithm(self) -> None:
        """Test unknown algorithm name is a configuration error."""
        with pytest.raises(ConfigurationError, match="unknown algorithm"):
            Rule(rule_id="a", capacity=5, algorithm="leaky_bucket", window_seconds=10)

    def test_rule_is_immutable(self) -> None:
        """Test rules cannot be edited in place."""
        rule = Rule(rule_id="a", capacity=5, refill_rate_per_second=1.0)
        with pytest.raises(AttributeError):
            rule.capacity = 10  # type: ignore[misc]

    def test_default_fallback_open(self) -> None:
        """Test ordinary rules fail open."""
        rule = Rule(rule_id="a", capacity=5, refill_rate_per_second=1.0)
        assert rule.effective_fallback is FallbackPolicy.FAIL_OPEN

    def test_auth_endpoint_fails_closed(self) -> None:
        """Test authentication rules fail closed by default."""
        rule = Rule(rule_id="a", capacity=5, refill_rate_per_second=1.0, auth_endpoint=True)
        assert rule.effective_fallback is FallbackPolicy.FAIL_CLOSED

    def test_explicit_fallback_wins(self) -> None:
        """Test an explicit policy overrides the auth default."""
        rule = Rule(
            rule_id="a",
            capacity=5,
            refill_rate_per_second=1.0,
            auth_endpoint=True,
            fallback_policy=FallbackPolicy.FAIL_OPEN,
        )
        assert rule.effective_fallback is FallbackPolicy.FAIL_OPEN

    def test_idle_ttl_token_bucket(self) -> None:
        """Test TTL is twice the full-refill time."""
        rule = Rule(rule_id="a", capacity=10, refill_rate_per_second=0.5)
        assert rule.idle_ttl_seconds == 40

    def test_idle_ttl_sliding_window(self) -> None:
        """Test TTL is twice the window."""
        rule = Rule(rule_id="a", capacity=10, algorithm=Algorithm.SLIDING_WINDOW, window_seconds=60)
        assert rule.idle_ttl_seconds == 120

    def test_idle_ttl_uses_larger_horizon(self) -> None:
        """Test TTL uses the max of window and refill time when both are set."""
        rule = Rule(rule_id="a", capacity=100, refill_rate_per_second=1.0, window_seconds=60)
        assert rule.idle_ttl_seconds == 200

    def test_from_dict_unknown_field(self) -> None:
        """Test typos in rule configuration are caught."""
        with pytest.raises(ConfigurationError, match="unknown fields"):
            Rule.from_dict("a", {"capacity": 5, "refill_rate": 1.0})

    def test_from_dict_missing_capacity(self) -> None:
        """Test capacity is mandatory."""
        with pytest.raises(ConfigurationError, match="capacity is required"):
            Rule.from_dict("a", {"refill_rate_per_second": 1.0})


class TestRuleRegistry:
    """Tests for RuleRegistry."""

    @pytest.fixture
    def config(self) -> dict:
        return {
            "api": {"capacity": 100, "refill_rate_per_second": 10},
            "login": {
                "capacity": 5,
                "algorithm": "sliding_window",
                "window_seconds": 300,
                "auth_endpoint": True,
            },
        }

    def test_from_dict(self, config: dict) -> None:
        """Test building a registry from a mapping."""
        registry = RuleRegistry.from_dict(config)

        assert len(registry) == 2
        assert registry.get("api").capacity == 100
        assert registry.get("login").algorithm is Algorithm.SLIDING_WINDOW

    def test_from_dict_with_rules_wrapper(self, config: dict) -> None:
        """Test the {"rules": {...}} layout."""
        registry = RuleRegistry.from_dict({"rules": config})
        assert "api" in registry
        assert "login" in registry

    def test_unknown_rule_raises(self, config: dict) -> None:
        """Test unknown ids are never silently tolerated."""
        registry = RuleRegistry.from_dict(config)

        with pytest.raises(UnknownRuleError) as exc_info:
            registry.get("nope")

        assert isinstance(exc_info.value, ConfigurationError)
        assert exc_info.value.rule_id == "nope"

    def test_require_reports_missing(self, config: dict) -> None:
        """Test startup validation of referenced rule ids."""
        registry = RuleRegistry.from_dict(config)

        registry.require(["api", "login"])
        with pytest.raises(ConfigurationError, match="checkout, upload"):
            registry.require(["api", "upload", "checkout"])

    def test_duplicate_ids_rejected(self) -> None:
        """Test duplicate rule ids are a configuration error."""
        rule = Rule(rule_id="a", capacity=1, refill_rate_per_second=1.0)
        with pytest.raises(ConfigurationError, match="Duplicate"):
            RuleRegistry([rule, rule])

    def test_invalid_rule_fails_whole_registry(self, config: dict) -> None:
        """Test one bad rule fails loading eagerly."""
        config["broken"] = {"capacity": 0, "refill_rate_per_second": 1}
        with pytest.raises(ConfigurationError):
            RuleRegistry.from_dict(config)

    def test_from_file(self, tmp_path, config: dict) -> None:
        """Test loading rules from a JSON file."""
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"rules": config}))

        registry = RuleRegistry.from_file(path)
        assert registry.get("api").refill_rate_per_second == 10

    def test_from_file_missing(self, tmp_path) -> None:
        """Test missing rules file is a configuration error."""
        with pytest.raises(ConfigurationError, match="not found"):
            RuleRegistry.from_file(tmp_path / "missing.json")

    def test_from_file_invalid_json(self, tmp_path) -> None:
        """Test malformed JSON is a configuration error."""
        path = tmp_path / "rules.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError, match="not valid JSON"):
            RuleRegistry.from_file(path)

    def test_registry_is_read_only(self, config: dict) -> None:
        """Test the underlying table cannot be mutated."""
        registry = RuleRegistry.from_dict(config)
        with pytest.raises(TypeError):
            registry._rules["new"] = registry.get("api")  # type: ignore[index]

    def test_to_dict(self, config: dict) -> None:
        """Test serialization includes the effective fallback."""
        data = RuleRegistry.from_dict(config).to_dict()
        assert data["login"]["fallback_policy"] == "fail_closed"
        assert data["api"]["fallback_policy"] == "fail_open"
