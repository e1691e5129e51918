"""
Unit tests for gateway configuration loading.

Tests YAML parsing, strict key validation and defaults.
"""

import os
import shutil
import tempfile
from decimal import Decimal

import pytest
import yaml

from spend_gateway.config.loader import (
    DEFAULT_ROUTES,
    BudgetConfig,
    GatewayConfig,
    TaskRoute,
    default_gateway_config,
    load_gateway_config,
)
from spend_gateway.core.guardrails import PeriodKind


class TestDefaults:
    """Test built-in configuration."""

    def test_default_config(self):
        config = default_gateway_config()
        assert config.budget.project_limit == Decimal("10.00")
        assert config.budget.user_monthly_limit == Decimal("50.00")
        assert config.budget.max_cost_per_request == Decimal("2.00")
        assert set(config.routing) == {"research", "strategy", "critique", "stream"}
        assert config.circuit_breaker.failure_threshold == 5
        assert config.logging.level == "INFO"

    def test_policy_defaults(self):
        """Budget config maps to project lifetime and user monthly defaults."""
        defaults = BudgetConfig(project_limit=Decimal("3")).policy_defaults()
        assert defaults.project_limit == Decimal("3")
        assert defaults.project_period is PeriodKind.LIFETIME
        assert defaults.user_period is PeriodKind.MONTHLY

    def test_get_route_falls_back_to_stream(self):
        config = GatewayConfig()
        assert config.get_route("unknown") == DEFAULT_ROUTES["stream"]

    def test_get_provider_settings_default(self):
        assert GatewayConfig().get_provider_settings("grok").timeout == 60.0

    def test_invalid_budget_values(self):
        """Verify budget validation."""
        with pytest.raises(ValueError, match="project_limit"):
            BudgetConfig(project_limit=Decimal("-1"))
        with pytest.raises(ValueError, match="alert_threshold"):
            BudgetConfig(alert_threshold=1.5)

    def test_invalid_route_values(self):
        """Verify route validation."""
        with pytest.raises(ValueError, match="Unknown provider"):
            TaskRoute(provider="openai")
        with pytest.raises(ValueError, match="temperature"):
            TaskRoute(temperature=2.5)
        with pytest.raises(ValueError, match="max_tokens"):
            TaskRoute(max_tokens=0)


class TestLoadGatewayConfig:
    """Test loading YAML configuration files."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir)

    def write_config(self, content: str) -> str:
        path = os.path.join(self.temp_dir, "gateway.yaml")
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        return path

    def test_load_valid_config(self):
        """Verify a full configuration file loads."""
        path = self.write_config("""
budget:
  project_limit: 25.0
  user_monthly_limit: 100
  alert_threshold: 0.9
  max_cost_per_request: 1.5
routing:
  research:
    provider: claude
    model: claude-3-5-sonnet-20241022
providers:
  grok:
    timeout: 30
    api_key_env: MY_XAI_KEY
circuit_breaker:
  failure_threshold: 3
  success_threshold: 1
  reset_timeout: 10
logging:
  level: DEBUG
  json: true
""")
        config = load_gateway_config(path)

        assert config.budget.project_limit == Decimal("25.0")
        assert config.budget.user_monthly_limit == Decimal("100")
        assert config.budget.alert_threshold == 0.9
        assert config.budget.max_cost_per_request == Decimal("1.5")
        assert config.routing["research"].provider == "claude"
        assert config.routing["research"].max_tokens == 4000
        assert config.routing["strategy"] == DEFAULT_ROUTES["strategy"]
        assert config.get_provider_settings("grok").timeout == 30
        assert config.get_provider_settings("grok").api_key_env == "MY_XAI_KEY"
        assert config.circuit_breaker.failure_threshold == 3
        assert config.logging.json is True

    def test_partial_budget_keeps_defaults(self):
        path = self.write_config("budget:\n  project_limit: 5\n")
        config = load_gateway_config(path)
        assert config.budget.project_limit == Decimal("5")
        assert config.budget.user_monthly_limit == Decimal("50.00")

    def test_null_request_ceiling(self):
        """An explicit null disables the per-request ceiling."""
        path = self.write_config("budget:\n  max_cost_per_request: null\n")
        assert load_gateway_config(path).budget.max_cost_per_request is None

    def test_empty_file_returns_defaults(self):
        path = self.write_config("")
        assert load_gateway_config(path) == default_gateway_config()

    def test_missing_file(self):
        """Verify missing config raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_gateway_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml(self):
        """Verify malformed YAML raises YAMLError."""
        path = self.write_config("budget: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_gateway_config(path)

    def test_unknown_top_level_key(self):
        """Verify unknown keys are rejected, not silently ignored."""
        path = self.write_config("budgets:\n  project_limit: 5\n")
        with pytest.raises(ValueError, match="Unknown keys in config"):
            load_gateway_config(path)

    def test_unknown_budget_key(self):
        path = self.write_config("budget:\n  per_request: 5\n")
        with pytest.raises(ValueError, match="Unknown keys in budget"):
            load_gateway_config(path)

    def test_unknown_task_type(self):
        path = self.write_config("routing:\n  poetry:\n    provider: grok\n")
        with pytest.raises(ValueError, match="Unknown keys in routing"):
            load_gateway_config(path)

    def test_unknown_route_provider(self):
        """Routes may only name registered providers."""
        path = self.write_config("routing:\n  research:\n    provider: openai\n")
        with pytest.raises(ValueError, match="Invalid routing.research"):
            load_gateway_config(path)

    def test_non_numeric_limit(self):
        path = self.write_config("budget:\n  project_limit: lots\n")
        with pytest.raises(ValueError, match="must be a number"):
            load_gateway_config(path)

    def test_boolean_is_not_a_number(self):
        path = self.write_config("budget:\n  alert_threshold: true\n")
        with pytest.raises(ValueError, match="must be a number"):
            load_gateway_config(path)

    def test_non_integer_max_tokens(self):
        path = self.write_config("routing:\n  critique:\n    max_tokens: 10.5\n")
        with pytest.raises(ValueError, match="must be an integer"):
            load_gateway_config(path)

    def test_section_must_be_mapping(self):
        path = self.write_config("budget: 5\n")
        with pytest.raises(ValueError, match="'budget' must be a dictionary"):
            load_gateway_config(path)

    def test_invalid_log_level(self):
        path = self.write_config("logging:\n  level: LOUD\n")
        with pytest.raises(ValueError, match="Invalid log level"):
            load_gateway_config(path)

    def test_cache_section(self):
        path = self.write_config("cache:\n  enabled: true\n  max_size: 50\n  ttl: 120\n")
        cache = load_gateway_config(path).cache
        assert cache.enabled is True
        assert cache.max_size == 50
        assert cache.ttl == 120

    def test_cache_disabled_by_default(self):
        assert default_gateway_config().cache.enabled is False

    @pytest.mark.parametrize("content,match", [
        ("circuit_breaker:\n  failure_threshold: many\n", "failure_threshold' in circuit_breaker must be an integer"),
        ("circuit_breaker:\n  reset_timeout: soon\n", "reset_timeout' in circuit_breaker must be a number"),
        ("circuit_breaker:\n  success_threshold: 1.5\n", "must be an integer"),
        ("providers:\n  grok:\n    timeout: null\n", "timeout' in providers.grok must be a number"),
        ("providers:\n  grok:\n    api_key_env: 5\n", "api_key_env' in providers.grok must be a string"),
        ("providers:\n  grok:\n    timeout: 0\n", "Invalid providers.grok"),
        ("routing:\n  research:\n    temperature: null\n", "temperature' in routing.research must be a number"),
        ("budget:\n  alert_threshold: null\n", "alert_threshold' in budget must be a number"),
        ("cache:\n  enabled: yes please\n", "enabled' in cache must be true or false"),
        ("cache:\n  max_size: 0\n", "max_size must be > 0"),
        ("logging:\n  level: 10\n", "level' in logging must be a string"),
        ("logging:\n  json: sometimes\n", "json' in logging must be true or false"),
    ])
    def test_wrongly_typed_values_name_their_path(self, content, match):
        """Every wrongly typed value fails with the loader's ValueError, never TypeError."""
        path = self.write_config(content)
        with pytest.raises(ValueError, match=match):
            load_gateway_config(path)
