"""
Configuration management and loading.

Handles budget defaults, task routing, provider settings, the response
cache and logging.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional

import yaml

from ..core.guardrails import PeriodKind, PolicyDefaults
from ..providers import PROVIDER_REGISTRY
from ..storage.models import to_decimal

TASK_TYPES = ("research", "strategy", "critique", "stream")


@dataclass(frozen=True)
class BudgetConfig:
    """Default limits for scopes without an explicit policy."""
    project_limit: Decimal = Decimal("10.00")
    user_monthly_limit: Decimal = Decimal("50.00")
    alert_threshold: float = 0.8
    max_cost_per_request: Optional[Decimal] = Decimal("2.00")

    def __post_init__(self):
        """Validate budget values."""
        if self.project_limit < 0:
            raise ValueError("project_limit must be >= 0")
        if self.user_monthly_limit < 0:
            raise ValueError("user_monthly_limit must be >= 0")
        if not 0 <= self.alert_threshold <= 1:
            raise ValueError("alert_threshold must be between 0 and 1")
        if self.max_cost_per_request is not None and self.max_cost_per_request <= 0:
            raise ValueError("max_cost_per_request must be > 0")

    def policy_defaults(self) -> PolicyDefaults:
        return PolicyDefaults(
            project_limit=self.project_limit,
            project_period=PeriodKind.LIFETIME,
            user_limit=self.user_monthly_limit,
            user_period=PeriodKind.MONTHLY,
            alert_threshold=self.alert_threshold,
        )


@dataclass(frozen=True)
class TaskRoute:
    """Provider, model and generation knobs for one task type."""
    provider: str = "grok"
    model: str = "grok-4-fast-reasoning"
    temperature: float = 0.7
    max_tokens: int = 4000

    def __post_init__(self):
        """Validate route values."""
        if self.provider not in PROVIDER_REGISTRY:
            raise ValueError(f"Unknown provider '{self.provider}'")
        if not self.model:
            raise ValueError("model cannot be empty")
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")


@dataclass(frozen=True)
class ProviderSettings:
    timeout: float = 60.0
    api_key_env: Optional[str] = None

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    reset_timeout: float = 60.0

    def __post_init__(self):
        if self.failure_threshold <= 0 or self.success_threshold <= 0:
            raise ValueError("circuit breaker thresholds must be > 0")
        if self.reset_timeout <= 0:
            raise ValueError("reset_timeout must be > 0")


@dataclass(frozen=True)
class CacheConfig:
    """Opt-in response cache for non-streaming generations."""
    enabled: bool = False
    max_size: int = 1000
    ttl: float = 3600.0

    def __post_init__(self):
        if self.max_size <= 0:
            raise ValueError("max_size must be > 0")
        if self.ttl <= 0:
            raise ValueError("ttl must be > 0")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False

    def __post_init__(self):
        if self.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {self.level}")


DEFAULT_ROUTES: Dict[str, TaskRoute] = {
    "research": TaskRoute(temperature=0.7, max_tokens=4000),
    "strategy": TaskRoute(temperature=0.8, max_tokens=6000),
    "critique": TaskRoute(temperature=0.6, max_tokens=4000),
    "stream": TaskRoute(temperature=0.7, max_tokens=4000),
}


@dataclass(frozen=True)
class GatewayConfig:
    """Complete gateway configuration."""
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    routing: Dict[str, TaskRoute] = field(default_factory=lambda: dict(DEFAULT_ROUTES))
    providers: Dict[str, ProviderSettings] = field(default_factory=dict)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def get_route(self, task_type: str) -> TaskRoute:
        """Get the route for a task type, using the free-form route if unknown."""
        return self.routing.get(task_type, self.routing.get("stream", TaskRoute()))

    def get_provider_settings(self, provider: str) -> ProviderSettings:
        return self.providers.get(provider, ProviderSettings())


def default_gateway_config() -> GatewayConfig:
    return GatewayConfig()


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _require_dict(data, path: str) -> Dict:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return data


def _number(data: Dict, key: str, path: str, default, nullable: bool = False):
    if key not in data:
        return default
    value = data[key]
    if value is None and nullable:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return value


def _integer(data: Dict, key: str, path: str, default) -> int:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _boolean(data: Dict, key: str, path: str, default) -> bool:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be true or false")
    return value


def _string(data: Dict, key: str, path: str, default, nullable: bool = False):
    if key not in data:
        return default
    value = data[key]
    if value is None and nullable:
        return None
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    return value


def load_gateway_config(path: str) -> GatewayConfig:
    """Load and validate gateway configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GatewayConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Gateway config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_gateway_config()
    raw_config = _require_dict(raw_config, "config")

    _check_keys(
        raw_config,
        {'budget', 'routing', 'providers', 'circuit_breaker', 'cache', 'logging'},
        "config",
    )

    config = default_gateway_config()
    if 'budget' in raw_config:
        config = replace(config, budget=_parse_budget(raw_config['budget']))
    if 'routing' in raw_config:
        config = replace(config, routing=_parse_routing(raw_config['routing']))
    if 'providers' in raw_config:
        config = replace(config, providers=_parse_providers(raw_config['providers']))
    if 'circuit_breaker' in raw_config:
        config = replace(config, circuit_breaker=_parse_circuit_breaker(raw_config['circuit_breaker']))
    if 'cache' in raw_config:
        config = replace(config, cache=_parse_cache(raw_config['cache']))
    if 'logging' in raw_config:
        config = replace(config, logging=_parse_logging(raw_config['logging']))
    return config


def _parse_budget(data) -> BudgetConfig:
    """Parse and validate the budget section."""
    data = _require_dict(data, "budget")
    _check_keys(
        data,
        {'project_limit', 'user_monthly_limit', 'alert_threshold', 'max_cost_per_request'},
        "budget",
    )
    defaults = BudgetConfig()
    max_cost = _number(
        data, 'max_cost_per_request', "budget", defaults.max_cost_per_request, nullable=True
    )
    return BudgetConfig(
        project_limit=to_decimal(_number(data, 'project_limit', "budget", defaults.project_limit)),
        user_monthly_limit=to_decimal(
            _number(data, 'user_monthly_limit', "budget", defaults.user_monthly_limit)
        ),
        alert_threshold=float(_number(data, 'alert_threshold', "budget", defaults.alert_threshold)),
        max_cost_per_request=None if max_cost is None else to_decimal(max_cost),
    )


def _parse_routing(data) -> Dict[str, TaskRoute]:
    """Parse task routes; unspecified fields keep the built-in route's value."""
    data = _require_dict(data, "routing")
    _check_keys(data, set(TASK_TYPES), "routing")

    routes = dict(DEFAULT_ROUTES)
    for task_type, route_data in data.items():
        route_path = f"routing.{task_type}"
        route_data = _require_dict(route_data, route_path)
        _check_keys(route_data, {'provider', 'model', 'temperature', 'max_tokens'}, route_path)
        if 'max_tokens' in route_data and not isinstance(route_data['max_tokens'], int):
            raise ValueError(f"'max_tokens' in {route_path} must be an integer")
        if 'temperature' in route_data:
            _number(route_data, 'temperature', route_path, None)
        try:
            routes[task_type] = replace(routes[task_type], **route_data)
        except ValueError as e:
            raise ValueError(f"Invalid {route_path}: {e}")
    return routes


def _parse_providers(data) -> Dict[str, ProviderSettings]:
    """Parse per-provider client settings."""
    data = _require_dict(data, "providers")
    _check_keys(data, set(PROVIDER_REGISTRY), "providers")

    providers = {}
    for name, provider_data in data.items():
        provider_path = f"providers.{name}"
        provider_data = _require_dict(provider_data, provider_path)
        _check_keys(provider_data, {'timeout', 'api_key_env'}, provider_path)
        defaults = ProviderSettings()
        try:
            providers[name] = ProviderSettings(
                timeout=_number(provider_data, 'timeout', provider_path, defaults.timeout),
                api_key_env=_string(
                    provider_data, 'api_key_env', provider_path, defaults.api_key_env, nullable=True
                ),
            )
        except ValueError as e:
            raise ValueError(f"Invalid {provider_path}: {e}")
    return providers


def _parse_circuit_breaker(data) -> CircuitBreakerConfig:
    data = _require_dict(data, "circuit_breaker")
    _check_keys(data, {'failure_threshold', 'success_threshold', 'reset_timeout'}, "circuit_breaker")
    defaults = CircuitBreakerConfig()
    return CircuitBreakerConfig(
        failure_threshold=_integer(data, 'failure_threshold', "circuit_breaker", defaults.failure_threshold),
        success_threshold=_integer(data, 'success_threshold', "circuit_breaker", defaults.success_threshold),
        reset_timeout=_number(data, 'reset_timeout', "circuit_breaker", defaults.reset_timeout),
    )


def _parse_cache(data) -> CacheConfig:
    data = _require_dict(data, "cache")
    _check_keys(data, {'enabled', 'max_size', 'ttl'}, "cache")
    defaults = CacheConfig()
    return CacheConfig(
        enabled=_boolean(data, 'enabled', "cache", defaults.enabled),
        max_size=_integer(data, 'max_size', "cache", defaults.max_size),
        ttl=_number(data, 'ttl', "cache", defaults.ttl),
    )


def _parse_logging(data) -> LoggingConfig:
    data = _require_dict(data, "logging")
    _check_keys(data, {'level', 'json'}, "logging")
    defaults = LoggingConfig()
    return LoggingConfig(
        level=_string(data, 'level', "logging", defaults.level),
        json=_boolean(data, 'json', "logging", defaults.json),
    )
