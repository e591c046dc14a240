"""
Configuration management and loading.

All settings are supplied at orchestrator construction. The YAML loader
validates strictly: unknown keys and wrongly-typed values are errors, never
silently ignored.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional, Tuple

import yaml

from ai_orchestrator.core.dispatch import OverflowPolicy
from ai_orchestrator.core.request import TaskType

DEFAULT_TTL_SECONDS = 3600.0


class ProviderKind(Enum):
    """Adapter implementation used for a provider."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    LOCAL = "local"


@dataclass(frozen=True)
class BudgetConfig:
    """Spend limits for one billing period."""
    cap: float
    soft_limit_ratio: float = 0.8
    max_cost_per_request: Optional[float] = None
    completion_tokens_estimate: int = 256
    period: Optional[str] = None

    def __post_init__(self):
        """Validate budget values."""
        if self.cap <= 0:
            raise ValueError("cap must be > 0")
        if not 0 < self.soft_limit_ratio <= 1:
            raise ValueError("soft_limit_ratio must be in (0, 1]")
        if self.max_cost_per_request is not None and self.max_cost_per_request <= 0:
            raise ValueError("max_cost_per_request must be > 0")
        if self.completion_tokens_estimate < 0:
            raise ValueError("completion_tokens_estimate cannot be negative")


@dataclass(frozen=True)
class QueueConfig:
    """Dispatch queue sizing."""
    capacity: int = 64
    workers: int = 4
    overflow: OverflowPolicy = OverflowPolicy.REJECT
    enqueue_timeout: float = 1.0

    def __post_init__(self):
        """Validate queue values."""
        if self.capacity <= 0:
            raise ValueError("queue capacity must be > 0")
        if self.workers <= 0:
            raise ValueError("workers must be > 0")
        if self.enqueue_timeout < 0:
            raise ValueError("enqueue_timeout cannot be negative")


@dataclass(frozen=True)
class CacheConfig:
    """Response cache sizing and TTLs."""
    capacity: int = 1024
    default_ttl_seconds: float = DEFAULT_TTL_SECONDS
    provider_ttls: Dict[str, float] = field(default_factory=dict)
    task_ttls: Dict[TaskType, float] = field(default_factory=dict)

    def __post_init__(self):
        """Validate cache values."""
        if self.capacity <= 0:
            raise ValueError("cache capacity must be > 0")
        if self.default_ttl_seconds < 0:
            raise ValueError("default_ttl_seconds cannot be negative")


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy per provider before re-routing."""
    attempts: int = 1
    backoff_seconds: float = 0.5

    def __post_init__(self):
        """Validate retry values."""
        if self.attempts < 0:
            raise ValueError("retry attempts cannot be negative")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds cannot be negative")


@dataclass(frozen=True)
class ProviderSettings:
    """Configuration for one provider."""
    id: str
    kind: ProviderKind
    capabilities: FrozenSet[TaskType]
    available: bool = True
    price_per_1k_tokens: float = 0.0
    model: Optional[str] = None
    base_url: Optional[str] = None
    api_key_env: Optional[str] = None
    timeout_seconds: float = 30.0
    max_tokens: int = 1024
    requests_per_minute: Optional[int] = None

    def __post_init__(self):
        """Validate provider values."""
        if not self.id or not self.id.strip():
            raise ValueError("provider id is required and cannot be empty")
        if not self.capabilities:
            raise ValueError(f"provider '{self.id}' must declare at least one capability")
        if self.price_per_1k_tokens < 0:
            raise ValueError(f"price_per_1k_tokens for '{self.id}' cannot be negative")
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds for '{self.id}' must be > 0")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens for '{self.id}' must be > 0")
        if self.requests_per_minute is not None and self.requests_per_minute <= 0:
            raise ValueError(f"requests_per_minute for '{self.id}' must be > 0")
        if self.kind == ProviderKind.LOCAL and self.requests_per_minute is not None:
            raise ValueError(f"requests_per_minute is not supported for local provider '{self.id}'")
        if self.kind != ProviderKind.LOCAL and not self.model:
            raise ValueError(f"provider '{self.id}' requires a model")

    @property
    def offline(self) -> bool:
        return self.kind == ProviderKind.LOCAL

    def api_key(self) -> Optional[str]:
        """Read the API key from the configured environment variable."""
        if not self.api_key_env:
            return None
        return os.getenv(self.api_key_env) or None

    def is_usable(self) -> bool:
        """Remote providers need an API key to be usable."""
        if not self.available:
            return False
        if self.offline or not self.api_key_env:
            return True
        return self.api_key() is not None


@dataclass(frozen=True)
class OrchestratorConfig:
    """Complete orchestrator configuration."""
    budget: BudgetConfig
    providers: Tuple[ProviderSettings, ...]
    queue: QueueConfig = field(default_factory=QueueConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    routing: Dict[TaskType, str] = field(default_factory=dict)
    fingerprint_includes_override: bool = False

    def __post_init__(self):
        """Validate cross-section references."""
        if not self.providers:
            raise ValueError("at least one provider must be configured")
        ids = [p.id for p in self.providers]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise ValueError(f"Duplicate provider ids: {sorted(duplicates)}")
        for task, provider_id in self.routing.items():
            if provider_id not in ids:
                raise ValueError(f"routing for '{task.value}' references unknown provider '{provider_id}'")
        for provider_id in self.cache.provider_ttls:
            if provider_id not in ids:
                raise ValueError(f"cache ttl references unknown provider '{provider_id}'")

    def get_provider(self, provider_id: str) -> Optional[ProviderSettings]:
        for settings in self.providers:
            if settings.id == provider_id:
                return settings
        return None


def default_config() -> OrchestratorConfig:
    """Offline-only configuration: a single local fallback provider."""
    return OrchestratorConfig(
        budget=BudgetConfig(cap=50.0),
        providers=(
            ProviderSettings(
                id="local",
                kind=ProviderKind.LOCAL,
                capabilities=frozenset(TaskType),
            ),
        ),
    )


def load_config(path: str) -> OrchestratorConfig:
    """Load and validate orchestrator configuration from a YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated OrchestratorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Orchestrator config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    return parse_config(raw_config)


def parse_config(raw_config: Dict[str, Any]) -> OrchestratorConfig:
    """Validate an already-parsed configuration mapping.

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_top_keys = {'budget', 'queue', 'cache', 'retry', 'routing', 'providers', 'fingerprint'}
    _reject_unknown(raw_config, allowed_top_keys, "configuration")

    if 'budget' not in raw_config:
        raise ValueError("Missing required 'budget' section")
    if 'providers' not in raw_config:
        raise ValueError("Missing required 'providers' section")

    budget = _parse_budget(_section(raw_config, 'budget'))
    queue = _parse_queue(_section(raw_config, 'queue'))
    cache = _parse_cache(_section(raw_config, 'cache'))
    retry = _parse_retry(_section(raw_config, 'retry'))

    providers_data = _section(raw_config, 'providers')
    providers = tuple(
        _parse_provider(provider_id, data)
        for provider_id, data in providers_data.items()
    )

    routing = {}
    for task_name, provider_id in _section(raw_config, 'routing').items():
        if not isinstance(provider_id, str):
            raise ValueError(f"routing.{task_name} must be a provider id string")
        routing[_task_type(task_name, f"routing.{task_name}")] = provider_id

    fingerprint = _section(raw_config, 'fingerprint')
    _reject_unknown(fingerprint, {'include_override'}, "fingerprint")
    include_override = _bool(fingerprint, 'include_override', "fingerprint", False)

    return OrchestratorConfig(
        budget=budget,
        providers=providers,
        queue=queue,
        cache=cache,
        retry=retry,
        routing=routing,
        fingerprint_includes_override=include_override,
    )


def _parse_budget(data: Dict) -> BudgetConfig:
    _reject_unknown(data, {'cap', 'soft_limit_ratio', 'max_cost_per_request',
                           'completion_tokens_estimate', 'period'}, "budget")
    if 'cap' not in data:
        raise ValueError("Missing required 'cap' in budget")

    period = data.get('period')
    if period is not None and not isinstance(period, str):
        raise ValueError("'period' in budget must be a string")

    return BudgetConfig(
        cap=_number(data, 'cap', "budget"),
        soft_limit_ratio=_number(data, 'soft_limit_ratio', "budget", 0.8),
        max_cost_per_request=_number(data, 'max_cost_per_request', "budget", None),
        completion_tokens_estimate=_integer(data, 'completion_tokens_estimate', "budget", 256),
        period=period,
    )


def _parse_queue(data: Dict) -> QueueConfig:
    _reject_unknown(data, {'capacity', 'workers', 'overflow', 'enqueue_timeout'}, "queue")

    overflow = OverflowPolicy.REJECT
    if 'overflow' in data:
        value = data['overflow']
        if not isinstance(value, str):
            raise ValueError("'overflow' in queue must be a string")
        try:
            overflow = OverflowPolicy(value.lower())
        except ValueError:
            valid = [p.value for p in OverflowPolicy]
            raise ValueError(f"'overflow' in queue must be one of: {valid}")

    return QueueConfig(
        capacity=_integer(data, 'capacity', "queue", 64),
        workers=_integer(data, 'workers', "queue", 4),
        overflow=overflow,
        enqueue_timeout=_number(data, 'enqueue_timeout', "queue", 1.0),
    )


def _parse_cache(data: Dict) -> CacheConfig:
    _reject_unknown(data, {'capacity', 'default_ttl_seconds', 'ttl'}, "cache")

    ttl = data.get('ttl') or {}
    if not isinstance(ttl, dict):
        raise ValueError("'ttl' in cache must be a dictionary")
    _reject_unknown(ttl, {'providers', 'tasks'}, "cache.ttl")

    provider_ttls = {}
    providers = ttl.get('providers') or {}
    if not isinstance(providers, dict):
        raise ValueError("'cache.ttl.providers' must be a dictionary")
    for provider_id in providers:
        provider_ttls[str(provider_id)] = _number(providers, provider_id, "cache.ttl.providers")

    task_ttls = {}
    tasks = ttl.get('tasks') or {}
    if not isinstance(tasks, dict):
        raise ValueError("'cache.ttl.tasks' must be a dictionary")
    for task_name in tasks:
        task = _task_type(task_name, f"cache.ttl.tasks.{task_name}")
        task_ttls[task] = _number(tasks, task_name, "cache.ttl.tasks")

    for scope, values in (("providers", provider_ttls), ("tasks", task_ttls)):
        if any(v < 0 for v in values.values()):
            raise ValueError(f"cache.ttl.{scope} values cannot be negative")

    return CacheConfig(
        capacity=_integer(data, 'capacity', "cache", 1024),
        default_ttl_seconds=_number(data, 'default_ttl_seconds', "cache", DEFAULT_TTL_SECONDS),
        provider_ttls=provider_ttls,
        task_ttls=task_ttls,
    )


def _parse_retry(data: Dict) -> RetryConfig:
    _reject_unknown(data, {'attempts', 'backoff_seconds'}, "retry")
    return RetryConfig(
        attempts=_integer(data, 'attempts', "retry", 1),
        backoff_seconds=_number(data, 'backoff_seconds', "retry", 0.5),
    )


def _parse_provider(provider_id: Any, data: Any) -> ProviderSettings:
    path = f"providers.{provider_id}"
    if not isinstance(provider_id, str):
        raise ValueError(f"Provider id {provider_id!r} must be a string")
    if not isinstance(data, dict):
        raise ValueError(f"Provider '{provider_id}' must be a dictionary")

    allowed_keys = {'kind', 'capabilities', 'available', 'price_per_1k_tokens', 'model',
                    'base_url', 'api_key_env', 'timeout_seconds', 'max_tokens',
                    'requests_per_minute'}
    _reject_unknown(data, allowed_keys, path)

    if 'kind' not in data:
        raise ValueError(f"Missing required 'kind' in {path}")
    kind_str = data['kind']
    if not isinstance(kind_str, str):
        raise ValueError(f"'kind' in {path} must be a string")
    try:
        kind = ProviderKind(kind_str.lower())
    except ValueError:
        valid = [k.value for k in ProviderKind]
        raise ValueError(f"'kind' in {path} must be one of: {valid}")

    raw_capabilities = data.get('capabilities', 'all')
    if raw_capabilities == 'all':
        capabilities = frozenset(TaskType)
    elif isinstance(raw_capabilities, list):
        capabilities = frozenset(
            _task_type(name, f"{path}.capabilities") for name in raw_capabilities
        )
    else:
        raise ValueError(f"'capabilities' in {path} must be a list of task types or 'all'")

    for key in ('model', 'base_url', 'api_key_env'):
        if key in data and not isinstance(data[key], str):
            raise ValueError(f"'{key}' in {path} must be a string")

    return ProviderSettings(
        id=provider_id,
        kind=kind,
        capabilities=capabilities,
        available=_bool(data, 'available', path, True),
        price_per_1k_tokens=_number(data, 'price_per_1k_tokens', path, 0.0),
        model=data.get('model'),
        base_url=data.get('base_url'),
        api_key_env=data.get('api_key_env'),
        timeout_seconds=_number(data, 'timeout_seconds', path, 30.0),
        max_tokens=_integer(data, 'max_tokens', path, 1024),
        requests_per_minute=_integer(data, 'requests_per_minute', path, None),
    )


_MISSING = object()


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(data: Dict, key: str, path: str, default: Any = _MISSING) -> Any:
    if key not in data or data[key] is None:
        if default is _MISSING:
            raise ValueError(f"Missing required '{key}' in {path}")
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _integer(data: Dict, key: str, path: str, default: Any = _MISSING) -> Any:
    if key not in data or data[key] is None:
        if default is _MISSING:
            raise ValueError(f"Missing required '{key}' in {path}")
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _bool(data: Dict, key: str, path: str, default: bool) -> bool:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be true or false")
    return value


def _task_type(name: Any, path: str) -> TaskType:
    if isinstance(name, str):
        try:
            return TaskType(name.lower())
        except ValueError:
            pass
    valid = [t.value for t in TaskType]
    raise ValueError(f"Unknown task type {name!r} in {path}. Must be one of: {valid}")
