"""Configuration of the blueprint: defaults, files, environment and validation."""

from __future__ import annotations

import json
import logging
import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .models import DEFAULT_LOAD_BALANCING_STRATEGY, LoadBalancingStrategy, ModelInfo

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:8000"
DEFAULT_TIMEOUT = 60
DEFAULT_MAX_CONCURRENT = 5
DEFAULT_MAX_RETRIES = 3
DEFAULT_SELECTION_TIMEOUT = 1000
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_RATE_LIMIT = 60
DEFAULT_METRICS_INTERVAL = 60

_U16, _U32, _U64 = 16, 32, 64

# Optional text fields of the API section.
_OPTIONAL_API_FIELDS = ("api_key", "auth_token")


class ConfigError(Exception):
    """Base class of configuration errors."""

    template = "{0}"

    def __init__(self, detail: str) -> None:
        super().__init__(self.template.format(detail))
        self.detail = detail


class ConfigFileReadError(ConfigError):
    template = "Failed to read configuration file: {0}"


class ConfigParseError(ConfigError):
    template = "Failed to parse configuration: {0}"


class MissingValueError(ConfigError):
    template = "Missing required configuration value: {0}"


class InvalidValueError(ConfigError):
    template = "Invalid configuration value: {0}"


def _default_models() -> list[ModelInfo]:
    return [
        ModelInfo("gpt-3.5-turbo", "GPT-3.5 Turbo", 4096, True, True, False),
        ModelInfo("text-davinci-003", "Text Davinci 003", 4096, False, True, False),
        ModelInfo("text-embedding-ada-002", "Text Embedding Ada 002", 8191, False, False, True),
    ]


@dataclass
class LlmConfig:
    """Settings of the LLM client."""

    api_url: str = DEFAULT_API_URL
    timeout_seconds: int = DEFAULT_TIMEOUT
    max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT
    models: list[ModelInfo] = field(default_factory=_default_models)
    additional_params: dict[str, str] = field(default_factory=dict)


@dataclass
class LoadBalancerConfig:
    """Settings of the load balancer."""

    strategy: LoadBalancingStrategy = DEFAULT_LOAD_BALANCING_STRATEGY
    max_retries: int = DEFAULT_MAX_RETRIES
    selection_timeout_ms: int = DEFAULT_SELECTION_TIMEOUT


@dataclass
class ApiConfig:
    """Settings of the API server."""

    enabled: bool = True
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    auth_enabled: bool = False
    api_key: str | None = None
    rate_limiting_enabled: bool = True
    max_requests_per_minute: int = DEFAULT_RATE_LIMIT
    metrics_interval_seconds: int = DEFAULT_METRICS_INTERVAL
    auth_token: str | None = None


# Helpers for decoding mappings loaded from configuration files.

def _uint(data: Mapping[str, Any], key: str, default: int, bits: int) -> int:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value < (1 << bits):
        raise ConfigParseError(f"invalid value for {key!r}: {value!r}")
    return value


def _str(data: Mapping[str, Any], key: str, default: str) -> str:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, str):
        raise ConfigParseError(f"invalid value for {key!r}: {value!r}")
    return value


def _opt_str(data: Mapping[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ConfigParseError(f"invalid value for {key!r}: {value!r}")
    return value


def _bool(data: Mapping[str, Any], key: str, default: bool) -> bool:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, bool):
        raise ConfigParseError(f"invalid value for {key!r}: {value!r}")
    return value


def _str_map(data: Mapping[str, Any], key: str) -> dict[str, str]:
    value = data.get(key, {})
    if not isinstance(value, Mapping) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise ConfigParseError(f"invalid value for {key!r}: {value!r}")
    return dict(value)


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any] | None:
    if key not in data:
        return None
    value = data[key]
    if not isinstance(value, Mapping):
        raise ConfigParseError(f"invalid value for {key!r}: {value!r}")
    return value


def _llm_from_dict(data: Mapping[str, Any]) -> LlmConfig:
    models_data = data.get("models", [])
    if not isinstance(models_data, list):
        raise ConfigParseError(f"invalid value for 'models': {models_data!r}")
    try:
        models = [ModelInfo.from_dict(entry) for entry in models_data]
    except ValueError as exc:
        raise ConfigParseError(str(exc)) from exc
    return LlmConfig(
        api_url=_str(data, "api_url", DEFAULT_API_URL),
        timeout_seconds=_uint(data, "timeout_seconds", DEFAULT_TIMEOUT, _U64),
        max_concurrent_requests=_uint(data, "max_concurrent_requests", DEFAULT_MAX_CONCURRENT, _U64),
        models=models,
        additional_params=_str_map(data, "additional_params"),
    )


def _load_balancer_from_dict(data: Mapping[str, Any]) -> LoadBalancerConfig:
    strategy = DEFAULT_LOAD_BALANCING_STRATEGY
    if "strategy" in data:
        try:
            strategy = LoadBalancingStrategy(data["strategy"])
        except ValueError as exc:
            raise ConfigParseError(f"unknown load balancing strategy: {data['strategy']!r}") from exc
    return LoadBalancerConfig(
        strategy=strategy,
        max_retries=_uint(data, "max_retries", DEFAULT_MAX_RETRIES, _U64),
        selection_timeout_ms=_uint(data, "selection_timeout_ms", DEFAULT_SELECTION_TIMEOUT, _U64),
    )


def _api_from_dict(data: Mapping[str, Any]) -> ApiConfig:
    optional = {name: _opt_str(data, name) for name in _OPTIONAL_API_FIELDS}
    return ApiConfig(
        enabled=_bool(data, "enabled", True),
        host=_str(data, "host", DEFAULT_HOST),
        port=_uint(data, "port", DEFAULT_PORT, _U16),
        auth_enabled=_bool(data, "auth_enabled", False),
        rate_limiting_enabled=_bool(data, "rate_limiting_enabled", True),
        max_requests_per_minute=_uint(data, "max_requests_per_minute", DEFAULT_RATE_LIMIT, _U32),
        metrics_interval_seconds=_uint(
            data, "metrics_interval_seconds", DEFAULT_METRICS_INTERVAL, _U64
        ),
        **optional,
    )


# Helpers for reading values from the environment.

_UINT_TEXT = re.compile(r"\+?[0-9]+")


def _parse_uint(text: str, bits: int) -> int | None:
    if not _UINT_TEXT.fullmatch(text):
        return None
    value = int(text)
    return value if value < (1 << bits) else None


def _parse_bool(text: str) -> bool | None:
    return {"true": True, "false": False}.get(text)


_ENV_STRATEGIES = {strategy.value: strategy for strategy in LoadBalancingStrategy}


@dataclass
class BlueprintConfig:
    """Complete configuration of the blueprint."""

    llm: LlmConfig = field(default_factory=LlmConfig)
    load_balancer: LoadBalancerConfig = field(default_factory=LoadBalancerConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    additional_params: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BlueprintConfig:
        """Build a configuration from decoded data, filling in defaults."""
        if not isinstance(data, Mapping):
            raise ConfigParseError(f"expected a mapping at the top level, got {data!r}")
        llm = _section(data, "llm")
        load_balancer = _section(data, "load_balancer")
        api = _section(data, "api")
        return cls(
            llm=LlmConfig() if llm is None else _llm_from_dict(llm),
            load_balancer=(
                LoadBalancerConfig() if load_balancer is None else _load_balancer_from_dict(load_balancer)
            ),
            api=ApiConfig() if api is None else _api_from_dict(api),
            additional_params=_str_map(data, "additional_params"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the configuration as plain data."""
        return {
            "llm": {
                "api_url": self.llm.api_url,
                "timeout_seconds": self.llm.timeout_seconds,
                "max_concurrent_requests": self.llm.max_concurrent_requests,
                "models": [model.to_dict() for model in self.llm.models],
                "additional_params": dict(self.llm.additional_params),
            },
            "load_balancer": {
                "strategy": self.load_balancer.strategy.value,
                "max_retries": self.load_balancer.max_retries,
                "selection_timeout_ms": self.load_balancer.selection_timeout_ms,
            },
            "api": {
                "enabled": self.api.enabled,
                "host": self.api.host,
                "port": self.api.port,
                "auth_enabled": self.api.auth_enabled,
                "api_key": self.api.api_key,
                "rate_limiting_enabled": self.api.rate_limiting_enabled,
                "max_requests_per_minute": self.api.max_requests_per_minute,
                "metrics_interval_seconds": self.api.metrics_interval_seconds,
                "auth_token": self.api.auth_token,
            },
            "additional_params": dict(self.additional_params),
        }

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> BlueprintConfig:
        """Load a JSON, TOML or YAML file, chosen by its extension."""
        path = Path(path)
        try:
            contents = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigFileReadError(str(exc)) from exc

        extension = path.suffix[1:] if path.suffix else None
        try:
            match extension:
                case "json":
                    data = json.loads(contents)
                case "toml":
                    data = tomllib.loads(contents)
                case "yaml" | "yml":
                    data = yaml.safe_load(contents)
                case _:
                    raise ConfigParseError(f"Unsupported file extension: {extension!r}")
        except (json.JSONDecodeError, tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
            raise ConfigParseError(str(exc)) from exc
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BlueprintConfig:
        """Build a configuration from defaults overridden by OPENROUTER_* variables."""
        env = os.environ if environ is None else environ
        config = cls()
        llm, balancer, api = config.llm, config.load_balancer, config.api

        if (value := env.get("OPENROUTER_LLM_API_URL")) is not None:
            llm.api_url = value
        if (value := env.get("OPENROUTER_LLM_TIMEOUT")) is not None:
            if (parsed := _parse_uint(value, _U64)) is not None:
                llm.timeout_seconds = parsed
        if (value := env.get("OPENROUTER_LLM_MAX_CONCURRENT")) is not None:
            if (parsed := _parse_uint(value, _U64)) is not None:
                llm.max_concurrent_requests = parsed

        if (value := env.get("OPENROUTER_LOAD_BALANCER_STRATEGY")) is not None:
            balancer.strategy = _ENV_STRATEGIES.get(value.lower(), balancer.strategy)
        if (value := env.get("OPENROUTER_LOAD_BALANCER_MAX_RETRIES")) is not None:
            if (parsed := _parse_uint(value, _U64)) is not None:
                balancer.max_retries = parsed
        if (value := env.get("OPENROUTER_LOAD_BALANCER_TIMEOUT")) is not None:
            if (parsed := _parse_uint(value, _U64)) is not None:
                balancer.selection_timeout_ms = parsed

        if (value := env.get("OPENROUTER_API_ENABLED")) is not None:
            if (flag := _parse_bool(value)) is not None:
                api.enabled = flag
        if (value := env.get("OPENROUTER_API_HOST")) is not None:
            api.host = value
        if (value := env.get("OPENROUTER_API_PORT")) is not None:
            if (parsed := _parse_uint(value, _U16)) is not None:
                api.port = parsed
            else:
                logger.warning("Invalid API port in environment variable: %s", value)
        if (value := env.get("OPENROUTER_API_AUTH_ENABLED")) is not None:
            if (flag := _parse_bool(value)) is not None:
                api.auth_enabled = flag
            else:
                logger.warning("Invalid API auth enabled flag in environment variable: %s", value)
        if (value := env.get("OPENROUTER_API_KEY")) is not None:
            api.api_key = value
        if (value := env.get("OPENROUTER_API_AUTH_TOKEN")) is not None:
            api.auth_token = value
        if (value := env.get("OPENROUTER_API_RATE_LIMITING_ENABLED")) is not None:
            if (flag := _parse_bool(value)) is not None:
                api.rate_limiting_enabled = flag
            else:
                logger.warning(
                    "Invalid API rate limiting enabled flag in environment variable: %s", value
                )
        if (value := env.get("OPENROUTER_API_MAX_REQUESTS")) is not None:
            if (parsed := _parse_uint(value, _U32)) is not None:
                api.max_requests_per_minute = parsed
            else:
                logger.warning("Invalid API max requests in environment variable: %s", value)
        if (value := env.get("OPENROUTER_API_METRICS_INTERVAL")) is not None:
            if (parsed := _parse_uint(value, _U64)) is not None:
                api.metrics_interval_seconds = parsed
            else:
                logger.warning("Invalid API metrics interval in environment variable: %s", value)

        return config

    @classmethod
    def load(
        cls, path: str | os.PathLike[str], environ: Mapping[str, str] | None = None
    ) -> BlueprintConfig:
        """Load a file, then apply environment values that differ from the defaults."""
        config = cls.from_file(path)
        env_config = cls.from_env(environ)
        env_llm, env_lb, env_api = env_config.llm, env_config.load_balancer, env_config.api

        if env_llm.api_url != DEFAULT_API_URL:
            config.llm.api_url = env_llm.api_url
        if env_llm.timeout_seconds != DEFAULT_TIMEOUT:
            config.llm.timeout_seconds = env_llm.timeout_seconds
        if env_llm.max_concurrent_requests != DEFAULT_MAX_CONCURRENT:
            config.llm.max_concurrent_requests = env_llm.max_concurrent_requests

        if env_lb.strategy != DEFAULT_LOAD_BALANCING_STRATEGY:
            config.load_balancer.strategy = env_lb.strategy
        if env_lb.max_retries != DEFAULT_MAX_RETRIES:
            config.load_balancer.max_retries = env_lb.max_retries
        if env_lb.selection_timeout_ms != DEFAULT_SELECTION_TIMEOUT:
            config.load_balancer.selection_timeout_ms = env_lb.selection_timeout_ms

        if env_api.enabled is not True:
            config.api.enabled = env_api.enabled
        if env_api.host != DEFAULT_HOST:
            config.api.host = env_api.host
        if env_api.port != DEFAULT_PORT:
            config.api.port = env_api.port
        if env_api.auth_enabled is not False:
            config.api.auth_enabled = env_api.auth_enabled
        if env_api.api_key is not None:
            config.api.api_key = env_api.api_key
        if env_api.rate_limiting_enabled is not True:
            config.api.rate_limiting_enabled = env_api.rate_limiting_enabled
        if env_api.max_requests_per_minute != DEFAULT_RATE_LIMIT:
            config.api.max_requests_per_minute = env_api.max_requests_per_minute
        if env_api.metrics_interval_seconds != DEFAULT_METRICS_INTERVAL:
            config.api.metrics_interval_seconds = env_api.metrics_interval_seconds

        return config

    def validate(self) -> None:
        """Raise a ConfigError if a value is missing or out of range."""
        if not self.llm.api_url:
            raise MissingValueError("LLM API URL")
        if self.llm.timeout_seconds == 0:
            raise InvalidValueError("LLM timeout must be greater than 0")
        if self.llm.max_concurrent_requests == 0:
            raise InvalidValueError("LLM max concurrent requests must be greater than 0")

        if self.load_balancer.max_retries == 0:
            raise InvalidValueError("Load balancer max retries must be greater than 0")
        if self.load_balancer.selection_timeout_ms == 0:
            raise InvalidValueError("Load balancer selection timeout must be greater than 0")

        api = self.api
        if not api.enabled:
            return
        if not api.host:
            raise MissingValueError("API host")
        if api.port == 0:
            raise InvalidValueError("API port must be greater than 0")
        if api.auth_enabled and api.api_key is None:
            raise MissingValueError("API key is required when authentication is enabled")
        if api.rate_limiting_enabled and api.max_requests_per_minute == 0:
            raise InvalidValueError("API max requests per minute must be greater than 0")
        if api.metrics_interval_seconds == 0:
            raise InvalidValueError("API metrics interval must be greater than 0")