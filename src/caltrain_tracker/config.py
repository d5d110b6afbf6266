"""Configuration loading and settings for the Caltrain tracker."""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from caltrain_tracker.errors import ConfigurationError
from caltrain_tracker.models import (
    AuthConfig,
    DefaultsConfig,
    EndpointConfig,
    EndpointFileConfig,
    TrackerFileConfig,
)

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Used when no configuration file is present
DEFAULT_CONFIG: dict[str, Any] = {
    "defaults": {
        "timeout_seconds": 25.0,
        "retry": {"max_attempts": 3, "backoff_base": 1.0, "backoff_max": 4.0},
        "rate_limit": {"max_requests": 1, "window_seconds": 5.0},
        "cache_ttl_seconds": 30.0,
    },
    "endpoints": [
        {
            "key": "stop_monitoring",
            "url": "https://api.511.org/transit/StopMonitoring",
            "params": {
                "agency": "CT",
                "format": "json",
                "MaximumStopVisits": "6",
                "MaximumNumberOfCallsOnwards": "20",
            },
            "auth": {"type": "query", "key": "api_key", "value": "${API_511_KEY}"},
        },
        {
            "key": "service_alerts",
            "url": "https://api.511.org/transit/servicealerts",
            "params": {"agency": "CT", "format": "json"},
            "auth": {"type": "query", "key": "api_key", "value": "${API_511_KEY}"},
            "cache_ttl_seconds": 300.0,
        },
        {
            "key": "gtfs_schedule",
            "url": "https://data.trilliumtransit.com/gtfs/caltrain-ca-us/caltrain-ca-us.zip",
            "timeout_seconds": 60.0,
            "cache_ttl_seconds": 0,
        },
    ],
}


def substitute_env_vars(value: str) -> str:
    """Replace ``${NAME}`` references with environment variable values.

    Args:
        value: String possibly containing ``${NAME}`` references.

    Returns:
        The string with every reference substituted.

    Raises:
        ConfigurationError: If a referenced variable is not set.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        resolved = os.environ.get(name)
        if resolved is None:
            raise ConfigurationError(f"Environment variable '{name}' is not set")
        return resolved

    return _ENV_VAR_PATTERN.sub(_replace, value)


def substitute_env_vars_in_dict(data: Any) -> Any:
    """Recursively substitute environment variables in every string value."""
    if isinstance(data, dict):
        return {key: substitute_env_vars_in_dict(value) for key, value in data.items()}
    if isinstance(data, list):
        return [substitute_env_vars_in_dict(item) for item in data]
    if isinstance(data, str):
        return substitute_env_vars(data)
    return data


def resolve_auth(auth: AuthConfig) -> str:
    """Resolve (and memoize) the secret value of an auth configuration.

    Raises:
        ConfigurationError: If the value references an unset variable.
    """
    if auth.resolved_value is None:
        auth.resolved_value = substitute_env_vars(auth.value)
    return auth.resolved_value


def load_config_file(path: Path) -> TrackerFileConfig:
    """Load and parse a tracker.yaml configuration file.

    A missing file yields the built-in 511.org / Trillium configuration.

    Args:
        path: Path to the tracker.yaml file.

    Returns:
        Parsed TrackerFileConfig.

    Raises:
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If the configuration is invalid.

    Note:
        Auth values are left as templates here. They are resolved when an
        endpoint is first fetched, so commands that never touch an
        authenticated endpoint work without the secret set.
    """
    if not path.exists():
        return TrackerFileConfig.model_validate(DEFAULT_CONFIG)

    with path.open() as f:
        raw_config = yaml.safe_load(f)

    return TrackerFileConfig.model_validate(raw_config)


def _flatten_endpoint(
    endpoint: EndpointFileConfig,
    defaults: DefaultsConfig,
) -> EndpointConfig:
    """Apply defaults to a single endpoint (endpoint value > defaults)."""
    timeout = endpoint.timeout_seconds
    if timeout is None:
        timeout = defaults.timeout_seconds

    cache_ttl = endpoint.cache_ttl_seconds
    if cache_ttl is None:
        cache_ttl = defaults.cache_ttl_seconds

    return EndpointConfig(
        key=endpoint.key,
        url=endpoint.url,
        params=endpoint.params,
        auth=endpoint.auth,
        timeout_seconds=timeout,
        retry=endpoint.retry or defaults.retry,
        rate_limit=endpoint.rate_limit or defaults.rate_limit,
        cache_ttl_seconds=cache_ttl,
    )


def flatten_endpoints(config: TrackerFileConfig) -> dict[str, EndpointConfig]:
    """Flatten the file configuration into runtime endpoint configs keyed by endpoint key.

    Args:
        config: The parsed tracker configuration.

    Returns:
        Mapping of endpoint key to EndpointConfig.
    """
    return {
        endpoint.key: _flatten_endpoint(endpoint, config.defaults)
        for endpoint in config.endpoints
    }


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=True,
    )

    # Endpoint configuration
    config_path: Path = Field(
        default=Path("./tracker.yaml"),
        validation_alias="CONFIG_PATH",
        description="Path to tracker.yaml configuration file (optional)",
    )

    # History settings
    history_path: Path = Field(
        default=Path("./trip_history.json"),
        validation_alias="HISTORY_PATH",
        description="File backing the trip history log",
    )
    history_capacity: int = Field(
        default=5000,
        ge=1,
        le=1_000_000,
        validation_alias="HISTORY_CAPACITY",
        description="Maximum number of trip records retained",
    )

    # Schedule settings
    feed_timezone: str = Field(
        default="America/Los_Angeles",
        validation_alias="FEED_TIMEZONE",
        description="IANA timezone the static schedule is expressed in",
    )
    schedule_refresh_hours: float = Field(
        default=24.0,
        gt=0,
        le=168,
        validation_alias="SCHEDULE_REFRESH_HOURS",
        description="Maximum schedule age before it is downloaded again",
    )

    # Server settings
    metrics_port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        validation_alias="METRICS_PORT",
        description="Port for the Prometheus metrics endpoint (disabled when unset)",
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_format: str = Field(
        default="text",
        validation_alias="LOG_FORMAT",
        description="Log output format (json or text)",
    )
