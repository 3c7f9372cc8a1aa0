"""
Configuration loading: YAML file plus environment overrides.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, Union, Mapping
import logging

import yaml

from .errors import ConfigError
from .ids import DEFAULT_REVIEW_STACK_PATTERN, validate_name
from .policy import (
    LifecyclePolicy, DEFAULT_TEAM, DEFAULT_DELETE_STACK,
    drift_mode_from_config, delete_tag_from_config,
)
from .ttl import DEFAULT_TTL_MINUTES

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "stackkeeper.yaml"
DEFAULT_API_URL = "https://api.pulumi.com"
DEFAULT_TEMPLATE_STACK = "dev"
TOKEN_ENV_VAR = "PULUMI_ACCESS_TOKEN"


@dataclass(frozen=True)
class AccessToken:
    """A management API access token."""
    value: str

    def __repr__(self) -> str:
        return "AccessToken([REDACTED])"


@dataclass(frozen=True)
class MissingToken:
    """No access token is available; calls that need one must be skipped."""
    reason: str = "no access token configured"


Credential = Union[AccessToken, MissingToken]


def resolve_credential(token: Optional[str]) -> Credential:
    if token and token.strip():
        return AccessToken(token.strip())
    return MissingToken()


@dataclass
class Settings:
    """Engine-wide settings. Per-stack policies default from these values."""
    organization: Optional[str] = None
    ttl_minutes: int = DEFAULT_TTL_MINUTES
    drift_management: Optional[str] = None
    delete_stack: str = DEFAULT_DELETE_STACK
    team_assignment: str = DEFAULT_TEAM
    credential: Credential = field(default_factory=MissingToken)
    template_stack: str = DEFAULT_TEMPLATE_STACK
    review_stack_pattern: str = DEFAULT_REVIEW_STACK_PATTERN
    api_url: str = DEFAULT_API_URL
    request_timeout: float = 30.0
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    sweep_interval_minutes: int = 60
    webhook_secret: Optional[str] = None

    def default_policy(self) -> LifecyclePolicy:
        """Policy applied to stacks the store knows nothing about."""
        return LifecyclePolicy(
            ttl_minutes=self.ttl_minutes,
            drift_mode=drift_mode_from_config(self.drift_management),
            team=self.team_assignment,
            delete_tag=delete_tag_from_config(self.delete_stack),
        )


# config key -> (Settings attribute, expected type)
_KEYS = {
    "organization": ("organization", str),
    "ttlMinutes": ("ttl_minutes", int),
    "driftManagement": ("drift_management", str),
    "deleteStack": ("delete_stack", str),
    "teamAssignment": ("team_assignment", str),
    "templateStack": ("template_stack", str),
    "reviewStackPattern": ("review_stack_pattern", str),
    "apiUrl": ("api_url", str),
    "requestTimeout": ("request_timeout", float),
    "maxAttempts": ("max_attempts", int),
    "backoffSeconds": ("backoff_seconds", float),
    "sweepIntervalMinutes": ("sweep_interval_minutes", int),
    "webhookSecret": ("webhook_secret", str),
}

_ENV_OVERRIDES = {
    "STACKKEEPER_ORGANIZATION": "organization",
    "STACKKEEPER_API_URL": "apiUrl",
    "STACKKEEPER_WEBHOOK_SECRET": "webhookSecret",
}


def _coerce(key: str, value: Any, expected: type) -> Any:
    if expected is str:
        # YAML turns an unquoted True into a bool; the tag value wants the text
        if isinstance(value, bool):
            return "True" if value else "False"
        if isinstance(value, (int, float)):
            return str(value)
    if expected is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if expected is int and isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    if isinstance(value, bool) or not isinstance(value, expected):
        raise ConfigError(f"Invalid value for {key}: {value!r} (expected {expected.__name__})")
    return value


def settings_from_dict(data: Mapping[str, Any], env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from a raw config mapping and the environment.

    Args:
        data: Parsed config (camelCase keys)
        env: Environment mapping (defaults to os.environ)

    Returns:
        Validated Settings

    Raises:
        ConfigError: On unknown types or out-of-range values
    """
    env = os.environ if env is None else env
    merged: Dict[str, Any] = dict(data)

    for env_name, key in _ENV_OVERRIDES.items():
        if env.get(env_name):
            merged[key] = env[env_name]

    unknown = set(merged) - set(_KEYS) - {"pulumiAccessToken"}
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")

    kwargs: Dict[str, Any] = {}
    for key, (attr, expected) in _KEYS.items():
        value = merged.get(key)
        if value is not None:
            kwargs[attr] = _coerce(key, value, expected)

    # Config wins over the ambient environment; both are resolved once, here.
    token = merged.get("pulumiAccessToken") or env.get(TOKEN_ENV_VAR)
    kwargs["credential"] = resolve_credential(token)

    settings = Settings(**kwargs)
    _validate(settings)
    return settings


def _validate(settings: Settings) -> None:
    if settings.ttl_minutes <= 0:
        raise ConfigError(f"ttlMinutes must be positive, got {settings.ttl_minutes}")
    if settings.max_attempts < 1:
        raise ConfigError(f"maxAttempts must be at least 1, got {settings.max_attempts}")
    if settings.request_timeout <= 0:
        raise ConfigError(f"requestTimeout must be positive, got {settings.request_timeout}")
    if settings.backoff_seconds < 0:
        raise ConfigError(f"backoffSeconds must not be negative, got {settings.backoff_seconds}")
    if settings.sweep_interval_minutes <= 0:
        raise ConfigError(f"sweepIntervalMinutes must be positive, got {settings.sweep_interval_minutes}")
    validate_name(settings.template_stack, "templateStack")
    if not settings.team_assignment.strip():
        raise ConfigError("teamAssignment must not be empty")
    try:
        settings.review_stack_pattern.format(org="o", project="p")
    except (KeyError, IndexError, ValueError) as e:
        raise ConfigError(f"Invalid reviewStackPattern {settings.review_stack_pattern!r}: {e}")


def load_settings(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Load settings from a YAML file.

    An explicit path must exist. Without a path, ./stackkeeper.yaml is used
    when present, otherwise defaults plus environment.
    """
    data: Dict[str, Any] = {}

    if path is not None:
        config_file = Path(path)
        if not config_file.exists():
            raise ConfigError(f"Config file not found: {path}")
    else:
        config_file = Path(DEFAULT_CONFIG_FILE)

    if config_file.exists():
        try:
            with open(config_file, "r") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {config_file}: {e}")

        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_file} must contain a mapping at the top level")
        data = loaded
        logger.debug(f"Loaded config from {config_file}")

    return settings_from_dict(data, env)
