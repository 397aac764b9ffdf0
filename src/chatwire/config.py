"""
Client configuration.

Bundles RestConfig and GatewayConfig and reads CHATWIRE_* environment
overrides. The token is read from CHATWIRE_TOKEN and never logged.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any

from chatwire.errors import ChatwireError
from chatwire.gateway.types import GatewayConfig
from chatwire.rest.types import RestConfig

# Env var names that must never be logged
REDACTED_ENV_VARS = frozenset({"CHATWIRE_TOKEN"})

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})

# env var -> (section, field, parser name)
_ENV_FIELDS: dict[str, tuple[str, str, str]] = {
    "CHATWIRE_API_DOMAIN": ("rest", "domain", "str"),
    "CHATWIRE_API_HTTPS": ("rest", "https", "bool"),
    "CHATWIRE_API_PORT": ("rest", "port", "int"),
    "CHATWIRE_REQUEST_TIMEOUT_MS": ("rest", "request_timeout_ms", "int"),
    "CHATWIRE_RATELIMITER_OFFSET_MS": ("rest", "ratelimiter_offset_ms", "int"),
    "CHATWIRE_MAX_RATELIMIT_RETRIES": ("rest", "max_ratelimit_retries", "int"),
    "CHATWIRE_GATEWAY_URL": ("gateway", "url", "str"),
    "CHATWIRE_COMPRESS": ("gateway", "compress", "bool"),
    "CHATWIRE_AUTORECONNECT": ("gateway", "autoreconnect", "bool"),
    "CHATWIRE_INTENTS": ("gateway", "intents", "intents"),
    "CHATWIRE_MAX_SHARDS": ("gateway", "max_shards", "int_or_auto"),
    "CHATWIRE_MAX_CONCURRENCY": ("gateway", "max_concurrency", "int_or_auto"),
    "CHATWIRE_FIRST_SHARD_ID": ("gateway", "first_shard_id", "int"),
    "CHATWIRE_LAST_SHARD_ID": ("gateway", "last_shard_id", "int"),
    "CHATWIRE_DISABLE_EVENTS": ("gateway", "disable_events", "names"),
}


class ConfigurationError(ChatwireError, ValueError):
    """Invalid or incompatible client configuration."""


def _parse_env_value(name: str, raw: str, kind: str) -> Any:
    value = raw.strip()
    if kind == "str":
        return value
    if kind == "bool":
        lowered = value.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")
    if kind == "names":
        return frozenset(part.strip().upper() for part in value.split(",") if part.strip())
    if kind == "int_or_auto" and value.lower() == "auto":
        return "auto"
    if kind == "intents" and not value.lstrip("-").isdigit():
        return [part.strip() for part in value.split(",") if part.strip()]
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


@dataclass
class ClientConfig:
    """
    Top-level configuration for a Client.

    Attributes:
        rest: REST dispatcher configuration.
        gateway: Gateway shard configuration.
        token: Bot token; excluded from repr.
    """

    rest: RestConfig = field(default_factory=RestConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    token: str = field(default="", repr=False)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> ClientConfig:
        """
        Build a config from CHATWIRE_* variables over the defaults.

        Args:
            env: Variables to read; defaults to os.environ.

        Raises:
            ConfigurationError: A variable is malformed or produces an
                invalid configuration.
        """
        source = os.environ if env is None else env
        overrides: dict[str, dict[str, Any]] = {"rest": {}, "gateway": {}}
        for name, (section, field_name, kind) in _ENV_FIELDS.items():
            raw = source.get(name)
            if raw is None or raw.strip() == "":
                continue
            overrides[section][field_name] = _parse_env_value(name, raw, kind)

        try:
            rest = RestConfig(**overrides["rest"])
            gateway = GatewayConfig(**overrides["gateway"])
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        return cls(rest=rest, gateway=gateway, token=source.get("CHATWIRE_TOKEN", "").strip())

    def describe(self) -> dict[str, Any]:
        """Non-secret summary for startup logs."""
        summary: dict[str, Any] = {"token_set": bool(self.token)}
        for section in (self.rest, self.gateway):
            for f in fields(section):
                value = getattr(section, f.name)
                if isinstance(value, (str, int, float, bool, type(None))):
                    summary[f.name] = value
        return summary
