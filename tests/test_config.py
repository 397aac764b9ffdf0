"""
Tests for ClientConfig and CHATWIRE_* environment overrides.
"""

from __future__ import annotations

import pytest

from chatwire.config import REDACTED_ENV_VARS, ClientConfig, ConfigurationError
from chatwire.errors import ChatwireError


class TestDefaults:
    def test_default_config(self) -> None:
        config = ClientConfig()
        assert config.rest.domain == "discord.com"
        assert config.gateway.max_shards == 1
        assert config.token == ""

    def test_token_not_in_repr(self) -> None:
        config = ClientConfig(token="Bot secret-value")
        assert "secret-value" not in repr(config)

    def test_describe_hides_token(self) -> None:
        summary = ClientConfig(token="Bot secret-value").describe()
        assert summary["token_set"] is True
        assert "secret-value" not in str(summary)
        assert summary["domain"] == "discord.com"
        assert summary["compress"] is False


class TestFromEnv:
    """Environment overrides."""

    def test_empty_env_gives_defaults(self) -> None:
        config = ClientConfig.from_env({})
        assert config.token == ""
        assert config.gateway.autoreconnect is True

    def test_overrides(self) -> None:
        config = ClientConfig.from_env(
            {
                "CHATWIRE_TOKEN": " Bot abc ",
                "CHATWIRE_API_DOMAIN": "127.0.0.1",
                "CHATWIRE_API_HTTPS": "false",
                "CHATWIRE_API_PORT": "8080",
                "CHATWIRE_MAX_RATELIMIT_RETRIES": "3",
                "CHATWIRE_COMPRESS": "yes",
                "CHATWIRE_MAX_SHARDS": "auto",
                "CHATWIRE_MAX_CONCURRENCY": "16",
                "CHATWIRE_FIRST_SHARD_ID": "2",
                "CHATWIRE_LAST_SHARD_ID": "5",
                "CHATWIRE_DISABLE_EVENTS": "typing_start, presence_update",
            }
        )
        assert config.token == "Bot abc"
        assert config.rest.domain == "127.0.0.1"
        assert config.rest.https is False
        assert config.rest.port == 8080
        assert config.rest.max_ratelimit_retries == 3
        assert config.gateway.compress is True
        assert config.gateway.max_shards == "auto"
        assert config.gateway.max_concurrency == 16
        assert config.gateway.first_shard_id == 2
        assert config.gateway.last_shard_id == 5
        assert config.gateway.disable_events == frozenset({"TYPING_START", "PRESENCE_UPDATE"})

    def test_intents_by_name_or_bitmask(self) -> None:
        by_name = ClientConfig.from_env({"CHATWIRE_INTENTS": "guilds,guild_messages"})
        by_mask = ClientConfig.from_env({"CHATWIRE_INTENTS": "513"})
        assert by_name.gateway.intents_value == 513
        assert by_mask.gateway.intents == 513

    def test_blank_values_ignored(self) -> None:
        config = ClientConfig.from_env({"CHATWIRE_API_PORT": "  "})
        assert config.rest.port is None

    @pytest.mark.parametrize(
        ("name", "value", "match"),
        [
            ("CHATWIRE_API_PORT", "eighty", "CHATWIRE_API_PORT must be an integer"),
            ("CHATWIRE_COMPRESS", "maybe", "CHATWIRE_COMPRESS must be a boolean"),
            ("CHATWIRE_MAX_SHARDS", "0", "max_shards"),
            ("CHATWIRE_INTENTS", "guilds,nonsense", "Unknown intent"),
            ("CHATWIRE_REQUEST_TIMEOUT_MS", "-1", "request_timeout_ms"),
        ],
    )
    def test_invalid_values(self, name: str, value: str, match: str) -> None:
        with pytest.raises(ConfigurationError, match=match):
            ClientConfig.from_env({name: value})

    def test_configuration_error_hierarchy(self) -> None:
        err = ConfigurationError("bad")
        assert isinstance(err, ChatwireError)
        assert isinstance(err, ValueError)

    def test_token_var_is_redacted(self) -> None:
        assert "CHATWIRE_TOKEN" in REDACTED_ENV_VARS

    def test_reads_os_environ_by_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHATWIRE_AUTORECONNECT", "off")
        assert ClientConfig.from_env().gateway.autoreconnect is False
