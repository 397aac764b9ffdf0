"""
Tests for scripts/run_gateway.py.

Covers RunnerConfig validation, CLI/env config merging, and a short run
against the fake gateway.
"""

from __future__ import annotations

import argparse
import asyncio
from typing import Any
from unittest import mock

import pytest
from scripts.run_gateway import (
    GatewayRunner,
    RunnerConfig,
    build_configs,
    run_gateway,
)

from chatwire import Client, ClientConfig, ConfigurationError, GatewayConfig, RestConfig
from chatwire.gateway import DispatchEvent, ErrorEvent
from chatwire.metrics import MetricsExporter
from tests.fixtures.fake_platform import FakeGateway, wait_until


def _args(**overrides: Any) -> argparse.Namespace:
    values: dict[str, Any] = {
        "shards": None,
        "concurrency": None,
        "intents": None,
        "compress": False,
        "gateway_url": None,
        "duration_s": None,
        "metrics_port": 9090,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


class TestRunnerConfig:
    def test_defaults_valid(self) -> None:
        config = RunnerConfig()
        assert config.duration_s is None
        assert config.metrics_port == 9090

    def test_metrics_port_zero_disables(self) -> None:
        assert RunnerConfig(metrics_port=0).metrics_port == 0

    @pytest.mark.parametrize(
        ("kwargs", "match"),
        [
            ({"metrics_port": -1}, "metrics_port"),
            ({"metrics_port": 70000}, "metrics_port"),
            ({"duration_s": 0}, "duration_s"),
            ({"poll_interval_s": 0}, "poll_interval_s"),
        ],
    )
    def test_invalid(self, kwargs: dict[str, Any], match: str) -> None:
        with pytest.raises(ValueError, match=match):
            RunnerConfig(**kwargs)


class TestBuildConfigs:
    """Command line flags override CHATWIRE_* settings."""

    def test_flags_override_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHATWIRE_MAX_SHARDS", "4")
        monkeypatch.setenv("CHATWIRE_TOKEN", "Bot from-env")
        client_config, runner_config = build_configs(
            _args(
                shards="auto",
                concurrency="2",
                intents="guilds,guild_messages",
                compress=True,
                gateway_url="ws://127.0.0.1:1",
                duration_s=30,
                metrics_port=0,
            )
        )
        gateway = client_config.gateway
        assert gateway.max_shards == "auto"
        assert gateway.max_concurrency == 2
        assert gateway.intents_value == 513
        assert gateway.compress is True
        assert gateway.url == "ws://127.0.0.1:1"
        assert client_config.token == "Bot from-env"
        assert runner_config.duration_s == 30
        assert runner_config.metrics_port == 0

    def test_env_kept_without_flags(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHATWIRE_MAX_SHARDS", "4")
        client_config, _ = build_configs(_args())
        assert client_config.gateway.max_shards == 4

    def test_intent_bitmask_flag(self) -> None:
        client_config, _ = build_configs(_args(intents="513"))
        assert client_config.gateway.intents == 513

    def test_invalid_flag_is_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown intent"):
            build_configs(_args(intents="guilds,bogus"))


class TestGatewayRunner:
    def test_log_event_counts(self) -> None:
        runner = GatewayRunner(Client("Bot x"), RunnerConfig(metrics_port=0))
        runner.log_event(DispatchEvent(shard_id=0, name="MESSAGE_CREATE", sequence=3))
        runner.log_event(ErrorEvent(shard_id=0, message="boom", fatal=True))
        assert runner.events_logged == 2

    @pytest.mark.asyncio
    async def test_run_until_shutdown(self) -> None:
        server = FakeGateway()
        await server.start()
        config = ClientConfig(
            rest=RestConfig(domain="127.0.0.1", https=False, port=server.port),
            gateway=GatewayConfig(url=server.base_url),
        )
        client = Client("Bot test-token", config)
        exporter = MetricsExporter()
        runner = GatewayRunner(client, RunnerConfig(metrics_port=0, poll_interval_s=0.01), exporter)
        try:
            task = asyncio.create_task(runner.run())
            await wait_until(lambda: client.get_health_info()["status"] == "ok")
            assert runner.running

            runner.refresh_metrics()
            assert exporter.registry.get_sample_value("chatwire_gateway_ready_shards") == 1

            runner.request_shutdown()
            await asyncio.wait_for(task, 2.0)
            assert not runner.running
            assert runner.events_logged >= 2
        finally:
            await client.close()
            await server.stop()


class TestRunGateway:
    @pytest.mark.asyncio
    async def test_missing_token_exit_code(self) -> None:
        with mock.patch("scripts.run_gateway.setup_signal_handlers"):
            code = await run_gateway(ClientConfig(), RunnerConfig(metrics_port=0))
        assert code == 2

    @pytest.mark.asyncio
    async def test_duration_elapses(self) -> None:
        server = FakeGateway()
        await server.start()
        config = ClientConfig(
            rest=RestConfig(domain="127.0.0.1", https=False, port=server.port),
            gateway=GatewayConfig(url=server.base_url),
            token="Bot test-token",
        )
        try:
            with mock.patch("scripts.run_gateway.setup_signal_handlers"):
                code = await run_gateway(
                    config, RunnerConfig(duration_s=1, metrics_port=0, poll_interval_s=0.05)
                )
            assert code == 0
            assert server.identify_count == 1
        finally:
            await server.stop()
