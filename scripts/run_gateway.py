#!/usr/bin/env python3
"""
Run chatwire gateway shards from the command line.

Connects with the token from CHATWIRE_TOKEN, logs lifecycle and dispatch
events, and optionally serves Prometheus metrics.

Usage:
    CHATWIRE_TOKEN="Bot ..." python -m scripts.run_gateway
    python -m scripts.run_gateway --shards auto --intents GUILDS,GUILD_MESSAGES
    python -m scripts.run_gateway --duration-s 60  # Run for 60 seconds

Shutdown is graceful on SIGINT/SIGTERM or after --duration-s.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Any

from chatwire.client import Client
from chatwire.config import ClientConfig, ConfigurationError
from chatwire.gateway.events import DisconnectEvent, DispatchEvent, ErrorEvent, Subscription
from chatwire.logging_config import setup_logging
from chatwire.metrics import MetricsExporter
from chatwire.metrics_server import start_metrics_server, stop_metrics_server

logger = logging.getLogger(__name__)

# Kinds logged by the runner; debug events are already mirrored in DEBUG logs
LOGGED_EVENT_KINDS = frozenset(
    {"connect", "ready", "resume", "disconnect", "dispatch", "warn", "error"}
)


@dataclass
class RunnerConfig:
    """Configuration for the gateway runner."""

    # Duration in seconds (None = run until SIGINT/SIGTERM)
    duration_s: int | None = None

    # Metrics server port (0 = disabled)
    metrics_port: int = 9090

    # Seconds between shutdown checks
    poll_interval_s: float = 0.5

    def __post_init__(self) -> None:
        if not 0 <= self.metrics_port <= 65535:
            msg = f"metrics_port must be 0..65535, got {self.metrics_port}"
            raise ValueError(msg)
        if self.duration_s is not None and self.duration_s <= 0:
            msg = f"duration_s must be > 0, got {self.duration_s}"
            raise ValueError(msg)
        if self.poll_interval_s <= 0:
            msg = f"poll_interval_s must be > 0, got {self.poll_interval_s}"
            raise ValueError(msg)


class GatewayRunner:
    """Connects a Client and logs its events until asked to stop."""

    def __init__(
        self,
        client: Client,
        config: RunnerConfig,
        exporter: MetricsExporter | None = None,
    ) -> None:
        self._client = client
        self._config = config
        self._exporter = exporter
        self._running = False
        self._subscription: Subscription | None = None
        self.events_logged = 0

    @property
    def running(self) -> bool:
        return self._running

    def refresh_metrics(self) -> None:
        """Sync client metrics into the exporter."""
        if self._exporter is None:
            return
        coordinator = self._client.coordinator
        self._exporter.update(
            dispatcher_metrics=self._client.rest.get_metrics(),
            gateway_metrics=coordinator.get_metrics() if coordinator is not None else None,
        )

    def log_event(self, event: Any) -> None:
        """Log one gateway event at a level matching its kind."""
        self.events_logged += 1
        if isinstance(event, DispatchEvent):
            logger.info(
                "Dispatch %s", event.name, extra={"shard": event.shard_id, "seq": event.sequence}
            )
        elif isinstance(event, ErrorEvent):
            logger.error(
                "Shard error: %s",
                event.message,
                extra={"shard": event.shard_id, "code": event.code, "fatal": event.fatal},
            )
        elif isinstance(event, DisconnectEvent):
            logger.warning(
                "Shard disconnected",
                extra={
                    "shard": event.shard_id,
                    "code": event.code,
                    "will_reconnect": event.will_reconnect,
                },
            )
        elif event.kind == "warn":
            logger.warning("Shard warning: %s", event.message, extra={"shard": event.shard_id})
        else:
            logger.info("Shard %s", event.kind, extra={"shard": event.shard_id})

    async def _consume(self, subscription: Subscription) -> None:
        async for event in subscription:
            self.log_event(event)

    async def run(self) -> None:
        """Connect and block until shutdown is requested or the duration elapses."""
        self._running = True
        self._subscription = self._client.subscribe(LOGGED_EVENT_KINDS)
        consumer = asyncio.create_task(self._consume(self._subscription))
        try:
            await self._client.connect()
            loop = asyncio.get_running_loop()
            deadline = (
                loop.time() + self._config.duration_s if self._config.duration_s else None
            )
            while self._running:
                if deadline is not None and loop.time() >= deadline:
                    logger.info("Duration elapsed, stopping")
                    break
                await asyncio.sleep(self._config.poll_interval_s)
        finally:
            self._running = False
            self._subscription.close()
            await consumer

    def request_shutdown(self) -> None:
        """Request graceful shutdown by setting running flag to False."""
        logger.info("Shutdown requested")
        self._running = False


def setup_signal_handlers(runner: GatewayRunner) -> None:
    """Make SIGINT/SIGTERM stop the runner loop; run() then closes the client."""

    def signal_handler(sig: int, frame: object) -> None:
        logger.info("Received signal %s, initiating shutdown", signal.Signals(sig).name)
        runner.request_shutdown()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def run_gateway(client_config: ClientConfig, config: RunnerConfig) -> int:
    """
    Run shards until shutdown.

    Returns:
        Exit code (0 = success, 2 = configuration error, 1 = other failure).
    """
    exporter: MetricsExporter | None = None
    registry = None
    if config.metrics_port > 0:
        from prometheus_client.registry import CollectorRegistry

        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)

    client = Client(config=client_config)
    runner = GatewayRunner(client, config, exporter)

    metrics_runner = None
    if registry is not None:
        metrics_runner = await start_metrics_server(
            registry,
            port=config.metrics_port,
            health_fn=client.get_health_info,
            refresh_fn=runner.refresh_metrics,
        )

    setup_signal_handlers(runner)

    try:
        await runner.run()
        return 0
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return 2
    except Exception as e:
        logger.exception("Gateway runner failed: %s", e)
        return 1
    finally:
        await client.close()
        if metrics_runner is not None:
            await stop_metrics_server(metrics_runner)


def _parse_count(value: str) -> int | str:
    if value.strip().lower() == "auto":
        return "auto"
    return int(value)


def build_configs(args: argparse.Namespace) -> tuple[ClientConfig, RunnerConfig]:
    """Merge CHATWIRE_* environment settings with command line overrides."""
    client_config = ClientConfig.from_env()
    overrides: dict[str, Any] = {}
    if args.shards is not None:
        overrides["max_shards"] = _parse_count(args.shards)
    if args.concurrency is not None:
        overrides["max_concurrency"] = _parse_count(args.concurrency)
    if args.intents is not None:
        intents = args.intents.strip()
        overrides["intents"] = int(intents) if intents.isdigit() else intents.split(",")
    if args.compress:
        overrides["compress"] = True
    if args.gateway_url:
        overrides["url"] = args.gateway_url
    if overrides:
        try:
            client_config.gateway = dataclasses.replace(client_config.gateway, **overrides)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    runner_config = RunnerConfig(duration_s=args.duration_s, metrics_port=args.metrics_port)
    return client_config, runner_config


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run chatwire gateway shards.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--shards",
        type=str,
        default=None,
        help="Total shard count or 'auto' (default: CHATWIRE_MAX_SHARDS or 1)",
    )
    parser.add_argument(
        "--concurrency",
        type=str,
        default=None,
        help="Identify concurrency or 'auto' (default: CHATWIRE_MAX_CONCURRENCY or 1)",
    )
    parser.add_argument(
        "--intents",
        type=str,
        default=None,
        help="Intent bitmask or comma-separated intent names",
    )
    parser.add_argument(
        "--compress",
        action="store_true",
        help="Request zlib-stream transport compression",
    )
    parser.add_argument(
        "--gateway-url",
        type=str,
        default=None,
        help="Override the gateway URL instead of asking the REST API",
    )
    parser.add_argument(
        "--duration-s",
        type=int,
        default=None,
        help="Run for N seconds then stop gracefully (default: run until SIGINT/SIGTERM)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=9090,
        help="Prometheus /metrics port (0 to disable, default: 9090)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines instead of human-readable ones",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()
    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        json_format=args.json_logs,
    )

    try:
        client_config, runner_config = build_configs(args)
    except (ConfigurationError, ValueError) as e:
        logger.error("Configuration error: %s", e)
        return 2

    logger.info("Starting chatwire gateway", extra=client_config.describe())
    logger.info(
        "  Duration: %s",
        f"{runner_config.duration_s}s" if runner_config.duration_s else "until signal",
    )

    return asyncio.run(run_gateway(client_config, runner_config))


if __name__ == "__main__":
    sys.exit(main())
