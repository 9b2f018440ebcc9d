import asyncio
import signal
from pathlib import Path
from typing import Any

import structlog
from prometheus_client import start_http_server

from limitwatch.cache import CacheManager
from limitwatch.cli import parse_args
from limitwatch.config import Config
from limitwatch.events import EventBus
from limitwatch.logging import setup_logging
from limitwatch.metrics import MetricsUpdater
from limitwatch.notifications import LoggingNotificationSink, ThresholdNotifier
from limitwatch.provider.antigravity import AntigravityProvider
from limitwatch.provider.claude import ClaudeProvider
from limitwatch.provider.copilot import CLIENT_ID, CopilotProvider
from limitwatch.provider.gemini import GeminiProvider
from limitwatch.registry import ProviderRegistry
from limitwatch.scheduler import RefreshInterval, Scheduler
from limitwatch.secret_store import KeyringSecretStore, SecretStore

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def _build_registry(config: "Config", secret_store: "SecretStore") -> "ProviderRegistry":
    registry = ProviderRegistry()
    registry.register(
        CopilotProvider(secret_store, client_id=config.copilot_client_id or CLIENT_ID)
    )
    registry.register(ClaudeProvider(secret_store))
    registry.register(
        GeminiProvider(
            credentials_path=(
                Path(config.gemini_credentials).expanduser()
                if config.gemini_credentials
                else None
            )
        )
    )
    registry.register(AntigravityProvider())

    for provider_id in config.enabled_providers:
        if registry.set_enabled(provider_id, True):
            logger.info("provider_enabled", provider=provider_id)
        else:
            logger.warning("unknown_provider", provider=provider_id)
    return registry


def _log_event(event: "str", payload: "Any") -> "None":
    logger.debug("event_emitted", event=event, provider=payload.get("provider"))


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level)

    secret_store = KeyringSecretStore()
    registry = _build_registry(config, secret_store)
    if not registry.enabled_providers():
        raise SystemExit(
            "No providers enabled. Use --provider.enable or "
            "LIMITWATCH_ENABLED_PROVIDERS."
        )

    cache = CacheManager(config.data_path)
    notifier = ThresholdNotifier(LoggingNotificationSink())
    events = EventBus()
    events.subscribe(_log_event)
    metrics_updater = MetricsUpdater()

    scheduler = Scheduler(
        registry,
        cache,
        notifier,
        events,
        metrics_updater,
        RefreshInterval.from_str(config.refresh_interval),
    )

    if config.once:

        async def _once() -> "None":
            try:
                await scheduler.refresh_all()
            finally:
                await registry.close()

        asyncio.run(_once())
        print(cache.to_json())
        return

    if config.metrics_enabled:
        host, port = _parse_listen_address(config.listen_address)
        start_http_server(port, addr=host)
        logger.info("metrics_server_started", host=host, port=port)

    async def _run() -> "None":
        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, signal the scheduler
        # to stop gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, scheduler.stop)

        try:
            await scheduler.run()
        finally:
            logger.info("shutting_down")
            await registry.close()
            logger.info("shutdown_complete")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
