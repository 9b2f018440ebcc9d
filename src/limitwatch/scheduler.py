import asyncio
import time
from enum import Enum

import structlog

from limitwatch.cache import CacheManager
from limitwatch.events import PROVIDER_ERROR, PROVIDER_UPDATED, EventEmitter
from limitwatch.metrics import MetricsUpdater
from limitwatch.models import UsageData
from limitwatch.notifications import ThresholdNotifier
from limitwatch.registry import ProviderHandle, ProviderRegistry

logger = structlog.get_logger()

# how often the loop wakes up to re-read a manual interval
MANUAL_POLL_SECONDS = 10


class RefreshInterval(str, Enum):
    MANUAL = "manual"
    ONE_MINUTE = "1m"
    TWO_MINUTES = "2m"
    FIVE_MINUTES = "5m"
    FIFTEEN_MINUTES = "15m"

    @property
    def duration(self) -> "int | None":
        """
        seconds between refreshes, None for manual.
        """
        return _DURATIONS[self]

    @classmethod
    def from_str(cls, value: "str") -> "RefreshInterval":
        """
        parses "1m", "2m", "5m" or "15m". Anything else means
        manual refreshes only.
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.MANUAL


_DURATIONS: "dict[RefreshInterval, int | None]" = {
    RefreshInterval.MANUAL: None,
    RefreshInterval.ONE_MINUTE: 60,
    RefreshInterval.TWO_MINUTES: 120,
    RefreshInterval.FIVE_MINUTES: 300,
    RefreshInterval.FIFTEEN_MINUTES: 900,
}


class Scheduler:
    """
    Scheduler periodically refreshes every enabled provider and
    records the results in the shared cache. It owns only its
    cadence; providers and cached usage are borrowed from the
    registry and the cache.

    refresh_provider is the single refresh path, also used for
    on-demand refreshes, so both go through the same per-provider
    lock and the same cache, metrics and notification updates.
    """

    def __init__(
        self,
        registry: "ProviderRegistry",
        cache: "CacheManager",
        notifier: "ThresholdNotifier",
        events: "EventEmitter",
        metrics: "MetricsUpdater",
        interval: "RefreshInterval" = RefreshInterval.FIVE_MINUTES,
    ) -> "None":
        self._registry = registry
        self._cache = cache
        self._notifier = notifier
        self._events = events
        self._metrics = metrics
        self._interval = interval
        self._running = False
        self._stop_event: "asyncio.Event" = asyncio.Event()

    @property
    def interval(self) -> "RefreshInterval":
        return self._interval

    @property
    def running(self) -> "bool":
        return self._running

    def set_interval(self, interval: "RefreshInterval") -> "None":
        """
        changes the cadence. The loop picks it up at the top of
        its next cycle.
        """
        logger.info("refresh_interval_changed", interval=interval.value)
        self._interval = interval

    def stop(self) -> "None":
        """
        signals the refresh loop to stop.
        """
        self._running = False
        self._stop_event.set()

    async def _sleep(self, seconds: "int") -> "None":
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def run(self) -> "None":
        """
        runs the refresh loop until stop() is called. The first
        refresh happens one full interval after start. A stop()
        issued before the loop starts makes it return at once.
        """
        if self._stop_event.is_set():
            logger.info("scheduler_stopped")
            return

        self._running = True
        logger.info("scheduler_started", interval=self._interval.value)

        while self._running:
            duration = self._interval.duration
            if duration is None:
                await self._sleep(MANUAL_POLL_SECONDS)
                continue

            await self._sleep(duration)
            if not self._running:
                break

            try:
                await self.refresh_all()
            except Exception:
                logger.exception("refresh_cycle_error")

        logger.info("scheduler_stopped")

    async def refresh_all(self) -> "dict[str, UsageData | Exception]":
        """
        refreshes every enabled provider concurrently. Each refresh
        waits only on its own provider's lock, and a failing provider
        never stops the rest of the cycle.
        """
        providers = self._registry.enabled_providers()
        logger.info("refresh_cycle_start", providers=len(providers))

        outcomes = await asyncio.gather(
            *(
                self.refresh_provider(provider_id, handle)
                for provider_id, handle in providers
            ),
            return_exceptions=True,
        )
        results: "dict[str, UsageData | Exception]" = dict(
            zip((provider_id for provider_id, _ in providers), outcomes)
        )

        logger.info(
            "refresh_cycle_end",
            failed=sum(1 for r in results.values() if isinstance(r, Exception)),
        )
        return results

    async def refresh_provider(
        self, provider_id: "str", handle: "ProviderHandle"
    ) -> "UsageData":
        """
        fetches usage for one provider under its lock. On success
        the cache, metrics and threshold warnings are updated; on
        failure the previous cache entry is kept and the error is
        re-raised.
        """
        async with handle.lock:
            started = time.monotonic()
            try:
                usage = await handle.provider.fetch_usage()
            except Exception as e:
                self._metrics.observe_refresh_duration(
                    provider_id, time.monotonic() - started
                )
                self._record_failure(provider_id, e)
                raise
            self._metrics.observe_refresh_duration(
                provider_id, time.monotonic() - started
            )

        self._cache.set(provider_id, usage)
        try:
            await asyncio.to_thread(self._cache.save)
        except OSError as e:
            logger.error("usage_cache_save_failed", error=str(e))

        self._metrics.set_last_refresh_success(provider_id, time.time())
        self._metrics.update_usage(provider_id, usage)
        self._notifier.check_usage(provider_id, usage)
        self._events.emit(
            PROVIDER_UPDATED, {"provider": provider_id, "usage": usage.to_dict()}
        )
        logger.debug("provider_refreshed", provider=provider_id)
        return usage

    def _record_failure(self, provider_id: "str", error: "Exception") -> "None":
        kind = getattr(error, "kind", "unexpected")
        if kind == "unexpected":
            logger.exception("provider_refresh_failed", provider=provider_id)
        else:
            logger.warning(
                "provider_refresh_failed",
                provider=provider_id,
                kind=kind,
                error=str(error),
            )
        self._metrics.inc_refresh_error(provider_id, kind)
        self._events.emit(PROVIDER_ERROR, {"provider": provider_id, "error": str(error)})
