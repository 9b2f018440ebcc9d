import asyncio
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from limitwatch.cache import CacheManager
from limitwatch.errors import NetworkError, ProviderNotFoundError
from limitwatch.events import EventBus
from limitwatch.metrics import MetricsUpdater
from limitwatch.models import (
    ApiKey,
    Authenticated,
    AuthFlow,
    AuthMethod,
    AuthStatus,
    NotAuthenticated,
    ProviderDescriptor,
    UsageData,
)
from limitwatch.notifications import LoggingNotificationSink, ThresholdNotifier
from limitwatch.registry import ProviderRegistry
from limitwatch.scheduler import Scheduler
from limitwatch.service import UsageService


class MockProvider:
    def __init__(self, provider_id: "str", error: "Exception | None" = None) -> "None":
        self._descriptor = ProviderDescriptor(
            id=provider_id,
            display_name=provider_id,
            website="https://example.com",
            auth_methods=(AuthMethod.API_KEY,),
            has_session_limits=True,
            has_weekly_limits=False,
            has_credits=False,
            icon=provider_id,
        )
        self._error = error
        self.key: "str | None" = None
        self.in_auth = asyncio.Event()
        self.release = asyncio.Event()
        self.block_auth = False

    @property
    def descriptor(self) -> "ProviderDescriptor":
        return self._descriptor

    def is_authenticated(self) -> "bool":
        return self.key is not None

    async def fetch_usage(self) -> "UsageData":
        if self._error is not None:
            raise self._error
        return UsageData(session_used=4, session_limit=8)

    async def start_auth(self) -> "AuthFlow":
        return AuthFlow(url="https://example.com", instructions="paste a key")

    async def complete_auth(self, response: "ApiKey") -> "None":
        if self.block_auth:
            self.in_auth.set()
            await self.release.wait()
        self.key = response.key

    async def logout(self) -> "None":
        self.key = None

    def auth_status(self) -> "AuthStatus":
        if self.key is None:
            return NotAuthenticated()
        return Authenticated(user="tester")

    async def close(self) -> "None":
        pass


class CancellableProvider(MockProvider):
    def __init__(self, provider_id: "str") -> "None":
        super().__init__(provider_id)
        self.cancelled = False

    def cancel_auth(self) -> "None":
        self.cancelled = True
        self.release.set()


@pytest.fixture()
def service_parts(
    tmp_path: "Path",
    registry: "CollectorRegistry",
    secret_store: "object",
) -> "tuple[UsageService, ProviderRegistry, CacheManager]":
    providers = ProviderRegistry()
    providers.register(MockProvider("copilot"))
    providers.register(MockProvider("claude", error=NetworkError("down")))
    providers.register(CancellableProvider("device"))
    cache = CacheManager(tmp_path)
    scheduler = Scheduler(
        providers,
        cache,
        ThresholdNotifier(LoggingNotificationSink()),
        EventBus(),
        MetricsUpdater(registry=registry),
    )
    return UsageService(providers, cache, scheduler, secret_store), providers, cache


class TestUsageStatus:
    def test_unrefreshed_provider_reports_zeroes(
        self, service_parts: "tuple[UsageService, ProviderRegistry, CacheManager]"
    ) -> "None":
        service, _, _ = service_parts
        status = service.get_provider_status("copilot")
        assert status.provider == "copilot"
        assert status.enabled is False
        assert status.session_used == 0
        assert status.error is None

    def test_get_all_usage_follows_registration_order(
        self, service_parts: "tuple[UsageService, ProviderRegistry, CacheManager]"
    ) -> "None":
        service, _, cache = service_parts
        cache.set("claude", UsageData(weekly_used=7, weekly_limit=100))
        statuses = service.get_all_usage()
        assert [s.provider for s in statuses] == ["copilot", "claude", "device"]
        assert statuses[1].weekly_used == 7

    def test_set_provider_enabled(
        self, service_parts: "tuple[UsageService, ProviderRegistry, CacheManager]"
    ) -> "None":
        service, providers, _ = service_parts
        assert service.set_provider_enabled("copilot", True) is True
        assert service.set_provider_enabled("unknown", True) is False
        assert providers.is_enabled("copilot") is True
        assert [(d.id, e) for d, e in service.list_providers()][0] == ("copilot", True)


class TestRefreshProvider:
    @pytest.mark.asyncio
    async def test_refresh_updates_cache(
        self, service_parts: "tuple[UsageService, ProviderRegistry, CacheManager]"
    ) -> "None":
        service, _, cache = service_parts
        status = await service.refresh_provider("copilot")
        assert status.session_used == 4
        assert cache.get("copilot").session_limit == 8

    @pytest.mark.asyncio
    async def test_unknown_provider(
        self, service_parts: "tuple[UsageService, ProviderRegistry, CacheManager]"
    ) -> "None":
        service, _, _ = service_parts
        with pytest.raises(ProviderNotFoundError, match="Provider 'nope' not found"):
            await service.refresh_provider("nope")

    @pytest.mark.asyncio
    async def test_provider_error_propagates(
        self, service_parts: "tuple[UsageService, ProviderRegistry, CacheManager]"
    ) -> "None":
        service, _, cache = service_parts
        with pytest.raises(NetworkError):
            await service.refresh_provider("claude")
        assert cache.get("claude") is None


class TestCredentials:
    @pytest.mark.asyncio
    async def test_save_credentials_key(
        self,
        service_parts: "tuple[UsageService, ProviderRegistry, CacheManager]",
        secret_store: "object",
    ) -> "None":
        service, _, _ = service_parts
        await service.save_credentials("claude", "cookies", "sessionKey=abc")
        assert secret_store.get("claude_cookies") == "sessionKey=abc"


class TestAuth:
    @pytest.mark.asyncio
    async def test_auth_round_trip(
        self, service_parts: "tuple[UsageService, ProviderRegistry, CacheManager]"
    ) -> "None":
        service, _, _ = service_parts
        flow = await service.start_auth("copilot")
        assert flow.instructions == "paste a key"

        await service.complete_auth("copilot", ApiKey("k"))
        assert service.auth_status("copilot") == Authenticated(user="tester")

        await service.logout("copilot")
        assert service.auth_status("copilot") == NotAuthenticated()

    @pytest.mark.asyncio
    async def test_auth_status_available_during_pending_auth(
        self, service_parts: "tuple[UsageService, ProviderRegistry, CacheManager]"
    ) -> "None":
        service, providers, _ = service_parts
        provider = providers.get_provider("copilot").provider
        provider.block_auth = True

        task = asyncio.create_task(service.complete_auth("copilot", ApiKey("k")))
        await asyncio.wait_for(provider.in_auth.wait(), timeout=1)
        assert providers.get_provider("copilot").lock.locked()
        assert service.auth_status("copilot") == NotAuthenticated()

        provider.release.set()
        await asyncio.wait_for(task, timeout=1)
        assert service.auth_status("copilot") == Authenticated(user="tester")

    def test_cancel_auth(
        self, service_parts: "tuple[UsageService, ProviderRegistry, CacheManager]"
    ) -> "None":
        service, providers, _ = service_parts
        assert service.cancel_auth("device") is True
        assert providers.get_provider("device").provider.cancelled is True
        assert service.cancel_auth("copilot") is False

    @pytest.mark.asyncio
    async def test_logout_cancels_pending_flow(
        self, service_parts: "tuple[UsageService, ProviderRegistry, CacheManager]"
    ) -> "None":
        service, providers, _ = service_parts
        provider = providers.get_provider("device").provider
        provider.block_auth = True

        flow = asyncio.create_task(service.complete_auth("device", ApiKey("k")))
        await asyncio.wait_for(provider.in_auth.wait(), timeout=1)

        await asyncio.wait_for(service.logout("device"), timeout=1)

        assert provider.cancelled is True
        assert flow.done()
        assert service.auth_status("device") == NotAuthenticated()

    def test_auth_status_unknown_provider(
        self, service_parts: "tuple[UsageService, ProviderRegistry, CacheManager]"
    ) -> "None":
        service, _, _ = service_parts
        with pytest.raises(ProviderNotFoundError):
            service.auth_status("nope")
