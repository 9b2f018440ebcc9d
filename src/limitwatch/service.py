import asyncio

import structlog

from limitwatch.cache import CacheManager
from limitwatch.errors import ProviderNotFoundError
from limitwatch.models import (
    AuthFlow,
    AuthResponse,
    AuthStatus,
    ProviderDescriptor,
    ProviderStatus,
    UsageData,
)
from limitwatch.registry import ProviderHandle, ProviderRegistry
from limitwatch.scheduler import Scheduler
from limitwatch.secret_store import SecretStore, credential_key

logger = structlog.get_logger()


class UsageService:
    """
    UsageService is the set of on-demand operations a UI calls:
    reading cached usage, refreshing a single provider, toggling
    providers, and driving each provider's auth handshake.

    Refreshes go through the scheduler's refresh path, so an
    on-demand refresh and a background cycle never run the same
    provider concurrently.
    """

    def __init__(
        self,
        registry: "ProviderRegistry",
        cache: "CacheManager",
        scheduler: "Scheduler",
        secret_store: "SecretStore",
    ) -> "None":
        self._registry = registry
        self._cache = cache
        self._scheduler = scheduler
        self._secrets = secret_store

    def _handle(self, provider_id: "str") -> "ProviderHandle":
        handle = self._registry.get_provider(provider_id)
        if handle is None:
            raise ProviderNotFoundError(provider_id)
        return handle

    def _status(self, provider_id: "str") -> "ProviderStatus":
        usage = self._cache.get(provider_id) or UsageData()
        return ProviderStatus.from_usage(
            provider_id, usage, self._registry.is_enabled(provider_id)
        )

    def get_provider_status(self, provider_id: "str") -> "ProviderStatus":
        """
        returns the cached usage of a provider; providers never
        refreshed report zeroed usage.
        """
        return self._status(provider_id)

    def get_all_usage(self) -> "list[ProviderStatus]":
        return [
            self._status(provider_id)
            for provider_id in self._registry.all_provider_ids()
        ]

    async def refresh_provider(self, provider_id: "str") -> "ProviderStatus":
        """
        fetches fresh usage for one provider, whether or not it is
        enabled. Provider errors propagate to the caller.
        """
        handle = self._handle(provider_id)
        usage = await self._scheduler.refresh_provider(provider_id, handle)
        return ProviderStatus.from_usage(
            provider_id, usage, self._registry.is_enabled(provider_id)
        )

    async def save_credentials(
        self, provider_id: "str", credential_type: "str", value: "str"
    ) -> "None":
        key = credential_key(provider_id, credential_type)
        await asyncio.to_thread(self._secrets.set, key, value)
        logger.info("credentials_saved", provider=provider_id, key=key)

    def set_provider_enabled(self, provider_id: "str", enabled: "bool") -> "bool":
        changed = self._registry.set_enabled(provider_id, enabled)
        if changed:
            logger.info("provider_enabled_changed", provider=provider_id, enabled=enabled)
        return changed

    def list_providers(self) -> "list[tuple[ProviderDescriptor, bool]]":
        return self._registry.descriptors()

    async def start_auth(self, provider_id: "str") -> "AuthFlow | None":
        handle = self._handle(provider_id)
        async with handle.lock:
            return await handle.provider.start_auth()

    async def complete_auth(
        self, provider_id: "str", response: "AuthResponse"
    ) -> "None":
        """
        finishes an auth handshake. For device flows this polls
        until the user approves, holding only this provider's lock.
        """
        handle = self._handle(provider_id)
        async with handle.lock:
            await handle.provider.complete_auth(response)
        logger.info("provider_authenticated", provider=provider_id)

    async def logout(self, provider_id: "str") -> "None":
        """
        signs a provider out. A pending device flow holds the lock,
        so it is cancelled first.
        """
        handle = self._handle(provider_id)
        self.cancel_auth(provider_id)
        async with handle.lock:
            await handle.provider.logout()
        logger.info("provider_logged_out", provider=provider_id)

    def auth_status(self, provider_id: "str") -> "AuthStatus":
        # in-memory read, must stay available while a flow holds the lock
        return self._handle(provider_id).provider.auth_status()

    def cancel_auth(self, provider_id: "str") -> "bool":
        """
        asks a pending device flow to stop. Returns False for
        providers without a cancellable flow.
        """
        provider = self._handle(provider_id).provider
        cancel = getattr(provider, "cancel_auth", None)
        if cancel is None:
            return False
        cancel()
        return True
