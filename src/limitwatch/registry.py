import asyncio
import threading

from limitwatch.models import ProviderDescriptor
from limitwatch.provider.base import UsageProvider


class ProviderHandle:
    """
    ProviderHandle pairs a provider with its own lock. Callers
    take the lock for anything that mutates credentials or hits
    the network, independently of the registry and of every
    other provider.
    """

    __slots__ = ("provider", "lock")

    def __init__(self, provider: "UsageProvider") -> "None":
        self.provider = provider
        self.lock: "asyncio.Lock" = asyncio.Lock()

    @property
    def id(self) -> "str":
        return self.provider.descriptor.id


class ProviderRegistry:
    """
    ProviderRegistry owns every provider instance and whether
    the user enabled it for background refreshes.

    Membership is fixed once startup registration is done; only
    the enabled flags change at runtime, so the registry lock
    guards just the flags and is never held across I/O.
    """

    def __init__(self) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        # insertion ordered, keyed by descriptor id
        self._handles: "dict[str, ProviderHandle]" = {}
        self._enabled: "dict[str, bool]" = {}

    def register(self, provider: "UsageProvider") -> "ProviderHandle":
        """
        adds a provider, disabled until the user opts in.
        """
        handle = ProviderHandle(provider)
        with self._lock:
            if handle.id in self._handles:
                raise ValueError(f"provider already registered: {handle.id}")
            self._handles[handle.id] = handle
            self._enabled[handle.id] = False
        return handle

    def get_provider(self, provider_id: "str") -> "ProviderHandle | None":
        return self._handles.get(provider_id)

    def is_enabled(self, provider_id: "str") -> "bool":
        with self._lock:
            return self._enabled.get(provider_id, False)

    def set_enabled(self, provider_id: "str", enabled: "bool") -> "bool":
        """
        sets the enabled flag of a registered provider. Unknown ids
        are ignored and return False.
        """
        with self._lock:
            if provider_id not in self._handles:
                return False
            self._enabled[provider_id] = enabled
            return True

    def all_provider_ids(self) -> "list[str]":
        return list(self._handles)

    def enabled_providers(self) -> "list[tuple[str, ProviderHandle]]":
        with self._lock:
            return [
                (provider_id, handle)
                for provider_id, handle in self._handles.items()
                if self._enabled.get(provider_id, False)
            ]

    def descriptors(self) -> "list[tuple[ProviderDescriptor, bool]]":
        with self._lock:
            enabled = dict(self._enabled)
        return [
            (handle.provider.descriptor, enabled.get(provider_id, False))
            for provider_id, handle in self._handles.items()
        ]

    async def close(self) -> "None":
        """
        closes all provider sessions.
        """
        for handle in self._handles.values():
            await handle.provider.close()
