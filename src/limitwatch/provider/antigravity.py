from limitwatch.errors import NotConfiguredError
from limitwatch.models import (
    AuthFlow,
    AuthMethod,
    AuthResponse,
    AuthStatus,
    NotAuthenticated,
    ProviderDescriptor,
    UsageData,
)

DESCRIPTOR = ProviderDescriptor(
    id="antigravity",
    display_name="Antigravity",
    website="https://antigravity.google",
    auth_methods=(AuthMethod.LOCAL,),
    has_session_limits=False,
    has_weekly_limits=False,
    has_credits=True,
    icon="antigravity",
)


class AntigravityProvider:
    """
    AntigravityProvider is a local service that needs no
    authentication. It has no usage source yet, so every read
    reports NotConfigured.
    """

    @property
    def descriptor(self) -> "ProviderDescriptor":
        return DESCRIPTOR

    async def close(self) -> "None":
        pass

    def is_authenticated(self) -> "bool":
        return False

    async def fetch_usage(self) -> "UsageData":
        raise NotConfiguredError()

    async def start_auth(self) -> "AuthFlow | None":
        raise NotConfiguredError()

    async def complete_auth(self, response: "AuthResponse") -> "None":
        raise NotConfiguredError()

    async def logout(self) -> "None":
        pass

    def auth_status(self) -> "AuthStatus":
        return NotAuthenticated()
