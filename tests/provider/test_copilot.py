import httpx
import pytest
import respx

from limitwatch.errors import (
    AuthFailedError,
    AuthRequiredError,
    NetworkError,
    ParseError,
    RateLimitedError,
    TokenExpiredError,
    UpstreamError,
)
from limitwatch.models import (
    Authenticated,
    Authenticating,
    AuthError,
    DeviceFlowComplete,
    NotAuthenticated,
)
from limitwatch.provider.copilot import (
    COPILOT_USAGE_URL,
    GITHUB_DEVICE_CODE_URL,
    GITHUB_TOKEN_URL,
    CopilotProvider,
)
from limitwatch.secret_store import COPILOT_TOKEN


def _record_waits(provider: "CopilotProvider") -> "list[int]":
    """
    replaces the poll wait with an instant one that records
    each requested interval.
    """
    waits: "list[int]" = []

    async def _wait(seconds: "int") -> "bool":
        waits.append(seconds)
        return False

    provider._wait = _wait
    return waits


def _mock_device_code(interval: "int" = 5, expires_in: "int" = 900) -> "None":
    respx.post(GITHUB_DEVICE_CODE_URL).mock(
        return_value=httpx.Response(
            200,
            json={
                "device_code": "dev-123",
                "user_code": "ABCD-1234",
                "verification_uri": "https://github.com/login/device",
                "interval": interval,
                "expires_in": expires_in,
            },
        )
    )


class TestCopilotFetchUsage:
    @pytest.mark.asyncio
    @respx.mock
    async def test_maps_usage(self, secret_store: "object") -> "None":
        secret_store.set(COPILOT_TOKEN, "gho_token")
        route = respx.get(COPILOT_USAGE_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "chat_completions": 120,
                    "chat_completions_limit": 300,
                    "premium_requests": 40,
                    "premium_requests_limit": 50,
                    "resets_at": "2025-02-01T00:00:00Z",
                },
            )
        )

        provider = CopilotProvider(secret_store)
        usage = await provider.fetch_usage()

        assert route.calls.last.request.headers["Authorization"] == "Bearer gho_token"
        assert (usage.session_used, usage.session_limit) == (120, 300)
        assert (usage.weekly_used, usage.weekly_limit) == (40, 50)
        assert usage.reset_time == usage.weekly_reset_time
        assert usage.reset_time.year == 2025
        assert usage.error is None

    @pytest.mark.asyncio
    async def test_requires_token(self, secret_store: "object") -> "None":
        with pytest.raises(AuthRequiredError):
            await CopilotProvider(secret_store).fetch_usage()

    @pytest.mark.parametrize(
        ("response", "error"),
        [
            (httpx.Response(401), TokenExpiredError),
            (httpx.Response(403), AuthFailedError),
            (httpx.Response(500), UpstreamError),
            (httpx.Response(200, text="<html>"), ParseError),
        ],
    )
    @pytest.mark.asyncio
    @respx.mock
    async def test_status_translation(
        self,
        secret_store: "object",
        response: "httpx.Response",
        error: "type[Exception]",
    ) -> "None":
        secret_store.set(COPILOT_TOKEN, "gho_token")
        respx.get(COPILOT_USAGE_URL).mock(return_value=response)
        with pytest.raises(error):
            await CopilotProvider(secret_store).fetch_usage()

    @pytest.mark.asyncio
    @respx.mock
    async def test_rate_limit_reads_retry_after(self, secret_store: "object") -> "None":
        secret_store.set(COPILOT_TOKEN, "gho_token")
        respx.get(COPILOT_USAGE_URL).mock(
            side_effect=[
                httpx.Response(429, headers={"retry-after": "17"}),
                httpx.Response(429),
            ]
        )
        provider = CopilotProvider(secret_store)

        with pytest.raises(RateLimitedError) as first:
            await provider.fetch_usage()
        assert first.value.retry_after_seconds == 17

        with pytest.raises(RateLimitedError) as second:
            await provider.fetch_usage()
        assert second.value.retry_after_seconds == 60

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_failure(self, secret_store: "object") -> "None":
        secret_store.set(COPILOT_TOKEN, "gho_token")
        respx.get(COPILOT_USAGE_URL).mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(NetworkError):
            await CopilotProvider(secret_store).fetch_usage()


class TestCopilotDeviceFlow:
    @pytest.mark.asyncio
    @respx.mock
    async def test_start_auth_returns_flow(self, secret_store: "object") -> "None":
        _mock_device_code(interval=7)
        provider = CopilotProvider(secret_store)

        flow = await provider.start_auth()

        assert flow.user_code == "ABCD-1234"
        assert flow.url == "https://github.com/login/device"
        assert flow.poll_interval == 7
        assert provider.auth_status() == Authenticating(
            message="Waiting for GitHub authorization..."
        )

    @pytest.mark.asyncio
    async def test_complete_without_pending(self, secret_store: "object") -> "None":
        with pytest.raises(AuthFailedError, match="No pending auth"):
            await CopilotProvider(secret_store).complete_auth(DeviceFlowComplete())

    @pytest.mark.asyncio
    @respx.mock
    async def test_slow_down_backoff_and_token(self, secret_store: "object") -> "None":
        _mock_device_code(interval=5)
        respx.post(GITHUB_TOKEN_URL).mock(
            side_effect=[
                httpx.Response(200, json={"error": "authorization_pending"}),
                httpx.Response(200, json={"error": "slow_down"}),
                httpx.Response(200, json={"error": "slow_down"}),
                httpx.Response(200, json={"error": "slow_down"}),
                httpx.Response(200, json={"access_token": "gho_new"}),
            ]
        )
        provider = CopilotProvider(secret_store)
        waits = _record_waits(provider)

        await provider.start_auth()
        await provider.complete_auth(DeviceFlowComplete())

        assert waits == [5, 5, 10, 15, 20]
        assert provider.poll_interval == 20
        assert secret_store.get(COPILOT_TOKEN) == "gho_new"
        assert provider.is_authenticated() is True
        assert provider.auth_status() == Authenticated(user=None, expires=None)

    @pytest.mark.asyncio
    @respx.mock
    async def test_expired_token_is_terminal(self, secret_store: "object") -> "None":
        _mock_device_code()
        route = respx.post(GITHUB_TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"error": "expired_token"})
        )
        provider = CopilotProvider(secret_store)
        _record_waits(provider)

        await provider.start_auth()
        with pytest.raises(AuthFailedError, match="Device code expired"):
            await provider.complete_auth(DeviceFlowComplete())

        assert route.call_count == 1
        assert provider.auth_status() == AuthError(
            message="Authentication failed: Device code expired"
        )
        assert secret_store.get(COPILOT_TOKEN) is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_other_error_uses_description(self, secret_store: "object") -> "None":
        _mock_device_code()
        respx.post(GITHUB_TOKEN_URL).mock(
            return_value=httpx.Response(
                200,
                json={"error": "access_denied", "error_description": "User said no"},
            )
        )
        provider = CopilotProvider(secret_store)
        _record_waits(provider)

        await provider.start_auth()
        with pytest.raises(AuthFailedError, match="User said no"):
            await provider.complete_auth(DeviceFlowComplete())

    @pytest.mark.asyncio
    @respx.mock
    async def test_deadline_expires_before_poll(self, secret_store: "object") -> "None":
        _mock_device_code(expires_in=1)
        route = respx.post(GITHUB_TOKEN_URL)
        provider = CopilotProvider(secret_store)
        _record_waits(provider)

        await provider.start_auth()
        provider._pending.deadline = 0.0
        with pytest.raises(AuthFailedError, match="Device code expired"):
            await provider.complete_auth(DeviceFlowComplete())
        assert route.call_count == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_cancel_stops_polling(self, secret_store: "object") -> "None":
        _mock_device_code(interval=30)
        route = respx.post(GITHUB_TOKEN_URL)
        provider = CopilotProvider(secret_store)

        await provider.start_auth()
        provider.cancel_auth()
        with pytest.raises(AuthFailedError, match="Authorization cancelled"):
            await provider.complete_auth(DeviceFlowComplete())
        assert route.call_count == 0


class TestCopilotLogout:
    @pytest.mark.asyncio
    async def test_logout_is_idempotent(self, secret_store: "object") -> "None":
        secret_store.set(COPILOT_TOKEN, "gho_token")
        provider = CopilotProvider(secret_store)
        assert provider.is_authenticated() is True

        await provider.logout()
        await provider.logout()

        assert provider.is_authenticated() is False
        assert secret_store.get(COPILOT_TOKEN) is None
        assert provider.auth_status() == NotAuthenticated()
