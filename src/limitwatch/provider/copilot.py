import asyncio
import time
from typing import Any

import httpx
import structlog

from limitwatch.errors import (
    AuthFailedError,
    AuthRequiredError,
    ParseError,
    ProviderError,
    UpstreamError,
)
from limitwatch.models import (
    Authenticated,
    Authenticating,
    AuthError,
    AuthFlow,
    AuthMethod,
    AuthResponse,
    AuthStatus,
    NotAuthenticated,
    ProviderDescriptor,
    UsageData,
    parse_timestamp,
    utcnow,
)
from limitwatch.provider.base import (
    USER_AGENT,
    as_count,
    check_status,
    json_object,
    send,
)
from limitwatch.secret_store import COPILOT_TOKEN, SecretStore

logger = structlog.get_logger()

GITHUB_DEVICE_CODE_URL = "https://github.com/login/device/code"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
COPILOT_USAGE_URL = "https://api.github.com/copilot/usage"
CLIENT_ID = "Iv1.b507a08c87ecfe98"

DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
DEFAULT_POLL_INTERVAL = 5
# added to the poll interval on every slow_down answer
SLOW_DOWN_INCREMENT = 5
DEFAULT_DEVICE_CODE_TTL = 900

DESCRIPTOR = ProviderDescriptor(
    id="copilot",
    display_name="GitHub Copilot",
    website="https://github.com/features/copilot",
    auth_methods=(AuthMethod.DEVICE_FLOW,),
    has_session_limits=True,
    # monthly premium requests, reported as the weekly window
    has_weekly_limits=True,
    has_credits=False,
    icon="copilot",
)


class _PendingDeviceCode:
    __slots__ = ("device_code", "deadline")

    def __init__(self, device_code: "str", deadline: "float") -> "None":
        self.device_code = device_code
        # time.monotonic() value after which the code is dead
        self.deadline = deadline


class CopilotProvider:
    """
    CopilotProvider tracks GitHub Copilot usage. It signs in
    through the OAuth2 device flow: start_auth registers a device
    code and returns the user code to enter on github.com, and
    complete_auth polls the token endpoint until the user has
    approved, the code expires or the flow is cancelled.
    """

    def __init__(
        self,
        secret_store: "SecretStore",
        client_id: "str" = CLIENT_ID,
    ) -> "None":
        self._secrets = secret_store
        self._client_id = client_id
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            timeout=10.0,
            headers={"User-Agent": USER_AGENT},
        )
        self._token: "str | None" = None
        self._pending: "_PendingDeviceCode | None" = None
        self._auth_error: "str | None" = None
        self._cancel_event: "asyncio.Event" = asyncio.Event()
        self.poll_interval: "int" = DEFAULT_POLL_INTERVAL

        try:
            self._token = secret_store.get(COPILOT_TOKEN)
        except Exception:
            logger.warning("copilot_token_load_failed", exc_info=True)

    @property
    def descriptor(self) -> "ProviderDescriptor":
        return DESCRIPTOR

    async def close(self) -> "None":
        await self._client.aclose()

    def is_authenticated(self) -> "bool":
        return self._token is not None

    async def fetch_usage(self) -> "UsageData":
        if self._token is None:
            raise AuthRequiredError()

        resp = await send(
            self._client,
            "GET",
            COPILOT_USAGE_URL,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )
        check_status(resp, forbidden_reason="Copilot not enabled")
        data = json_object(resp)

        reset_time = parse_timestamp(data.get("resets_at"))
        return UsageData(
            session_used=as_count(data.get("chat_completions")),
            session_limit=as_count(data.get("chat_completions_limit")),
            weekly_used=as_count(data.get("premium_requests")),
            weekly_limit=as_count(data.get("premium_requests_limit")),
            credits_remaining=None,
            reset_time=reset_time,
            weekly_reset_time=reset_time,
            last_updated=utcnow(),
            error=None,
        )

    async def start_auth(self) -> "AuthFlow | None":
        resp = await send(
            self._client,
            "POST",
            GITHUB_DEVICE_CODE_URL,
            headers={"Accept": "application/json"},
            data={"client_id": self._client_id, "scope": "read:user"},
        )
        check_status(resp)
        data = json_object(resp)

        try:
            device_code = str(data["device_code"])
            user_code = str(data["user_code"])
            verification_uri = str(data["verification_uri"])
        except KeyError as e:
            raise ParseError(f"device code response missing {e.args[0]}") from e

        interval = as_count(data.get("interval")) or DEFAULT_POLL_INTERVAL
        expires_in = as_count(data.get("expires_in")) or DEFAULT_DEVICE_CODE_TTL

        self._pending = _PendingDeviceCode(
            device_code, time.monotonic() + expires_in
        )
        self.poll_interval = interval
        self._auth_error = None
        self._cancel_event.clear()
        logger.info("copilot_device_flow_started", poll_interval=interval)

        return AuthFlow(
            url=verification_uri,
            user_code=user_code,
            instructions="Visit the URL and enter the code to authenticate with GitHub.",
            poll_interval=interval,
        )

    async def complete_auth(self, response: "AuthResponse") -> "None":
        pending = self._pending
        if pending is None:
            raise AuthFailedError("No pending auth")

        try:
            token = await self._poll_for_token(pending)
        except ProviderError as e:
            self._pending = None
            self._auth_error = str(e)
            raise

        # persist first so a failed write leaves no half-signed-in state
        try:
            await asyncio.to_thread(self._secrets.set, COPILOT_TOKEN, token)
        except Exception as e:
            self._pending = None
            self._auth_error = f"Could not store token: {e}"
            raise UpstreamError(f"Could not store token: {e}") from e

        self._token = token
        self._pending = None
        self._auth_error = None
        logger.info("copilot_authenticated")

    def cancel_auth(self) -> "None":
        """
        asks a running device-flow poll to stop at its next wait.
        An in-flight token request is allowed to finish.
        """
        self._cancel_event.set()

    async def _wait(self, seconds: "int") -> "bool":
        """
        sleeps between polls. Returns True if cancelled meanwhile.
        """
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def _poll_for_token(self, pending: "_PendingDeviceCode") -> "str":
        while True:
            if await self._wait(self.poll_interval):
                raise AuthFailedError("Authorization cancelled")
            if time.monotonic() >= pending.deadline:
                raise AuthFailedError("Device code expired")

            resp = await send(
                self._client,
                "POST",
                GITHUB_TOKEN_URL,
                headers={"Accept": "application/json"},
                data={
                    "client_id": self._client_id,
                    "device_code": pending.device_code,
                    "grant_type": DEVICE_GRANT_TYPE,
                },
            )
            data: "dict[str, Any]" = json_object(resp)

            token = data.get("access_token")
            if token:
                return str(token)

            error = data.get("error")
            if error is None or error == "authorization_pending":
                continue
            if error == "slow_down":
                self.poll_interval += SLOW_DOWN_INCREMENT
                logger.debug("copilot_slow_down", poll_interval=self.poll_interval)
                continue
            if error == "expired_token":
                raise AuthFailedError("Device code expired")
            raise AuthFailedError(str(data.get("error_description") or error))

    async def logout(self) -> "None":
        self._token = None
        self._pending = None
        self._auth_error = None
        try:
            await asyncio.to_thread(self._secrets.delete, COPILOT_TOKEN)
        except Exception as e:
            raise UpstreamError(f"Could not delete token: {e}") from e

    def auth_status(self) -> "AuthStatus":
        if self._pending is not None:
            return Authenticating(message="Waiting for GitHub authorization...")
        if self._auth_error is not None:
            return AuthError(message=self._auth_error)
        if self._token is not None:
            return Authenticated(user=None, expires=None)
        return NotAuthenticated()
