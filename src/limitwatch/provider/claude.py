import asyncio
from typing import Any

import httpx
import structlog

from limitwatch.errors import (
    AuthFailedError,
    AuthRequiredError,
    ParseError,
    UpstreamError,
)
from limitwatch.models import (
    ApiKey,
    Authenticated,
    AuthError,
    AuthFlow,
    AuthMethod,
    AuthResponse,
    AuthStatus,
    Cookies,
    NotAuthenticated,
    OAuthCode,
    ProviderDescriptor,
    UsageData,
    parse_timestamp,
    utcnow,
)
from limitwatch.provider.base import USER_AGENT, check_status, json_body, json_object, send
from limitwatch.secret_store import CLAUDE_COOKIES, CLAUDE_OAUTH, SecretStore

logger = structlog.get_logger()

CLAUDE_OAUTH_USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
CLAUDE_WEB_BASE_URL = "https://claude.ai/api"
ANTHROPIC_BETA = "oauth-2025-04-20"

# utilization is reported in percent, so usage is expressed out of 100
PERCENT_LIMIT = 100

DESCRIPTOR = ProviderDescriptor(
    id="claude",
    display_name="Claude",
    website="https://claude.ai",
    auth_methods=(AuthMethod.OAUTH2, AuthMethod.COOKIES),
    has_session_limits=True,
    has_weekly_limits=True,
    has_credits=False,
    icon="claude",
)

INSTRUCTIONS = (
    "Claude accepts either an OAuth access token or a claude.ai session cookie.\n\n"
    "1. Sign in at claude.ai\n"
    "2. Paste your OAuth access token, or the value of the 'sessionKey' cookie\n"
    "3. Click 'Save' below"
)


def _window(data: "dict[str, Any]", key: "str") -> "tuple[int, Any]":
    """
    reads a usage window as (percent used, resets_at), clamped
    to non-negative whole percents.
    """
    window = data.get(key)
    if not isinstance(window, dict):
        return 0, None
    utilization = window.get("utilization")
    if isinstance(utilization, bool) or not isinstance(utilization, (int, float)):
        utilization = 0
    return max(0, round(utilization)), window.get("resets_at")


def usage_from_windows(data: "dict[str, Any]") -> "UsageData":
    """
    maps the five_hour/seven_day windows shared by the OAuth and
    web usage endpoints onto UsageData.
    """
    session_pct, session_reset = _window(data, "five_hour")
    weekly_pct, weekly_reset = _window(data, "seven_day")
    return UsageData(
        session_used=session_pct,
        session_limit=PERCENT_LIMIT if "five_hour" in data else 0,
        weekly_used=weekly_pct,
        weekly_limit=PERCENT_LIMIT if "seven_day" in data else 0,
        credits_remaining=None,
        reset_time=parse_timestamp(session_reset),
        weekly_reset_time=parse_timestamp(weekly_reset),
        last_updated=utcnow(),
        error=None,
    )


class ClaudeProvider:
    """
    ClaudeProvider reads the five-hour session and seven-day
    windows of a Claude subscription. It authenticates with an
    OAuth access token when one is stored, otherwise with a
    claude.ai session cookie.
    """

    def __init__(self, secret_store: "SecretStore") -> "None":
        self._secrets = secret_store
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            timeout=10.0,
            headers={"User-Agent": USER_AGENT},
        )
        self._oauth_token: "str | None" = None
        self._cookies: "str | None" = None
        self._auth_error: "str | None" = None
        # resolved lazily from the cookie session
        self._organization_id: "str | None" = None

        self._oauth_token = self._load(CLAUDE_OAUTH)
        self._cookies = self._load(CLAUDE_COOKIES)

    def _load(self, key: "str") -> "str | None":
        try:
            return self._secrets.get(key)
        except Exception:
            logger.warning("claude_credentials_load_failed", key=key, exc_info=True)
            return None

    @property
    def descriptor(self) -> "ProviderDescriptor":
        return DESCRIPTOR

    async def close(self) -> "None":
        await self._client.aclose()

    def is_authenticated(self) -> "bool":
        return self._oauth_token is not None or self._cookies is not None

    async def fetch_usage(self) -> "UsageData":
        if self._oauth_token is not None:
            return await self._fetch_oauth_usage(self._oauth_token)
        if self._cookies is not None:
            return await self._fetch_web_usage(self._cookies)
        raise AuthRequiredError()

    async def _fetch_oauth_usage(self, token: "str") -> "UsageData":
        resp = await send(
            self._client,
            "GET",
            CLAUDE_OAUTH_USAGE_URL,
            headers={
                "Authorization": f"Bearer {token}",
                "anthropic-beta": ANTHROPIC_BETA,
                "Accept": "application/json",
            },
        )
        check_status(resp)
        return usage_from_windows(json_object(resp))

    async def _fetch_web_usage(self, cookies: "str") -> "UsageData":
        headers = {"Cookie": _cookie_header(cookies), "Accept": "application/json"}

        if self._organization_id is None:
            self._organization_id = await self._resolve_organization(headers)

        resp = await send(
            self._client,
            "GET",
            f"{CLAUDE_WEB_BASE_URL}/organizations/{self._organization_id}/usage",
            headers=headers,
        )
        check_status(resp, forbidden_reason="Session cookie rejected")
        return usage_from_windows(json_object(resp))

    async def _resolve_organization(self, headers: "dict[str, str]") -> "str":
        resp = await send(
            self._client,
            "GET",
            f"{CLAUDE_WEB_BASE_URL}/organizations",
            headers=headers,
        )
        check_status(resp, forbidden_reason="Session cookie rejected")
        organizations = json_body(resp)
        if not isinstance(organizations, list):
            raise ParseError("expected a list of organizations")

        for org in organizations:
            if isinstance(org, dict) and org.get("uuid"):
                return str(org["uuid"])
        raise UpstreamError("No Claude organization found")

    async def start_auth(self) -> "AuthFlow | None":
        self._auth_error = None
        return AuthFlow(
            url="https://claude.ai",
            user_code=None,
            instructions=INSTRUCTIONS,
            poll_interval=None,
        )

    async def complete_auth(self, response: "AuthResponse") -> "None":
        if isinstance(response, (OAuthCode, ApiKey)):
            key = CLAUDE_OAUTH
            value = (response.code if isinstance(response, OAuthCode) else response.key).strip()
        elif isinstance(response, Cookies):
            key = CLAUDE_COOKIES
            value = response.value.strip()
        else:
            self._auth_error = "Claude needs an OAuth token or a session cookie"
            raise AuthFailedError(self._auth_error)

        if not value:
            self._auth_error = "Empty credential"
            raise AuthFailedError(self._auth_error)

        try:
            await asyncio.to_thread(self._secrets.set, key, value)
        except Exception as e:
            self._auth_error = f"Could not store credential: {e}"
            raise UpstreamError(self._auth_error) from e

        if key == CLAUDE_OAUTH:
            self._oauth_token = value
        else:
            self._cookies = value
            self._organization_id = None
        self._auth_error = None
        logger.info("claude_authenticated", method=key)

    async def logout(self) -> "None":
        self._oauth_token = None
        self._cookies = None
        self._organization_id = None
        self._auth_error = None
        failures = []
        for key in (CLAUDE_OAUTH, CLAUDE_COOKIES):
            try:
                await asyncio.to_thread(self._secrets.delete, key)
            except Exception as e:
                failures.append(f"{key}: {e}")
        if failures:
            raise UpstreamError(
                "Could not delete credentials: " + "; ".join(failures)
            )

    def auth_status(self) -> "AuthStatus":
        if self._auth_error is not None:
            return AuthError(message=self._auth_error)
        if self._oauth_token is not None:
            return Authenticated(user="via OAuth token", expires=None)
        if self._cookies is not None:
            return Authenticated(user="via claude.ai session", expires=None)
        return NotAuthenticated()


def _cookie_header(value: "str") -> "str":
    """
    accepts either a full Cookie header or a bare sessionKey value.
    """
    if "=" in value:
        return value
    return f"sessionKey={value}"
