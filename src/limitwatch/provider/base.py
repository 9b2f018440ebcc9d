from typing import Any, Protocol

import httpx

from limitwatch.errors import (
    AuthFailedError,
    NetworkError,
    ParseError,
    RateLimitedError,
    TokenExpiredError,
    UpstreamError,
)
from limitwatch.models import (
    AuthFlow,
    AuthResponse,
    AuthStatus,
    ProviderDescriptor,
    UsageData,
)

USER_AGENT = "LimitsWatcher/1.0"
DEFAULT_RETRY_AFTER_SECONDS = 60


class UsageProvider(Protocol):
    """
    UsageProvider stands as a common protocol that all
    quota-tracking integrations must satisfy.

    Only fetch_usage and the auth operations may touch the
    network. descriptor, is_authenticated and auth_status read
    in-memory state and never block.
    """

    @property
    def descriptor(self) -> "ProviderDescriptor": ...

    def is_authenticated(self) -> "bool": ...

    async def fetch_usage(self) -> "UsageData": ...

    async def start_auth(self) -> "AuthFlow | None": ...

    async def complete_auth(self, response: "AuthResponse") -> "None": ...

    async def logout(self) -> "None": ...

    def auth_status(self) -> "AuthStatus": ...

    async def close(self) -> "None": ...


def retry_after_seconds(resp: "httpx.Response") -> "int":
    """
    reads the retry-after header, falling back to 60 seconds when
    it is missing or not a number of seconds.
    """
    raw = resp.headers.get("retry-after")
    if raw is None:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(0, int(raw.strip()))
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS


def check_status(
    resp: "httpx.Response",
    forbidden_reason: "str" = "Access denied",
) -> "None":
    """
    translates error status codes into provider errors:
    401 -> TokenExpired, 403 -> AuthFailed, 429 -> RateLimited,
    any other 4xx/5xx -> UpstreamError.
    """
    status = resp.status_code
    if status == 401:
        raise TokenExpiredError()
    if status == 403:
        raise AuthFailedError(forbidden_reason)
    if status == 429:
        raise RateLimitedError(retry_after_seconds(resp))
    if status >= 400:
        raise UpstreamError(f"HTTP {status}")


async def send(
    client: "httpx.AsyncClient",
    method: "str",
    url: "str",
    **kwargs: "Any",
) -> "httpx.Response":
    """
    sends a request, turning transport failures into NetworkError.
    """
    try:
        return await client.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        raise NetworkError(str(e) or type(e).__name__) from e


def json_body(resp: "httpx.Response") -> "Any":
    try:
        return resp.json()
    except ValueError as e:
        raise ParseError(str(e)) from e


def json_object(resp: "httpx.Response") -> "dict[str, Any]":
    """
    decodes the body and requires a JSON object at the top level.
    """
    data = json_body(resp)
    if not isinstance(data, dict):
        raise ParseError(f"expected a JSON object, got {type(data).__name__}")
    return data


def as_count(value: "Any") -> "int":
    """
    coerces an upstream counter to a non-negative int, treating
    missing or malformed values as 0.
    """
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(value))
    return 0
