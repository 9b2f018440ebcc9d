from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Union


def utcnow() -> "datetime":
    return datetime.now(timezone.utc)


def parse_timestamp(value: "Any") -> "datetime | None":
    """
    parses an ISO-8601 string into an aware UTC datetime. Returns
    None for anything that is not a parseable string.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        dt = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: "datetime | None") -> "str | None":
    return value.isoformat() if value is not None else None


class AuthMethod(str, Enum):
    DEVICE_FLOW = "device_flow"
    OAUTH2 = "oauth2"
    API_KEY = "api_key"
    COOKIES = "cookies"
    LOCAL = "local"
    CLI_DELEGATED = "cli_delegated"


@dataclass(frozen=True, slots=True)
class ProviderDescriptor:
    """
    ProviderDescriptor holds the static metadata of a
    provider integration. One instance per provider class.
    """

    # stable lowercase identifier, used as registry and cache key
    id: "str"
    display_name: "str"
    website: "str"
    # in order of preference
    auth_methods: "tuple[AuthMethod, ...]"
    has_session_limits: "bool"
    has_weekly_limits: "bool"
    has_credits: "bool"
    icon: "str"

    def to_dict(self) -> "dict[str, Any]":
        return {
            "id": self.id,
            "display_name": self.display_name,
            "website": self.website,
            "auth_methods": [m.value for m in self.auth_methods],
            "has_session_limits": self.has_session_limits,
            "has_weekly_limits": self.has_weekly_limits,
            "has_credits": self.has_credits,
            "icon": self.icon,
        }


@dataclass(frozen=True, slots=True)
class ModelQuota:
    model_id: "str"
    # 0-100
    percent_left: "float"
    reset_time: "datetime | None" = None

    def to_dict(self) -> "dict[str, Any]":
        return {
            "model_id": self.model_id,
            "percent_left": self.percent_left,
            "reset_time": format_timestamp(self.reset_time),
        }

    @classmethod
    def from_dict(cls, raw: "dict[str, Any]") -> "ModelQuota":
        return cls(
            model_id=str(raw["model_id"]),
            percent_left=float(raw["percent_left"]),
            reset_time=parse_timestamp(raw.get("reset_time")),
        )


@dataclass(frozen=True, slots=True)
class UsageData:
    """
    UsageData is the normalized quota state of a single
    provider. It is replaced wholesale on every successful
    fetch, never patched.

    A limit of 0 means the provider does not report that limit,
    so ratios must be guarded against it. Used values may
    legitimately exceed their limit.
    """

    session_used: "int" = 0
    session_limit: "int" = 0
    weekly_used: "int" = 0
    weekly_limit: "int" = 0
    credits_remaining: "int | None" = None
    reset_time: "datetime | None" = None
    weekly_reset_time: "datetime | None" = None
    last_updated: "datetime" = field(default_factory=utcnow)
    error: "str | None" = None
    model_quotas: "list[ModelQuota] | None" = None

    def session_ratio(self) -> "float | None":
        if self.session_limit <= 0:
            return None
        return self.session_used / self.session_limit

    def weekly_ratio(self) -> "float | None":
        if self.weekly_limit <= 0:
            return None
        return self.weekly_used / self.weekly_limit

    def to_dict(self) -> "dict[str, Any]":
        return {
            "session_used": self.session_used,
            "session_limit": self.session_limit,
            "weekly_used": self.weekly_used,
            "weekly_limit": self.weekly_limit,
            "credits_remaining": self.credits_remaining,
            "reset_time": format_timestamp(self.reset_time),
            "weekly_reset_time": format_timestamp(self.weekly_reset_time),
            "last_updated": format_timestamp(self.last_updated),
            "error": self.error,
            "model_quotas": (
                [q.to_dict() for q in self.model_quotas]
                if self.model_quotas is not None
                else None
            ),
        }

    @classmethod
    def from_dict(cls, raw: "dict[str, Any]") -> "UsageData":
        quotas = raw.get("model_quotas")
        last_updated = parse_timestamp(raw.get("last_updated"))
        return cls(
            session_used=int(raw.get("session_used", 0)),
            session_limit=int(raw.get("session_limit", 0)),
            weekly_used=int(raw.get("weekly_used", 0)),
            weekly_limit=int(raw.get("weekly_limit", 0)),
            credits_remaining=raw.get("credits_remaining"),
            reset_time=parse_timestamp(raw.get("reset_time")),
            weekly_reset_time=parse_timestamp(raw.get("weekly_reset_time")),
            last_updated=last_updated if last_updated is not None else utcnow(),
            error=raw.get("error"),
            model_quotas=(
                [ModelQuota.from_dict(q) for q in quotas]
                if quotas is not None
                else None
            ),
        )


@dataclass(frozen=True, slots=True)
class AuthFlow:
    """
    AuthFlow tells the UI how to drive an interactive
    authentication. Produced by start_auth, consumed once
    by complete_auth.
    """

    url: "str"
    instructions: "str"
    user_code: "str | None" = None
    # seconds, device flow only
    poll_interval: "int | None" = None

    def to_dict(self) -> "dict[str, Any]":
        return {
            "url": self.url,
            "user_code": self.user_code,
            "instructions": self.instructions,
            "poll_interval": self.poll_interval,
        }


# auth responses collected by the UI and fed back to complete_auth


@dataclass(frozen=True, slots=True)
class OAuthCode:
    code: "str"


@dataclass(frozen=True, slots=True)
class DeviceFlowComplete:
    pass


@dataclass(frozen=True, slots=True)
class ApiKey:
    key: "str"


@dataclass(frozen=True, slots=True)
class Cookies:
    value: "str"


AuthResponse = Union[OAuthCode, DeviceFlowComplete, ApiKey, Cookies]


# auth status variants, derived from in-memory credential state


@dataclass(frozen=True, slots=True)
class NotAuthenticated:
    state: "ClassVar[str]" = "not_authenticated"

    def to_dict(self) -> "dict[str, Any]":
        return {"state": self.state}


@dataclass(frozen=True, slots=True)
class Authenticating:
    message: "str"
    state: "ClassVar[str]" = "authenticating"

    def to_dict(self) -> "dict[str, Any]":
        return {"state": self.state, "message": self.message}


@dataclass(frozen=True, slots=True)
class Authenticated:
    user: "str | None" = None
    expires: "datetime | None" = None
    state: "ClassVar[str]" = "authenticated"

    def to_dict(self) -> "dict[str, Any]":
        return {
            "state": self.state,
            "user": self.user,
            "expires": format_timestamp(self.expires),
        }


@dataclass(frozen=True, slots=True)
class AuthError:
    message: "str"
    state: "ClassVar[str]" = "error"

    def to_dict(self) -> "dict[str, Any]":
        return {"state": self.state, "message": self.message}


AuthStatus = Union[NotAuthenticated, Authenticating, Authenticated, AuthError]


@dataclass(frozen=True, slots=True)
class ProviderStatus:
    """
    ProviderStatus is the flattened per-provider view handed
    to the UI layer.
    """

    provider: "str"
    enabled: "bool"
    session_used: "int"
    session_limit: "int"
    weekly_used: "int"
    weekly_limit: "int"
    reset_time: "datetime | None"
    error: "str | None"

    @classmethod
    def from_usage(
        cls, provider: "str", usage: "UsageData", enabled: "bool"
    ) -> "ProviderStatus":
        return cls(
            provider=provider,
            enabled=enabled,
            session_used=usage.session_used,
            session_limit=usage.session_limit,
            weekly_used=usage.weekly_used,
            weekly_limit=usage.weekly_limit,
            reset_time=usage.reset_time,
            error=usage.error,
        )

    def to_dict(self) -> "dict[str, Any]":
        return {
            "provider": self.provider,
            "enabled": self.enabled,
            "session_used": self.session_used,
            "session_limit": self.session_limit,
            "weekly_used": self.weekly_used,
            "weekly_limit": self.weekly_limit,
            "reset_time": format_timestamp(self.reset_time),
            "error": self.error,
        }
