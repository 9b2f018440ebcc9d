class ProviderError(Exception):
    """
    ProviderError is the base of every failure a provider
    operation can report. kind is a stable label used in logs
    and metrics.
    """

    kind: "str" = "provider"


class AuthRequiredError(ProviderError):
    kind = "auth_required"

    def __init__(self) -> "None":
        super().__init__("Authentication required")


class AuthFailedError(ProviderError):
    kind = "auth_failed"

    def __init__(self, reason: "str") -> "None":
        super().__init__(f"Authentication failed: {reason}")
        self.reason = reason


class TokenExpiredError(ProviderError):
    kind = "token_expired"

    def __init__(self) -> "None":
        super().__init__("Token expired")


class RateLimitedError(ProviderError):
    kind = "rate_limited"

    def __init__(self, retry_after_seconds: "int") -> "None":
        super().__init__(f"Rate limited, retry after {retry_after_seconds} seconds")
        self.retry_after_seconds = retry_after_seconds


class NetworkError(ProviderError):
    kind = "network"

    def __init__(self, detail: "str") -> "None":
        super().__init__(f"Network error: {detail}")
        self.detail = detail


class ParseError(ProviderError):
    kind = "parse"

    def __init__(self, detail: "str") -> "None":
        super().__init__(f"Parse error: {detail}")
        self.detail = detail


class UpstreamError(ProviderError):
    """
    catch-all for upstream-specific failures that fit no other
    category.
    """

    kind = "upstream"

    def __init__(self, detail: "str") -> "None":
        super().__init__(f"Provider error: {detail}")
        self.detail = detail


class NotConfiguredError(ProviderError):
    kind = "not_configured"

    def __init__(self) -> "None":
        super().__init__("Not configured")


class ProviderNotFoundError(LookupError):
    def __init__(self, provider_id: "str") -> "None":
        super().__init__(f"Provider '{provider_id}' not found")
        self.provider_id = provider_id
