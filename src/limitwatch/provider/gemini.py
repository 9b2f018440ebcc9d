import asyncio
import json
import os
import re
import shutil
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import httpx
import structlog

from limitwatch.aggregation import QuotaBucket, aggregate_quotas
from limitwatch.errors import (
    AuthFailedError,
    AuthRequiredError,
    NotConfiguredError,
    ParseError,
    ProviderError,
    UpstreamError,
)
from limitwatch.models import (
    Authenticated,
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
from limitwatch.provider.base import USER_AGENT, check_status, json_object, send
from limitwatch.provider.identity import AccountInfo, extract_account_info

logger = structlog.get_logger()

DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
CLOUD_CODE_QUOTA_URL = "https://cloudcode-pa.googleapis.com/v1internal:retrieveUserQuota"
CLOUD_CODE_ASSIST_URL = "https://cloudcode-pa.googleapis.com/v1internal:loadCodeAssist"
GCP_PROJECTS_URL = "https://cloudresourcemanager.googleapis.com/v1/projects"

# session usage is reported on a 0-10000 scale so two decimals
# of the overall percentage survive the integer fields
QUOTA_SCALE = 10000

OAUTH_JS = Path(
    "node_modules/@google/gemini-cli-core/dist/src/code_assist/oauth2.js"
)
CLIENT_ID_RE = re.compile(r"""OAUTH_CLIENT_ID\s*=\s*['"]([^'"]+)['"]""")
CLIENT_SECRET_RE = re.compile(r"""OAUTH_CLIENT_SECRET\s*=\s*['"]([^'"]+)['"]""")

DESCRIPTOR = ProviderDescriptor(
    id="gemini",
    display_name="Gemini",
    website="https://gemini.google.com",
    auth_methods=(AuthMethod.CLI_DELEGATED,),
    has_session_limits=True,
    has_weekly_limits=True,
    has_credits=False,
    icon="gemini",
)

INSTRUCTIONS = (
    "Gemini uses OAuth via the Gemini CLI.\n\n"
    "1. Install Gemini CLI from ai.google.dev\n"
    "2. Run 'gemini auth' to authenticate\n"
    "3. Click 'Check for credentials' below"
)

ClientDiscovery = Callable[[], "tuple[str, str]"]


class GeminiTier(str, Enum):
    FREE = "FREE"
    STANDARD = "STANDARD"
    LEGACY = "LEGACY"
    WORKSPACE = "WORKSPACE"


def default_credentials_path() -> "Path":
    return Path.home() / ".gemini" / "oauth_creds.json"


@dataclass(slots=True)
class GeminiCredentials:
    """
    GeminiCredentials mirrors the Gemini CLI's oauth_creds.json.
    Fields the CLI writes that are not used here are kept in
    extra so rewriting the file never drops them.
    """

    access_token: "str"
    refresh_token: "str"
    token_uri: "str" = DEFAULT_TOKEN_URI
    client_id: "str | None" = None
    client_secret: "str | None" = None
    # milliseconds since epoch
    expiry_date: "int | None" = None
    id_token: "str | None" = None
    extra: "dict[str, Any]" = field(default_factory=dict)

    _KNOWN = (
        "access_token",
        "refresh_token",
        "token_uri",
        "client_id",
        "client_secret",
        "expiry_date",
        "id_token",
    )

    @classmethod
    def from_dict(cls, raw: "Any") -> "GeminiCredentials":
        if not isinstance(raw, dict):
            raise ParseError("credentials file is not a JSON object")
        access_token = raw.get("access_token")
        refresh_token = raw.get("refresh_token")
        if not isinstance(access_token, str) or not isinstance(refresh_token, str):
            raise ParseError("credentials file lacks access_token or refresh_token")

        expiry = raw.get("expiry_date")
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            token_uri=raw.get("token_uri") or DEFAULT_TOKEN_URI,
            client_id=raw.get("client_id"),
            client_secret=raw.get("client_secret"),
            expiry_date=int(expiry) if isinstance(expiry, (int, float)) else None,
            id_token=raw.get("id_token"),
            extra={k: v for k, v in raw.items() if k not in cls._KNOWN},
        )

    def to_dict(self) -> "dict[str, Any]":
        data = dict(self.extra)
        data["access_token"] = self.access_token
        data["refresh_token"] = self.refresh_token
        data["token_uri"] = self.token_uri
        # optional fields the CLI did not write stay absent
        for key in ("client_id", "client_secret", "expiry_date", "id_token"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    def is_expired(self, now_ms: "int | None" = None) -> "bool":
        if self.expiry_date is None:
            return False
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        return self.expiry_date < now_ms


def read_credentials(path: "Path") -> "GeminiCredentials | None":
    """
    reads the CLI's credentials file. A missing or malformed file
    means not signed in.
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return GeminiCredentials.from_dict(raw)
    except FileNotFoundError:
        return None
    except (OSError, ValueError, ParseError) as e:
        logger.warning("gemini_credentials_unreadable", path=str(path), error=str(e))
        return None


def write_credentials(path: "Path", creds: "GeminiCredentials") -> "None":
    """
    writes the credentials next to the original and renames them
    into place, so a crash mid-write leaves the old file intact.
    """
    tmp_path = path.with_name(path.name + ".tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        json.dump(creds.to_dict(), fh, indent=2)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp_path, path)


def parse_oauth_client(content: "str") -> "tuple[str, str]":
    client_id = CLIENT_ID_RE.search(content)
    if client_id is None:
        raise ParseError("Client ID not found")
    client_secret = CLIENT_SECRET_RE.search(content)
    if client_secret is None:
        raise ParseError("Client secret not found")
    return client_id.group(1), client_secret.group(1)


def _oauth_js_candidates(real_path: "Path") -> "list[Path]":
    root = real_path.parent.parent
    candidates = [
        # Homebrew nested layout
        root / "libexec/lib/node_modules/@google/gemini-cli" / OAUTH_JS,
        # npm sibling layout
        root / "lib/node_modules/@google/gemini-cli-core/dist/src/code_assist/oauth2.js",
        real_path.parent / OAUTH_JS,
    ]
    # npm global installs link bin/gemini into the package itself
    for ancestor in real_path.parents:
        candidate = ancestor / OAUTH_JS
        if candidate not in candidates:
            candidates.append(candidate)
    return candidates


def discover_client_credentials() -> "tuple[str, str]":
    """
    finds the OAuth client id/secret embedded in the installed
    Gemini CLI. Best-effort: raises NotConfiguredError when the
    CLI or its oauth2.js cannot be found.
    """
    binary = shutil.which("gemini")
    if binary is None:
        raise NotConfiguredError()

    real_path = Path(binary).resolve()
    for candidate in _oauth_js_candidates(real_path):
        try:
            content = candidate.read_text(encoding="utf-8", errors="ignore")
        except OSError:
            continue
        try:
            return parse_oauth_client(content)
        except ParseError:
            continue

    logger.debug("gemini_oauth_client_not_found", binary=str(real_path))
    raise NotConfiguredError()


def plan_display(tier: "GeminiTier | None", account: "AccountInfo | None") -> "str":
    hosted_domain = account.hosted_domain if account is not None else None
    if tier == GeminiTier.STANDARD:
        return "Paid"
    if tier == GeminiTier.FREE:
        return "Workspace" if hosted_domain else "Free"
    if tier == GeminiTier.LEGACY:
        return "Legacy"
    if tier == GeminiTier.WORKSPACE:
        return "Workspace"
    return "Unknown"


def parse_buckets(data: "dict[str, Any]") -> "list[QuotaBucket]":
    buckets: "list[QuotaBucket]" = []
    for raw in data.get("buckets") or []:
        if not isinstance(raw, dict):
            continue
        model_id = raw.get("modelId")
        fraction = raw.get("remainingFraction")
        if not isinstance(model_id, str) or isinstance(fraction, bool):
            continue
        if not isinstance(fraction, (int, float)):
            continue
        buckets.append(
            QuotaBucket(
                model_id=model_id,
                remaining_fraction=float(fraction),
                reset_time=parse_timestamp(raw.get("resetTime")),
                token_type=raw.get("tokenType"),
            )
        )
    return buckets


class GeminiProvider:
    """
    GeminiProvider reads per-model quotas from the Cloud Code API
    using the credentials the Gemini CLI keeps on disk.

    Expired access tokens are refreshed silently before a fetch,
    and the refreshed credential set is written back to the CLI's
    file so both tools keep working.
    """

    def __init__(
        self,
        credentials_path: "Path | None" = None,
        client_discovery: "ClientDiscovery" = discover_client_credentials,
    ) -> "None":
        self._path = credentials_path or default_credentials_path()
        self._discover_client = client_discovery
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            timeout=15.0,
            headers={"User-Agent": USER_AGENT},
        )
        self._credentials: "GeminiCredentials | None" = None
        self._account: "AccountInfo | None" = None
        self._project_id: "str | None" = None
        self._tier: "GeminiTier | None" = None
        self._auth_error: "str | None" = None

        self._set_credentials(read_credentials(self._path))

    @property
    def descriptor(self) -> "ProviderDescriptor":
        return DESCRIPTOR

    async def close(self) -> "None":
        await self._client.aclose()

    def is_authenticated(self) -> "bool":
        return self._credentials is not None

    def _set_credentials(self, creds: "GeminiCredentials | None") -> "None":
        self._credentials = creds
        self._account = None
        if creds is not None and creds.id_token:
            try:
                self._account = extract_account_info(creds.id_token)
            except ParseError as e:
                # shown as anonymous
                logger.debug("gemini_id_token_unreadable", error=str(e))

    async def _ensure_valid_token(self) -> "str":
        creds = self._credentials
        if creds is None:
            raise AuthRequiredError()
        if creds.is_expired():
            creds = await self._refresh_token(creds)
        return creds.access_token

    async def _refresh_token(self, creds: "GeminiCredentials") -> "GeminiCredentials":
        if creds.client_id and creds.client_secret:
            client_id, client_secret = creds.client_id, creds.client_secret
        else:
            client_id, client_secret = await asyncio.to_thread(self._discover_client)

        resp = await send(
            self._client,
            "POST",
            creds.token_uri,
            data={
                "grant_type": "refresh_token",
                "refresh_token": creds.refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
        )
        if resp.status_code == 429 or resp.status_code >= 500:
            # transient, the refresh token is still good
            check_status(resp)
        if not resp.is_success:
            logger.warning("gemini_token_refresh_failed", status=resp.status_code)
            raise AuthFailedError(
                "Token refresh failed. Run 'gemini auth' to re-authenticate."
            )

        token = json_object(resp)
        access_token = token.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ParseError("token response lacks access_token")

        expires_in = token.get("expires_in")
        expiry_date = (
            int(time.time() * 1000) + int(expires_in) * 1000
            if isinstance(expires_in, (int, float))
            else None
        )
        updated = replace(
            creds,
            access_token=access_token,
            expiry_date=expiry_date,
            id_token=token.get("id_token") or creds.id_token,
            refresh_token=token.get("refresh_token") or creds.refresh_token,
        )

        # only adopt the new set once it is safely on disk
        try:
            await asyncio.to_thread(write_credentials, self._path, updated)
        except OSError as e:
            raise UpstreamError(f"Write error: {e}") from e

        self._set_credentials(updated)
        logger.info("gemini_token_refreshed")
        return updated

    async def _discover_project_id(self, token: "str") -> "str":
        try:
            return await self._load_code_assist(token)
        except ProviderError as e:
            logger.debug("gemini_code_assist_unavailable", error=str(e))

        # fallback: look for a generative-language project
        resp = await send(
            self._client,
            "GET",
            GCP_PROJECTS_URL,
            headers={"Authorization": f"Bearer {token}"},
        )
        check_status(resp)
        data = json_object(resp)

        for project in data.get("projects") or []:
            if not isinstance(project, dict):
                continue
            project_id = project.get("projectId")
            if not isinstance(project_id, str):
                continue
            if project_id.startswith("gen-lang-client"):
                return project_id
            labels = project.get("labels")
            if isinstance(labels, dict) and "generative-language" in labels:
                return project_id

        raise UpstreamError("No Gemini project found")

    async def _load_code_assist(self, token: "str") -> "str":
        resp = await send(
            self._client,
            "POST",
            CLOUD_CODE_ASSIST_URL,
            headers={"Authorization": f"Bearer {token}"},
            json={},
        )
        if not resp.is_success:
            raise UpstreamError("loadCodeAssist failed")
        data = json_object(resp)

        tier = data.get("currentTier")
        if isinstance(tier, dict):
            try:
                self._tier = GeminiTier(tier.get("id"))
            except ValueError:
                self._tier = GeminiTier.FREE

        project_id = data.get("managedProjectId") or data.get("cloudaicompanionProject")
        if not isinstance(project_id, str) or not project_id:
            raise UpstreamError("No managed project ID")
        return project_id

    async def _fetch_quota(self, token: "str", project_id: "str") -> "list[QuotaBucket]":
        resp = await send(
            self._client,
            "POST",
            CLOUD_CODE_QUOTA_URL,
            headers={"Authorization": f"Bearer {token}"},
            json={"project": project_id},
        )
        if resp.status_code == 404:
            raise UpstreamError(
                "Quota API endpoint not found. Your Gemini CLI version may be outdated."
            )
        check_status(resp)
        return parse_buckets(json_object(resp))

    async def fetch_usage(self) -> "UsageData":
        token = await self._ensure_valid_token()

        if self._project_id is None:
            self._project_id = await self._discover_project_id(token)

        buckets = await self._fetch_quota(token, self._project_id)
        summary = aggregate_quotas(buckets)

        used_percent = 100.0 - summary.overall_percent
        return UsageData(
            session_used=max(0, round(used_percent * QUOTA_SCALE / 100)),
            session_limit=QUOTA_SCALE,
            weekly_used=0,
            weekly_limit=0,
            credits_remaining=None,
            reset_time=summary.overall_reset,
            weekly_reset_time=None,
            last_updated=utcnow(),
            error=None,
            model_quotas=summary.model_quotas,
        )

    async def start_auth(self) -> "AuthFlow | None":
        return AuthFlow(
            url="https://ai.google.dev/gemini-api/docs/downloads",
            user_code=None,
            instructions=INSTRUCTIONS,
            poll_interval=None,
        )

    async def complete_auth(self, response: "AuthResponse") -> "None":
        creds = await asyncio.to_thread(read_credentials, self._path)
        if creds is None:
            self._auth_error = "Gemini CLI not authenticated. Run 'gemini auth' in terminal."
            raise AuthFailedError(self._auth_error)

        self._set_credentials(creds)
        self._project_id = None
        self._tier = None
        self._auth_error = None
        logger.info("gemini_credentials_loaded", path=str(self._path))

    async def logout(self) -> "None":
        # the CLI owns its credentials file, so only memory is cleared
        self._credentials = None
        self._account = None
        self._project_id = None
        self._tier = None
        self._auth_error = None

    def auth_status(self) -> "AuthStatus":
        creds = self._credentials
        if creds is None:
            if self._auth_error is not None:
                return AuthError(message=self._auth_error)
            return NotAuthenticated()

        if self._account is not None:
            user = f"{self._account.email} ({plan_display(self._tier, self._account)})"
        else:
            user = "via Gemini CLI"

        expires = None
        if creds.expiry_date is not None:
            expires = datetime.fromtimestamp(creds.expiry_date / 1000, tz=timezone.utc)
        return Authenticated(user=user, expires=expires)
