"""Caller authentication for the Snipt bridge.

A request to the protocol endpoint may carry one of two credentials in its
``Authorization`` header:

1. **API key** (``Bearer snip_...`` or ``ApiKey snip_...``): validated by
   comparing against the bcrypt hashes of all active keys; a match
   refreshes the key's last-used marker in the background.
2. **OAuth bearer token**: any other bearer value, verified by asking the
   identity provider who the token belongs to.

When neither resolves, a signed session cookie is consulted. The resolver
never raises for a bad credential: it returns an identity or ``None``.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol

import bcrypt
import httpx
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from snipt_bridge.context import identity_scope
from snipt_bridge.debug import clear_request_id, mask_secret, set_request_id
from snipt_bridge.exceptions import IdentityProviderError, InvalidGrant
from snipt_bridge.models import ApiKeyRecord

logger = logging.getLogger(__name__)

# JSON-RPC methods that need a resolved caller when OAuth is configured
PROTECTED_METHODS = frozenset({"tools/call", "resources/read", "resources/subscribe"})

SESSION_COOKIE_NAME = "snipt_session"
SESSION_MAX_AGE = 3600 * 24  # 24 hours

GrantKind = Literal["session", "api_key", "oauth"]


# =============================================================================
# Credentials and identities
# =============================================================================


@dataclass(frozen=True)
class ApiKeyCredential:
    """A long-lived API key presented by the caller."""

    secret: str
    kind: Literal["api_key"] = "api_key"

    def __repr__(self) -> str:
        return f"ApiKeyCredential(secret={mask_secret(self.secret)})"


@dataclass(frozen=True)
class BearerTokenCredential:
    """A short-lived OAuth access token presented by the caller."""

    token: str
    kind: Literal["bearer_token"] = "bearer_token"

    def __repr__(self) -> str:
        return f"BearerTokenCredential(token={mask_secret(self.token)})"

    @property
    def secret(self) -> str:
        return self.token


Credential = ApiKeyCredential | BearerTokenCredential


@dataclass(frozen=True)
class ResolvedIdentity:
    """Who is calling, how they proved it, and what to present downstream."""

    user_id: str
    grant_kind: GrantKind
    credential: Credential | None = None


def extract_credential(
    authorization: str | None, api_key_prefix: str = "snip_"
) -> Credential | None:
    """Classify an ``Authorization`` header value.

    Returns None for a missing or malformed header.
    """
    if not authorization:
        return None

    scheme, _, value = authorization.strip().partition(" ")
    value = value.strip()
    if not value or " " in value:
        return None

    scheme = scheme.lower()
    if scheme == "apikey":
        return ApiKeyCredential(secret=value)
    if scheme != "bearer":
        return None
    if is_api_key(value, api_key_prefix):
        return ApiKeyCredential(secret=value)
    return BearerTokenCredential(token=value)


def is_api_key(value: str, prefix: str = "snip_") -> bool:
    """API keys are a fixed prefix followed by an opaque random suffix."""
    return value.startswith(prefix) and len(value) > len(prefix)


def get_auth_challenge(server_url: str) -> str:
    """Build the WWW-Authenticate header pointing at resource metadata."""
    return f'Bearer resource_metadata="{server_url}/.well-known/oauth-protected-resource"'


# =============================================================================
# API key validation
# =============================================================================


class ApiKeyStore(Protocol):
    """Backend capability for validating API keys."""

    async def list_active_keys(self) -> list[ApiKeyRecord]:
        """Return every non-revoked key record."""
        ...

    async def touch(self, key_id: str) -> None:
        """Record that a key was just used."""
        ...


class StaticApiKeyStore:
    """Key records supplied through configuration."""

    def __init__(self, records: list[ApiKeyRecord]):
        self.records = list(records)
        self.last_used: dict[str, float] = {}

    async def list_active_keys(self) -> list[ApiKeyRecord]:
        return list(self.records)

    async def touch(self, key_id: str) -> None:
        self.last_used[key_id] = time.time()


class PostgrestApiKeyStore:
    """Key records read from the hosted ``api_keys`` table.

    Uses the service-role key because key validation happens before any
    user is known.
    """

    def __init__(
        self,
        base_url: str,
        service_role_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_role_key = service_role_key
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self.service_role_key,
            "Authorization": f"Bearer {self.service_role_key}",
        }

    async def list_active_keys(self) -> list[ApiKeyRecord]:
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport
        ) as http_client:
            response = await http_client.get(
                f"{self.base_url}/rest/v1/api_keys",
                params={"select": "id,user_id,key_hash,key_prefix", "revoked_at": "is.null"},
                headers=self._headers(),
            )
            response.raise_for_status()
            return [ApiKeyRecord.model_validate(row) for row in response.json()]

    async def touch(self, key_id: str) -> None:
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport
        ) as http_client:
            response = await http_client.patch(
                f"{self.base_url}/rest/v1/api_keys",
                params={"id": f"eq.{key_id}"},
                json={"last_used_at": _utc_now_iso()},
                headers=self._headers(),
            )
            response.raise_for_status()


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def hash_api_key(secret: str) -> str:
    """Hash an API key the way the backend stores it."""
    return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def _match_key(secret: str, candidates: list[ApiKeyRecord]) -> ApiKeyRecord | None:
    """Compare a key against each candidate hash. Runs off the event loop."""
    encoded = secret.encode("utf-8")
    for record in candidates:
        try:
            if bcrypt.checkpw(encoded, record.key_hash.encode("utf-8")):
                return record
        except ValueError:
            logger.warning(f"Skipping API key {record.id}: malformed hash")
    return None


# =============================================================================
# Identity provider
# =============================================================================


class IdentityProvider:
    """Client for the hosted auth service (``/auth/v1``)."""

    def __init__(
        self,
        base_url: str,
        public_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.public_key = public_key
        self.timeout = timeout
        self.transport = transport

    async def get_user_id(self, token: str) -> str | None:
        """Return the id of the user a token belongs to, or None."""
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as http_client:
                response = await http_client.get(
                    f"{self.base_url}/auth/v1/user",
                    headers={
                        "Authorization": f"Bearer {token}",
                        "apikey": self.public_key,
                    },
                )
        except httpx.HTTPError as e:
            logger.warning(f"Token verification failed: {type(e).__name__}: {e}")
            return None

        if response.status_code != 200:
            if response.status_code >= 500:
                logger.warning(
                    f"Token verification failed: identity provider returned "
                    f"{response.status_code}"
                )
            return None

        try:
            user_id = response.json().get("id")
        except ValueError:
            logger.warning("Token verification failed: malformed user response")
            return None
        return str(user_id) if user_id else None

    async def refresh(self, refresh_token: str) -> dict:
        """Exchange a refresh token for a new token bundle.

        Raises InvalidGrant when the provider rejects the token and
        IdentityProviderError when it cannot be reached.
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as http_client:
                response = await http_client.post(
                    f"{self.base_url}/auth/v1/token",
                    params={"grant_type": "refresh_token"},
                    json={"refresh_token": refresh_token},
                    headers={"apikey": self.public_key},
                )
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"Identity provider unavailable: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success:
            description = (
                data.get("error_description") or data.get("msg") or "Invalid refresh token"
            )
            raise InvalidGrant(description)
        return data


# =============================================================================
# Session cookies
# =============================================================================


def _sign_session_data(data: str, secret: str) -> str:
    """Sign session data with HMAC-SHA256."""
    signature = hmac.new(secret.encode(), data.encode(), hashlib.sha256).hexdigest()
    return f"{data}.{signature}"


def _verify_session_data(signed_data: str, secret: str) -> str | None:
    """Verify signed session data. Returns the data if valid, None otherwise."""
    if "." not in signed_data:
        return None
    data, signature = signed_data.rsplit(".", 1)
    expected = _sign_session_data(data, secret).rsplit(".", 1)[1]
    if hmac.compare_digest(signature, expected):
        return data
    return None


def create_session_cookie(user_id: str, secret: str, max_age: int = SESSION_MAX_AGE) -> str:
    """Create a signed session cookie value."""
    expires = int(time.time()) + max_age
    data = json.dumps({"user_id": user_id, "expires": expires})
    return _sign_session_data(data, secret)


def verify_session_cookie(cookie_value: str, secret: str) -> dict | None:
    """Verify a session cookie. Returns session data if valid, None otherwise."""
    data = _verify_session_data(cookie_value, secret)
    if not data:
        return None
    try:
        session = json.loads(data)
    except json.JSONDecodeError:
        return None
    if not isinstance(session, dict) or not session.get("user_id"):
        return None
    if session.get("expires", 0) < time.time():
        return None  # Expired
    return session


# =============================================================================
# Resolver
# =============================================================================


class AuthResolver:
    """Turn request headers into a ResolvedIdentity or None."""

    def __init__(
        self,
        key_store: ApiKeyStore | None = None,
        identity_provider: IdentityProvider | None = None,
        session_secret: str | None = None,
        api_key_prefix: str = "snip_",
    ):
        self.key_store = key_store
        self.identity_provider = identity_provider
        self.session_secret = session_secret
        self.api_key_prefix = api_key_prefix
        self._background: set[asyncio.Task] = set()

    async def resolve(
        self,
        headers: Mapping[str, str],
        cookies: Mapping[str, str] | None = None,
    ) -> ResolvedIdentity | None:
        credential = extract_credential(headers.get("authorization"), self.api_key_prefix)

        identity = None
        if isinstance(credential, ApiKeyCredential):
            identity = await self._resolve_api_key(credential)
        elif isinstance(credential, BearerTokenCredential):
            identity = await self._resolve_bearer(credential)

        if identity is None and cookies:
            identity = self._resolve_session(cookies)

        if identity is None:
            logger.debug("Request is unauthenticated")
        else:
            logger.debug(
                f"Resolved user {identity.user_id} via {identity.grant_kind}"
            )
        return identity

    async def resolve_request(self, request: Request) -> ResolvedIdentity | None:
        return await self.resolve(request.headers, request.cookies)

    async def _resolve_api_key(self, credential: ApiKeyCredential) -> ResolvedIdentity | None:
        if self.key_store is None:
            logger.debug("API key presented but no key store is configured")
            return None

        try:
            records = await self.key_store.list_active_keys()
        except Exception as e:
            logger.warning(f"API key lookup failed: {type(e).__name__}: {e}")
            return None

        candidates = [
            r for r in records if not r.prefix or credential.secret.startswith(r.prefix)
        ]
        match = await asyncio.to_thread(_match_key, credential.secret, candidates)
        if match is None:
            logger.info(f"Rejected API key {mask_secret(credential.secret)}")
            return None

        self._schedule_touch(match.id)
        return ResolvedIdentity(
            user_id=match.user_id, grant_kind="api_key", credential=credential
        )

    async def _resolve_bearer(
        self, credential: BearerTokenCredential
    ) -> ResolvedIdentity | None:
        if self.identity_provider is None:
            return None
        user_id = await self.identity_provider.get_user_id(credential.token)
        if not user_id:
            return None
        return ResolvedIdentity(user_id=user_id, grant_kind="oauth", credential=credential)

    def _resolve_session(self, cookies: Mapping[str, str]) -> ResolvedIdentity | None:
        if not self.session_secret:
            return None
        cookie = cookies.get(SESSION_COOKIE_NAME)
        if not cookie:
            return None
        session = verify_session_cookie(cookie, self.session_secret)
        if session is None:
            return None
        return ResolvedIdentity(user_id=str(session["user_id"]), grant_kind="session")

    def _schedule_touch(self, key_id: str) -> None:
        """Update the key's last-used marker without holding up the request."""
        task = asyncio.create_task(self._touch(key_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _touch(self, key_id: str) -> None:
        try:
            await self.key_store.touch(key_id)
        except Exception as e:
            logger.warning(f"Could not update last_used_at for key {key_id}: {e}")

    async def drain(self) -> None:
        """Wait for pending last-used updates (used at shutdown and in tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


# =============================================================================
# Middleware
# =============================================================================


def _normalize_accept(scope: dict) -> None:
    """Make sure the protocol transport sees both JSON and SSE as acceptable.

    Some agent platforms only send ``Accept: application/json``.
    """
    headers = [(k, v) for k, v in scope["headers"] if k != b"accept"]
    accept = next((v for k, v in scope["headers"] if k == b"accept"), b"")
    if not accept:
        accept = b"application/json, text/event-stream"
    elif b"text/event-stream" not in accept:
        accept = accept + b", text/event-stream"
    if b"application/json" not in accept and b"*/*" not in accept:
        accept = accept + b", application/json"
    headers.append((b"accept", accept))
    scope["headers"] = headers


async def _jsonrpc_methods(request: Request) -> set[str]:
    """Collect JSON-RPC method names from a single or batch request body."""
    try:
        body = json.loads(await request.body())
    except (ValueError, UnicodeDecodeError):
        return set()
    messages = body if isinstance(body, list) else [body]
    return {
        m["method"] for m in messages if isinstance(m, dict) and isinstance(m.get("method"), str)
    }


class BridgeAuthMiddleware(BaseHTTPMiddleware):
    """Resolve the caller for protocol requests and bind it for the request.

    Only paths under ``protected_paths`` are inspected; OAuth endpoints and
    health checks pass straight through.
    """

    def __init__(
        self,
        app,
        resolver: AuthResolver,
        oauth_enabled: bool = False,
        resource_metadata_url: str | None = None,
        protected_paths: list[str] | None = None,
    ):
        super().__init__(app)
        self.resolver = resolver
        self.oauth_enabled = oauth_enabled
        self.resource_metadata_url = resource_metadata_url
        self.protected_paths = protected_paths or ["/mcp"]

    def _www_authenticate_header(self) -> str:
        if self.resource_metadata_url:
            return f'Bearer resource_metadata="{self.resource_metadata_url}"'
        return "Bearer"

    async def dispatch(self, request: Request, call_next):
        if not any(request.url.path.startswith(p) for p in self.protected_paths):
            return await call_next(request)

        req_token = set_request_id(request.headers.get("x-request-id"))
        try:
            identity = await self.resolver.resolve_request(request)
            request.state.identity = identity
            _normalize_accept(request.scope)

            # a session carries no backend credential, so it cannot satisfy OAuth
            unauthenticated = identity is None or identity.credential is None
            if unauthenticated and self.oauth_enabled and request.method == "POST":
                methods = await _jsonrpc_methods(request)
                if methods & PROTECTED_METHODS:
                    logger.info(
                        f"Rejecting unauthenticated {sorted(methods & PROTECTED_METHODS)}"
                    )
                    return JSONResponse(
                        {
                            "error": "Authentication required",
                            "message": "This operation requires OAuth authentication",
                        },
                        status_code=401,
                        headers={"WWW-Authenticate": self._www_authenticate_header()},
                    )

            with identity_scope(identity):
                return await call_next(request)
        finally:
            clear_request_id(req_token)
