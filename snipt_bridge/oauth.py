"""OAuth authorization-code flow for agent platforms.

Agent platforms that cannot hold an API key (for example ChatGPT
connectors) obtain a bearer token through this flow:

1. Discover endpoints via ``/.well-known/oauth-protected-resource`` and
   ``/.well-known/oauth-authorization-server`` (RFC 9728 / RFC 8414)
2. Register via ``/oauth/register`` (RFC 7591, static client)
3. Send the user to ``/authorize``, a login page that signs in against the
   identity provider's password grant and then calls ``/token/generate``
   to mint a one-time code bound to the PKCE challenge
4. Exchange the code (plus ``code_verifier``) at ``/token``

The tokens handed out are the identity provider's own access and refresh
tokens, so the protocol endpoint verifies them with the provider.
"""

from __future__ import annotations

import base64
import hashlib
import html
import json
import logging
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, Response
from starlette.routing import Route

from snipt_bridge.auth import IdentityProvider
from snipt_bridge.debug import mask_secret
from snipt_bridge.exceptions import IdentityProviderError, InvalidGrant
from snipt_bridge.models import PKCE_METHODS, CodeIssueRequest, TokenRequest

logger = logging.getLogger(__name__)

CODE_TTL_SECONDS = 600
ACCESS_TOKEN_EXPIRES_IN = 3600


# =============================================================================
# Authorization-code store
# =============================================================================


@dataclass
class AuthorizationCode:
    """Token bundle waiting to be exchanged for its one-time code."""

    code: str
    access_token: str
    refresh_token: str
    code_challenge: str
    expires_at: float
    code_challenge_method: str = "S256"
    redirect_uri: str | None = None

    def __repr__(self) -> str:
        return (
            f"AuthorizationCode(code={mask_secret(self.code)}, "
            f"expires_at={self.expires_at})"
        )


class AuthorizationCodeStore(Protocol):
    """Single-use, expiring mapping from codes to token bundles."""

    async def put(self, entry: AuthorizationCode) -> None:
        ...

    async def take(self, code: str) -> AuthorizationCode | None:
        """Remove and return the entry, or None if unknown or expired."""
        ...


class InMemoryAuthorizationCodeStore:
    """Process-local code store.

    Only valid for a single long-lived bridge process; expired entries are
    purged lazily whenever the store is touched.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._codes: dict[str, AuthorizationCode] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._codes)

    def __contains__(self, code: str) -> bool:
        return code in self._codes

    def _purge_expired(self, now: float) -> None:
        expired = [c for c, entry in self._codes.items() if now > entry.expires_at]
        for code in expired:
            del self._codes[code]

    async def put(self, entry: AuthorizationCode) -> None:
        with self._lock:
            self._purge_expired(self.clock())
            if entry.code in self._codes:
                raise ValueError("Authorization code already issued")
            self._codes[entry.code] = entry

    async def take(self, code: str) -> AuthorizationCode | None:
        with self._lock:
            now = self.clock()
            entry = self._codes.pop(code, None)
            self._purge_expired(now)
        if entry is None or now > entry.expires_at:
            return None
        return entry


def generate_code() -> str:
    """32 random bytes, url-safe encoded."""
    return secrets.token_urlsafe(32)


def verify_pkce(code_verifier: str, code_challenge: str, method: str = "S256") -> bool:
    """Verify PKCE code_verifier against stored code_challenge."""
    if method == "S256":
        digest = hashlib.sha256(code_verifier.encode()).digest()
        computed = base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
        return secrets.compare_digest(computed, code_challenge)
    elif method == "plain":
        return secrets.compare_digest(code_verifier, code_challenge)
    return False


# =============================================================================
# Login page
# =============================================================================

_LOGIN_CSS = """
* { margin: 0; padding: 0; box-sizing: border-box; }
body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
       background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
       display: flex; align-items: center; justify-content: center;
       min-height: 100vh; padding: 20px; }
.container { background: white; border-radius: 12px; padding: 40px;
             max-width: 400px; width: 100%; box-shadow: 0 20px 60px rgba(0,0,0,0.3); }
h1 { font-size: 24px; margin-bottom: 8px; color: #1a202c; }
p { color: #718096; margin-bottom: 24px; font-size: 14px; }
.form-group { margin-bottom: 16px; }
label { display: block; margin-bottom: 6px; color: #4a5568; font-size: 14px; font-weight: 500; }
input { width: 100%; padding: 12px; border: 1px solid #e2e8f0; border-radius: 6px; font-size: 14px; }
input:focus { outline: none; border-color: #667eea; }
button { width: 100%; padding: 12px; background: #667eea; color: white; border: none;
         border-radius: 6px; font-size: 16px; font-weight: 600; cursor: pointer; }
button:hover { background: #5568d3; }
button:disabled { background: #cbd5e0; cursor: not-allowed; }
.error { background: #fed7d7; color: #c53030; padding: 12px; border-radius: 6px;
         margin-bottom: 16px; font-size: 14px; display: none; }
.error.show { display: block; }
"""

# Page state is injected as one JSON object; everything else is static.
_LOGIN_JS = """
const cfg = JSON.parse(document.getElementById('oauth-state').textContent);
const form = document.getElementById('loginForm');
const errorDiv = document.getElementById('error');
const submitBtn = document.getElementById('submitBtn');

form.addEventListener('submit', async (e) => {
  e.preventDefault();
  errorDiv.classList.remove('show');
  submitBtn.disabled = true;
  submitBtn.textContent = 'Signing in...';

  try {
    const authResponse = await fetch(cfg.passwordGrantUrl, {
      method: 'POST',
      headers: { 'Content-Type': 'application/json', 'apikey': cfg.publicKey },
      body: JSON.stringify({
        email: document.getElementById('email').value,
        password: document.getElementById('password').value
      })
    });
    const authData = await authResponse.json();
    if (!authResponse.ok) {
      throw new Error(authData.error_description || authData.msg || 'Authentication failed');
    }

    const codeResponse = await fetch(cfg.generateUrl, {
      method: 'POST',
      headers: { 'Content-Type': 'application/json' },
      body: JSON.stringify({
        access_token: authData.access_token,
        refresh_token: authData.refresh_token,
        redirect_uri: cfg.redirectUri,
        state: cfg.state,
        code_challenge: cfg.codeChallenge,
        code_challenge_method: cfg.codeChallengeMethod
      })
    });
    const codeData = await codeResponse.json();
    if (!codeResponse.ok) {
      throw new Error(codeData.error_description || codeData.error || 'Failed to generate authorization code');
    }

    const target = new URL(cfg.redirectUri);
    target.searchParams.set('code', codeData.code);
    if (cfg.state) target.searchParams.set('state', cfg.state);
    window.location.href = target.toString();
  } catch (error) {
    errorDiv.textContent = error.message;
    errorDiv.classList.add('show');
    submitBtn.disabled = false;
    submitBtn.textContent = 'Sign In';
  }
});
"""


def build_login_page(page_state: dict[str, str], client_name: str = "ChatGPT") -> str:
    """Render the sign-in page. Page state is embedded as inert JSON."""
    # "</" must not appear inside the script element
    state_json = json.dumps(page_state).replace("</", "<\\/")
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Sign in to Snipt</title>
    <style>{_LOGIN_CSS}</style>
</head>
<body>
    <div class="container">
        <h1>Sign in to Snipt</h1>
        <p>{html.escape(client_name)} wants to access your code snippets</p>
        <div id="error" class="error"></div>
        <form id="loginForm">
            <div class="form-group">
                <label for="email">Email</label>
                <input type="email" id="email" required autocomplete="email">
            </div>
            <div class="form-group">
                <label for="password">Password</label>
                <input type="password" id="password" required autocomplete="current-password">
            </div>
            <button type="submit" id="submitBtn">Sign In</button>
        </form>
    </div>
    <script type="application/json" id="oauth-state">{state_json}</script>
    <script>{_LOGIN_JS}</script>
</body>
</html>"""


# =============================================================================
# Endpoint set
# =============================================================================


def _oauth_error(error: str, description: str | None = None, status_code: int = 400) -> JSONResponse:
    body = {"error": error}
    if description:
        body["error_description"] = description
    return JSONResponse(body, status_code=status_code)


async def _read_body(request: Request) -> dict:
    """Parse a form-encoded or JSON request body into a dict."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        body = await request.json()
    else:
        form = await request.form()
        body = dict(form)
    if not isinstance(body, dict):
        raise ValueError("Request body must be an object")
    return body


def _invalid_body(error: ValidationError) -> JSONResponse:
    field_name = ".".join(str(part) for part in error.errors()[0]["loc"])
    return _oauth_error("invalid_request", f"Invalid {field_name}")


@dataclass
class OAuthEndpoints:
    """Discovery, registration, login, code issuance and token exchange.

    When ``identity_provider`` is None OAuth is unconfigured and every
    route answers 404.

    Usage:
        endpoints = OAuthEndpoints(
            server_url="https://mcp.snipt.app",
            identity_provider=IdentityProvider(supabase_url, anon_key),
        )
        routes = endpoints.get_routes()
    """

    server_url: str
    identity_provider: IdentityProvider | None = None
    code_store: AuthorizationCodeStore = field(default_factory=InMemoryAuthorizationCodeStore)
    client_id: str = "chatgpt-connector"
    scopes: list[str] = field(default_factory=lambda: ["snippets:read", "snippets:write"])
    code_ttl: int = CODE_TTL_SECONDS
    clock: Callable[[], float] = time.time

    def __post_init__(self) -> None:
        self.server_url = self.server_url.rstrip("/")

    @property
    def enabled(self) -> bool:
        return self.identity_provider is not None

    def get_resource_metadata_url(self) -> str:
        """URL of the protected-resource metadata (used in WWW-Authenticate)."""
        return f"{self.server_url}/.well-known/oauth-protected-resource"

    def protected_resource_metadata(self) -> dict:
        return {
            "resource": self.server_url,
            "authorization_servers": [self.server_url],
            "scopes_supported": self.scopes,
            "bearer_methods_supported": ["header"],
            "resource_documentation": f"{self.server_url}/docs",
        }

    def authorization_server_metadata(self) -> dict:
        return {
            "issuer": self.server_url,
            "authorization_endpoint": f"{self.server_url}/authorize",
            "token_endpoint": f"{self.server_url}/token",
            "registration_endpoint": f"{self.server_url}/oauth/register",
            "scopes_supported": self.scopes,
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "token_endpoint_auth_methods_supported": [
                "client_secret_basic",
                "client_secret_post",
            ],
            "code_challenge_methods_supported": list(PKCE_METHODS),
        }

    async def issue_code(
        self,
        access_token: str,
        refresh_token: str,
        code_challenge: str,
        code_challenge_method: str = "S256",
        redirect_uri: str | None = None,
    ) -> AuthorizationCode:
        """Mint a one-time code for a freshly authenticated token bundle."""
        entry = AuthorizationCode(
            code=generate_code(),
            access_token=access_token,
            refresh_token=refresh_token,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            redirect_uri=redirect_uri,
            expires_at=self.clock() + self.code_ttl,
        )
        await self.code_store.put(entry)
        return entry

    async def exchange_code(
        self,
        code: str | None,
        code_verifier: str | None,
        redirect_uri: str | None = None,
    ) -> dict:
        """Consume a code and return the token response body.

        The code is removed by the first attempt, successful or not.
        """
        entry = await self.code_store.take(code) if code else None
        if entry is None:
            raise InvalidGrant("Invalid or expired authorization code")

        if redirect_uri and entry.redirect_uri and redirect_uri != entry.redirect_uri:
            raise InvalidGrant("redirect_uri mismatch")

        if not verify_pkce(code_verifier or "", entry.code_challenge, entry.code_challenge_method):
            raise InvalidGrant("PKCE verification failed")

        return {
            "access_token": entry.access_token,
            "token_type": "Bearer",
            "expires_in": ACCESS_TOKEN_EXPIRES_IN,
            "refresh_token": entry.refresh_token,
            "scope": " ".join(self.scopes),
        }

    def get_routes(self) -> list[Route]:
        """Create the OAuth routes."""
        return self._create_oauth_routes()

    def _create_oauth_routes(self) -> list[Route]:
        endpoints = self

        def not_configured() -> JSONResponse:
            return JSONResponse({"error": "OAuth not configured"}, status_code=404)

        async def oauth_protected_resource(request: Request) -> JSONResponse:
            """Serve OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
            if not endpoints.enabled:
                return not_configured()
            return JSONResponse(endpoints.protected_resource_metadata())

        async def oauth_metadata(request: Request) -> JSONResponse:
            """Serve OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
            if not endpoints.enabled:
                return not_configured()
            return JSONResponse(endpoints.authorization_server_metadata())

        async def register_endpoint(request: Request) -> JSONResponse:
            """Handle Dynamic Client Registration (RFC 7591).

            Every registrant receives the same static client; nothing is
            persisted.
            """
            if not endpoints.enabled:
                return not_configured()
            try:
                body = await request.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}

            redirect_uris = body.get("redirect_uris") or ["https://chatgpt.com/oauth/callback"]
            logger.info(
                f"Client registration: {body.get('client_name', 'unnamed')} "
                f"redirect_uris={redirect_uris}"
            )
            return JSONResponse(
                {
                    "client_id": endpoints.client_id,
                    "client_secret": endpoints.identity_provider.public_key,
                    "client_id_issued_at": int(time.time()),
                    "client_secret_expires_at": 0,
                    "redirect_uris": redirect_uris,
                    "grant_types": ["authorization_code", "refresh_token"],
                    "response_types": ["code"],
                    "token_endpoint_auth_method": "client_secret_post",
                },
                status_code=201,
            )

        async def authorize_endpoint(request: Request) -> Response:
            """Serve the interactive sign-in page for an authorization request."""
            if not endpoints.enabled:
                return not_configured()

            params = request.query_params
            response_type = params.get("response_type", "code")
            redirect_uri = params.get("redirect_uri")
            state = params.get("state", "")
            code_challenge = params.get("code_challenge")
            code_challenge_method = params.get("code_challenge_method", "S256")

            if response_type != "code":
                return _oauth_error("unsupported_response_type")
            if not redirect_uri:
                return _oauth_error("invalid_request", "redirect_uri required")
            if not code_challenge:
                return _oauth_error("invalid_request", "code_challenge required (PKCE)")
            if code_challenge_method not in PKCE_METHODS:
                return _oauth_error(
                    "invalid_request", f"Unsupported code_challenge_method: {code_challenge_method}"
                )

            provider = endpoints.identity_provider
            page_state = {
                "passwordGrantUrl": f"{provider.base_url}/auth/v1/token?grant_type=password",
                "publicKey": provider.public_key,
                "generateUrl": f"{endpoints.server_url}/token/generate",
                "redirectUri": redirect_uri,
                "state": state,
                "codeChallenge": code_challenge,
                "codeChallengeMethod": code_challenge_method,
            }
            return HTMLResponse(build_login_page(page_state))

        async def generate_endpoint(request: Request) -> JSONResponse:
            """Mint a code for the sign-in page after a successful password login."""
            if not endpoints.enabled:
                return not_configured()
            try:
                body = CodeIssueRequest.model_validate(await _read_body(request))
            except ValidationError as e:
                return _invalid_body(e)
            except ValueError:
                return _oauth_error("invalid_request", "Invalid request body")

            if not body.access_token:
                return _oauth_error("invalid_request", "access_token required")
            if not body.code_challenge:
                return _oauth_error("invalid_request", "code_challenge required (PKCE)")

            entry = await endpoints.issue_code(
                access_token=body.access_token,
                refresh_token=body.refresh_token or "",
                code_challenge=body.code_challenge,
                code_challenge_method=body.code_challenge_method or "S256",
                redirect_uri=body.redirect_uri,
            )
            logger.info(f"Issued authorization code {mask_secret(entry.code)}")
            return JSONResponse({"code": entry.code})

        async def token_endpoint(request: Request) -> JSONResponse:
            """Handle OAuth token requests (authorization_code and refresh_token)."""
            if not endpoints.enabled:
                return not_configured()
            try:
                body = TokenRequest.model_validate(await _read_body(request))
            except ValidationError as e:
                return _invalid_body(e)
            except ValueError:
                return _oauth_error("invalid_request", "Invalid request body")

            grant_type = body.grant_type
            logger.debug(f"Token request: grant_type={grant_type}")

            try:
                if grant_type == "authorization_code":
                    if not body.code_verifier:
                        return _oauth_error("invalid_request", "code_verifier required")
                    return JSONResponse(
                        await endpoints.exchange_code(
                            body.code, body.code_verifier, body.redirect_uri
                        )
                    )
                elif grant_type == "refresh_token":
                    if not body.refresh_token:
                        return _oauth_error("invalid_request", "refresh_token required")
                    return JSONResponse(await _refresh(body.refresh_token))
                else:
                    return _oauth_error(
                        "unsupported_grant_type", f"Unsupported: {grant_type}"
                    )
            except InvalidGrant as e:
                logger.info(f"Token request rejected: {e.description}")
                return _oauth_error("invalid_grant", e.description)
            except IdentityProviderError as e:
                logger.error(f"Token refresh failed: {e}")
                return _oauth_error("temporarily_unavailable", str(e), status_code=503)

        async def _refresh(refresh_token: str) -> dict:
            data = await endpoints.identity_provider.refresh(refresh_token)
            return {
                "access_token": data["access_token"],
                "token_type": "Bearer",
                "expires_in": data.get("expires_in", ACCESS_TOKEN_EXPIRES_IN),
                "refresh_token": data.get("refresh_token", refresh_token),
                "scope": " ".join(endpoints.scopes),
            }

        return [
            Route(
                "/.well-known/oauth-protected-resource",
                oauth_protected_resource,
                methods=["GET"],
            ),
            Route(
                "/.well-known/oauth-authorization-server",
                oauth_metadata,
                methods=["GET"],
            ),
            Route("/oauth/register", register_endpoint, methods=["POST"]),
            Route("/authorize", authorize_endpoint, methods=["GET"]),
            Route("/token/generate", generate_endpoint, methods=["POST"]),
            Route("/token", token_endpoint, methods=["POST"]),
        ]
