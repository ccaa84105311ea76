"""Server assembly for the Snipt bridge.

Wires configuration into the auth resolver, the OAuth endpoint set and
the snippet tools, and exposes the result as a Starlette app with the
protocol endpoint at ``/mcp``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route

from snipt_bridge import __version__
from snipt_bridge.auth import (
    ApiKeyStore,
    AuthResolver,
    BridgeAuthMiddleware,
    IdentityProvider,
    PostgrestApiKeyStore,
    StaticApiKeyStore,
)
from snipt_bridge.backend import SnippetApiClient
from snipt_bridge.config import require_valid_config
from snipt_bridge.models import BridgeConfig
from snipt_bridge.oauth import (
    AuthorizationCodeStore,
    InMemoryAuthorizationCodeStore,
    OAuthEndpoints,
)
from snipt_bridge.tools import ClientSelector, register_snippet_tools

logger = logging.getLogger(__name__)

SERVER_NAME = "snipt-mcp-http"


class SniptBridge:
    """The bridge server: one FastMCP instance plus its HTTP surface."""

    def __init__(
        self,
        config: BridgeConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        code_store: AuthorizationCodeStore | None = None,
    ):
        self.config = require_valid_config(config)
        self.transport = transport

        self.identity_provider: IdentityProvider | None = None
        if config.oauth_enabled:
            self.identity_provider = IdentityProvider(
                config.supabase_url,
                config.supabase_anon_key,
                timeout=config.request_timeout,
                transport=transport,
            )

        self.resolver = AuthResolver(
            key_store=self._create_key_store(),
            identity_provider=self.identity_provider,
            session_secret=config.session_secret,
            api_key_prefix=config.api_key_prefix,
        )

        self.oauth = OAuthEndpoints(
            server_url=config.public_url,
            identity_provider=self.identity_provider,
            code_store=code_store or InMemoryAuthorizationCodeStore(),
            client_id=config.oauth_client_id,
            scopes=list(config.scopes),
            code_ttl=config.code_ttl,
        )

        default_client = None
        if config.api_key_enabled:
            default_client = SnippetApiClient(
                config.api_key,
                base_url=config.api_url,
                timeout=config.request_timeout,
                transport=transport,
            )
        self.selector = ClientSelector(
            default_client=default_client,
            oauth_enabled=config.oauth_enabled,
            api_url=config.api_url,
            timeout=config.request_timeout,
            transport=transport,
        )

        self.mcp = FastMCP("snipt-http")
        register_snippet_tools(self.mcp, self.selector)

    def _create_key_store(self) -> ApiKeyStore | None:
        """Pick where inbound API keys are validated, if anywhere."""
        config = self.config
        if config.supabase_url and config.supabase_service_role_key:
            return PostgrestApiKeyStore(
                config.supabase_url,
                config.supabase_service_role_key,
                timeout=config.request_timeout,
                transport=self.transport,
            )
        if config.api_keys:
            return StaticApiKeyStore(config.api_keys)
        return None

    def health(self) -> dict:
        return {
            "status": "ok",
            "server": SERVER_NAME,
            "version": __version__,
            "auth": {
                "apiKey": self.config.api_key_enabled,
                "oauth": self.config.oauth_enabled,
            },
        }

    def http_app(self) -> Starlette:
        """Create the ASGI app.

        Routes:
            - /health - liveness and auth configuration
            - /.well-known/*, /oauth/register, /authorize, /token* - OAuth
            - /mcp - protocol endpoint (stateless, JSON responses)
        """
        mcp_app = self.mcp.http_app(path="/mcp", stateless_http=True, json_response=True)
        resolver = self.resolver

        @asynccontextmanager
        async def lifespan(app: Starlette):  # pragma: no cover
            async with mcp_app.lifespan(mcp_app):
                try:
                    yield
                finally:
                    await resolver.drain()

        async def health_check(request: Request) -> JSONResponse:
            return JSONResponse(self.health())

        routes: list[Route | Mount] = [
            Route("/health", health_check, methods=["GET"]),
            *self.oauth.get_routes(),
            Mount("/", app=mcp_app),
        ]

        resource_metadata_url = (
            self.oauth.get_resource_metadata_url() if self.config.oauth_enabled else None
        )
        middleware = [
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["GET", "POST", "OPTIONS"],
                allow_headers=["*"],
                expose_headers=["WWW-Authenticate", "Mcp-Session-Id"],
            ),
            Middleware(
                BridgeAuthMiddleware,
                resolver=resolver,
                oauth_enabled=self.config.oauth_enabled,
                resource_metadata_url=resource_metadata_url,
            ),
        ]

        return Starlette(routes=routes, middleware=middleware, lifespan=lifespan)

    def run(self, transport: str = "http", port: int | None = None) -> None:  # pragma: no cover
        """Run the bridge server."""
        if transport == "stdio":
            # Local single-user mode: every call uses the configured API key
            if not self.config.api_key_enabled:
                logger.warning("stdio transport without SNIPT_API_KEY; tool calls will fail")
            self.mcp.run(transport="stdio")
            return

        import uvicorn

        port = port or self.config.port
        logger.info(f"Snipt bridge listening on port {port}")
        logger.info(f"MCP endpoint: {self.config.public_url}/mcp")
        if self.config.oauth_enabled:
            logger.info(
                f"OAuth discovery: {self.oauth.get_resource_metadata_url()}"
            )
        uvicorn.run(self.http_app(), host="0.0.0.0", port=port)
