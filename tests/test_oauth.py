"""Tests for the authorization-code store and the OAuth endpoint set."""

import asyncio
import json

import httpx
import pytest
from starlette.applications import Starlette
from starlette.testclient import TestClient

from snipt_bridge.auth import IdentityProvider
from snipt_bridge.oauth import (
    AuthorizationCode,
    InMemoryAuthorizationCodeStore,
    OAuthEndpoints,
    build_login_page,
    generate_code,
    verify_pkce,
)

from .conftest import ANON_KEY, SUPABASE_URL

# RFC 7636 appendix B
VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
REDIRECT_URI = "https://chatgpt.com/connector_platform_oauth_redirect"
SERVER_URL = "https://mcp.snipt.test"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _entry(code: str = "code-1", expires_at: float = 1_000_600.0) -> AuthorizationCode:
    return AuthorizationCode(
        code=code,
        access_token="access-1",
        refresh_token="refresh-1",
        code_challenge=CHALLENGE,
        expires_at=expires_at,
    )


class TestInMemoryAuthorizationCodeStore:
    """Tests for single-use, expiring code storage."""

    async def test_take_returns_entry_once(self):
        store = InMemoryAuthorizationCodeStore(clock=FakeClock())
        await store.put(_entry())

        first = await store.take("code-1")
        second = await store.take("code-1")

        assert first.access_token == "access-1"
        assert second is None
        assert len(store) == 0

    async def test_unknown_code(self):
        store = InMemoryAuthorizationCodeStore(clock=FakeClock())
        await store.put(_entry())
        assert await store.take("other") is None
        assert "code-1" in store

    async def test_expired_code_not_found_and_removed(self):
        clock = FakeClock()
        store = InMemoryAuthorizationCodeStore(clock=clock)
        await store.put(_entry(expires_at=clock.now + 600))

        clock.now += 601
        assert await store.take("code-1") is None
        assert len(store) == 0

    async def test_code_valid_until_expiry(self):
        clock = FakeClock()
        store = InMemoryAuthorizationCodeStore(clock=clock)
        await store.put(_entry(expires_at=clock.now + 600))
        clock.now += 600
        assert await store.take("code-1") is not None

    async def test_expired_entries_purged_lazily(self):
        clock = FakeClock()
        store = InMemoryAuthorizationCodeStore(clock=clock)
        await store.put(_entry("old", expires_at=clock.now + 10))
        clock.now += 11
        await store.put(_entry("new", expires_at=clock.now + 600))
        assert "old" not in store
        assert "new" in store

    async def test_duplicate_put_rejected(self):
        store = InMemoryAuthorizationCodeStore(clock=FakeClock())
        await store.put(_entry())
        with pytest.raises(ValueError):
            await store.put(_entry())

    async def test_concurrent_takes_succeed_once(self):
        store = InMemoryAuthorizationCodeStore(clock=FakeClock())
        await store.put(_entry())
        results = await asyncio.gather(*(store.take("code-1") for _ in range(10)))
        assert sum(r is not None for r in results) == 1

    def test_repr_masks_code(self):
        code = generate_code()
        assert code not in repr(_entry(code))


class TestCodeGeneration:
    def test_code_is_random_and_urlsafe(self):
        codes = {generate_code() for _ in range(50)}
        assert len(codes) == 50
        for code in codes:
            assert len(code) == 43
            assert set(code) <= set(
                "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
            )


class TestVerifyPkce:
    def test_s256(self):
        assert verify_pkce(VERIFIER, CHALLENGE, "S256") is True
        assert verify_pkce("wrong", CHALLENGE, "S256") is False

    def test_plain(self):
        assert verify_pkce("abc", "abc", "plain") is True
        assert verify_pkce("abc", "abd", "plain") is False

    def test_unknown_method(self):
        assert verify_pkce(VERIFIER, CHALLENGE, "S512") is False


class TestLoginPage:
    def test_page_state_is_escaped(self):
        page = build_login_page(
            {"state": "</script><script>alert(1)</script>", "redirectUri": REDIRECT_URI},
            client_name="<b>Evil</b>",
        )
        assert "</script><script>alert(1)" not in page
        assert "&lt;b&gt;Evil&lt;/b&gt;" in page
        assert "<\\/script>" in page


class TestOAuthNotConfigured:
    """Every OAuth route answers 404 without an identity provider."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/.well-known/oauth-protected-resource"),
            ("GET", "/.well-known/oauth-authorization-server"),
            ("POST", "/oauth/register"),
            ("GET", "/authorize"),
            ("POST", "/token/generate"),
            ("POST", "/token"),
        ],
    )
    def test_route_not_configured(self, method, path):
        endpoints = OAuthEndpoints(server_url=SERVER_URL)
        client = TestClient(Starlette(routes=endpoints.get_routes()))
        response = client.request(method, path)
        assert response.status_code == 404
        assert response.json() == {"error": "OAuth not configured"}


class TestOAuthEndpoints:
    """Tests for the OAuth routes with a configured identity provider."""

    @pytest.fixture(autouse=True)
    def setup(self, fake_snipt, transport):
        self.fake = fake_snipt
        self.clock = FakeClock()
        self.store = InMemoryAuthorizationCodeStore(clock=self.clock)
        self.endpoints = OAuthEndpoints(
            server_url=SERVER_URL + "/",
            identity_provider=IdentityProvider(SUPABASE_URL, ANON_KEY, transport=transport),
            code_store=self.store,
            clock=self.clock,
        )
        self.client = TestClient(Starlette(routes=self.endpoints.get_routes()))

    def _issue_code(self, **overrides) -> str:
        body = {
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "redirect_uri": REDIRECT_URI,
            "state": "xyz",
            "code_challenge": CHALLENGE,
            "code_challenge_method": "S256",
            **overrides,
        }
        response = self.client.post("/token/generate", json=body)
        assert response.status_code == 200
        return response.json()["code"]

    def _exchange(self, code, verifier=VERIFIER, **extra):
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": verifier,
            "redirect_uri": REDIRECT_URI,
            **extra,
        }
        return self.client.post("/token", data=data)

    def test_protected_resource_metadata(self):
        response = self.client.get("/.well-known/oauth-protected-resource")
        assert response.status_code == 200
        data = response.json()
        assert data["resource"] == SERVER_URL
        assert data["authorization_servers"] == [SERVER_URL]
        assert data["scopes_supported"] == ["snippets:read", "snippets:write"]

    def test_authorization_server_metadata(self):
        data = self.client.get("/.well-known/oauth-authorization-server").json()
        assert data["issuer"] == SERVER_URL
        assert data["authorization_endpoint"] == f"{SERVER_URL}/authorize"
        assert data["token_endpoint"] == f"{SERVER_URL}/token"
        assert data["registration_endpoint"] == f"{SERVER_URL}/oauth/register"
        assert data["code_challenge_methods_supported"] == ["S256", "plain"]
        assert "refresh_token" in data["grant_types_supported"]

    def test_register_returns_static_client(self):
        response = self.client.post(
            "/oauth/register", json={"client_name": "ChatGPT", "redirect_uris": [REDIRECT_URI]}
        )
        assert response.status_code == 201
        data = response.json()
        assert data["client_id"] == "chatgpt-connector"
        assert data["client_secret"] == ANON_KEY
        assert data["redirect_uris"] == [REDIRECT_URI]

        again = self.client.post("/oauth/register", json={}).json()
        assert again["client_id"] == data["client_id"]

    def test_register_tolerates_empty_body(self):
        response = self.client.post("/oauth/register", content=b"")
        assert response.status_code == 201

    def test_authorize_requires_response_type_code(self):
        response = self.client.get("/authorize", params={"response_type": "token"})
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_response_type"

    def test_authorize_requires_redirect_uri(self):
        response = self.client.get("/authorize", params={"response_type": "code"})
        assert response.status_code == 400
        assert "redirect_uri" in response.json()["error_description"]

    def test_authorize_requires_code_challenge(self):
        response = self.client.get(
            "/authorize", params={"response_type": "code", "redirect_uri": REDIRECT_URI}
        )
        assert response.status_code == 400
        assert "code_challenge" in response.json()["error_description"]

    def test_authorize_rejects_unknown_challenge_method(self):
        response = self.client.get(
            "/authorize",
            params={
                "redirect_uri": REDIRECT_URI,
                "code_challenge": CHALLENGE,
                "code_challenge_method": "S512",
            },
        )
        assert response.status_code == 400

    def test_authorize_renders_login_page(self):
        response = self.client.get(
            "/authorize",
            params={
                "response_type": "code",
                "redirect_uri": REDIRECT_URI,
                "state": '"><script>x</script>',
                "code_challenge": CHALLENGE,
            },
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        page = response.text
        assert "Sign in to Snipt" in page
        assert CHALLENGE in page
        assert f"{SUPABASE_URL}/auth/v1/token?grant_type=password" in page
        assert f"{SERVER_URL}/token/generate" in page
        assert "<script>x</script>" not in page

    def test_generate_requires_access_token_and_challenge(self):
        assert self.client.post("/token/generate", json={"code_challenge": "c"}).status_code == 400
        response = self.client.post("/token/generate", json={"access_token": "a"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_generate_stores_bundle_with_ttl(self):
        code = self._issue_code()
        assert code in self.store
        entry = self.store._codes[code]
        assert entry.expires_at == self.clock.now + 600
        assert entry.redirect_uri == REDIRECT_URI

    def test_full_exchange(self):
        code = self._issue_code()
        response = self._exchange(code)
        assert response.status_code == 200
        data = response.json()
        assert data == {
            "access_token": "access-1",
            "token_type": "Bearer",
            "expires_in": 3600,
            "refresh_token": "refresh-1",
            "scope": "snippets:read snippets:write",
        }

    def test_code_is_single_use(self):
        code = self._issue_code()
        assert self._exchange(code).status_code == 200
        response = self._exchange(code)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_unknown_code_does_not_mutate_store(self):
        code = self._issue_code()
        response = self._exchange("not-a-code")
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"
        assert code in self.store
        assert len(self.store) == 1

    def test_expired_code(self):
        code = self._issue_code()
        self.clock.now += 601
        response = self._exchange(code)
        assert response.json()["error"] == "invalid_grant"

    def test_wrong_verifier_consumes_code(self):
        code = self._issue_code()
        response = self._exchange(code, verifier="not-the-verifier")
        assert response.status_code == 400
        assert response.json() == {
            "error": "invalid_grant",
            "error_description": "PKCE verification failed",
        }
        assert self._exchange(code).json()["error"] == "invalid_grant"

    def test_missing_verifier(self):
        code = self._issue_code()
        response = self.client.post(
            "/token", data={"grant_type": "authorization_code", "code": code}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert code in self.store

    def test_redirect_uri_mismatch(self):
        code = self._issue_code()
        response = self._exchange(code, redirect_uri="https://evil.example.com/cb")
        assert response.json() == {
            "error": "invalid_grant",
            "error_description": "redirect_uri mismatch",
        }

    def test_plain_challenge(self):
        code = self._issue_code(code_challenge="plain-secret", code_challenge_method="plain")
        assert self._exchange(code, verifier="plain-secret").status_code == 200

    def test_non_string_verifier_rejected_before_consuming_code(self):
        code = self._issue_code(code_challenge="plain-secret", code_challenge_method="plain")
        response = self.client.post(
            "/token",
            json={"grant_type": "authorization_code", "code": code, "code_verifier": 123},
        )
        assert response.status_code == 400
        assert response.json() == {
            "error": "invalid_request",
            "error_description": "Invalid code_verifier",
        }
        assert code in self.store

    def test_generate_rejects_non_string_challenge(self):
        response = self.client.post(
            "/token/generate", json={"access_token": "access-1", "code_challenge": 42}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert len(self.store) == 0

    def test_generate_rejects_unadvertised_challenge_method(self):
        response = self.client.post(
            "/token/generate",
            json={"access_token": "a", "code_challenge": "c", "code_challenge_method": "S512"},
        )
        assert response.status_code == 400
        assert response.json()["error_description"] == "Invalid code_challenge_method"

    def test_advertised_methods_accepted_by_authorize(self):
        methods = self.client.get("/.well-known/oauth-authorization-server").json()[
            "code_challenge_methods_supported"
        ]
        for method in methods:
            response = self.client.get(
                "/authorize",
                params={
                    "response_type": "code",
                    "redirect_uri": REDIRECT_URI,
                    "code_challenge": CHALLENGE,
                    "code_challenge_method": method,
                },
            )
            assert response.status_code == 200

    def test_token_accepts_json_body(self):
        code = self._issue_code()
        response = self.client.post(
            "/token",
            json={
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": VERIFIER,
            },
        )
        assert response.status_code == 200

    def test_token_invalid_body(self):
        response = self.client.post(
            "/token", content=b"\xff\xfe", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_unsupported_grant_type(self):
        response = self.client.post("/token", data={"grant_type": "client_credentials"})
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    def test_refresh_grant(self):
        self.fake.add_user("user-1", "access-1", "refresh-1")
        response = self.client.post(
            "/token", data={"grant_type": "refresh_token", "refresh_token": "refresh-1"}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["access_token"].startswith("access-")
        assert data["refresh_token"] != "refresh-1"
        assert data["token_type"] == "Bearer"
        forwarded = self.fake.requests[-1]
        assert forwarded.url.path == "/auth/v1/token"
        assert json.loads(forwarded.content) == {"refresh_token": "refresh-1"}

    def test_refresh_grant_rejected(self):
        response = self.client.post(
            "/token", data={"grant_type": "refresh_token", "refresh_token": "unknown"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_refresh_grant_requires_token(self):
        response = self.client.post("/token", data={"grant_type": "refresh_token"})
        assert response.json()["error"] == "invalid_request"

    def test_refresh_grant_provider_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        self.endpoints.identity_provider = IdentityProvider(
            SUPABASE_URL, ANON_KEY, transport=httpx.MockTransport(handler)
        )
        response = self.client.post(
            "/token", data={"grant_type": "refresh_token", "refresh_token": "refresh-1"}
        )
        assert response.status_code == 503
        assert response.json()["error"] == "temporarily_unavailable"

    def test_resource_metadata_url(self):
        assert self.endpoints.get_resource_metadata_url() == (
            f"{SERVER_URL}/.well-known/oauth-protected-resource"
        )
