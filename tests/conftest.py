"""Shared fixtures: an in-memory stand-in for the Snipt backend.

``FakeSnipt`` answers the snippet REST API, the hosted auth service and
the ``api_keys`` table over an ``httpx.MockTransport`` so no test touches
the network.
"""

import json
import uuid

import bcrypt
import httpx
import pytest

API_URL = "https://snipt.test"
SUPABASE_URL = "https://auth.snipt.test"
ANON_KEY = "anon-public-key"
SERVICE_ROLE_KEY = "service-role-secret"


def fast_hash(secret: str) -> str:
    """bcrypt hash with the minimum cost factor."""
    return bcrypt.hashpw(secret.encode(), bcrypt.gensalt(rounds=4)).decode()


class FakeSnipt:
    """Snippet API, auth service and key table in one request handler."""

    def __init__(self):
        self.snippets: dict[str, dict] = {}
        # bearer value accepted by the snippet API -> owning user
        self.backend_tokens: dict[str, str] = {}
        # access token accepted by the auth service -> user id
        self.access_tokens: dict[str, str] = {}
        # refresh token -> user id
        self.refresh_tokens: dict[str, str] = {}
        self.key_rows: list[dict] = []
        self.touched: list[str] = []
        self.requests: list[httpx.Request] = []
        self.auth_down = False

    def add_user(self, user_id: str, access_token: str, refresh_token: str | None = None):
        self.access_tokens[access_token] = user_id
        self.backend_tokens[access_token] = user_id
        if refresh_token:
            self.refresh_tokens[refresh_token] = user_id

    def add_api_key(self, key_id: str, user_id: str, secret: str) -> None:
        self.key_rows.append(
            {
                "id": key_id,
                "user_id": user_id,
                "key_hash": fast_hash(secret),
                "key_prefix": secret[:12],
            }
        )
        self.backend_tokens[secret] = user_id

    def add_snippet(self, user_id: str, **fields) -> dict:
        snippet = {
            "id": fields.pop("id", str(uuid.uuid4())),
            "description": None,
            "category": None,
            "tags": [],
            "context": None,
            "usage_count": 0,
            "user_id": user_id,
            "created_at": "2025-01-01T00:00:00Z",
            "updated_at": "2025-01-01T00:00:00Z",
            **fields,
        }
        self.snippets[snippet["id"]] = snippet
        return snippet

    def snippet_calls(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith("/api/snippets")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/auth/v1/user":
            return self._auth_user(request)
        if path == "/auth/v1/token":
            return self._auth_refresh(request)
        if path == "/rest/v1/api_keys":
            return self._api_keys(request)
        if path.startswith("/api/snippets"):
            return self._snippets(request)
        return httpx.Response(404, json={"error": "Not found"})

    def _auth_user(self, request):
        if self.auth_down:
            return httpx.Response(503, text="unavailable")
        token = request.headers.get("authorization", "").removeprefix("Bearer ")
        user_id = self.access_tokens.get(token)
        if request.headers.get("apikey") != ANON_KEY or user_id is None:
            return httpx.Response(401, json={"msg": "invalid JWT"})
        return httpx.Response(200, json={"id": user_id, "email": f"{user_id}@example.com"})

    def _auth_refresh(self, request):
        if self.auth_down:
            return httpx.Response(503, text="unavailable")
        body = json.loads(request.content or b"{}")
        user_id = self.refresh_tokens.pop(body.get("refresh_token"), None)
        if user_id is None:
            return httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "Refresh Token Not Found"}
            )
        access_token = f"access-{uuid.uuid4().hex}"
        refresh_token = f"refresh-{uuid.uuid4().hex}"
        self.add_user(user_id, access_token, refresh_token)
        return httpx.Response(
            200,
            json={
                "access_token": access_token,
                "refresh_token": refresh_token,
                "expires_in": 3600,
                "token_type": "bearer",
            },
        )

    def _api_keys(self, request):
        if request.headers.get("apikey") != SERVICE_ROLE_KEY:
            return httpx.Response(401, json={"message": "Invalid API key"})
        if request.method == "GET":
            return httpx.Response(200, json=self.key_rows)
        if request.method == "PATCH":
            key_id = request.url.params["id"].removeprefix("eq.")
            self.touched.append(key_id)
            return httpx.Response(204)
        return httpx.Response(405)

    def _snippets(self, request):
        token = request.headers.get("authorization", "").removeprefix("Bearer ")
        user_id = self.backend_tokens.get(token)
        if user_id is None:
            return httpx.Response(401, json={"error": "Unauthorized"})

        parts = request.url.path.strip("/").split("/")
        snippet_id = parts[2] if len(parts) > 2 else None

        if snippet_id is None and request.method == "GET":
            return httpx.Response(200, json=self._search(user_id, request.url.params))
        if snippet_id is None and request.method == "POST":
            body = json.loads(request.content)
            return httpx.Response(201, json=self.add_snippet(user_id, **body))

        snippet = self.snippets.get(snippet_id)
        if snippet is None or snippet["user_id"] != user_id:
            return httpx.Response(404, json={"error": "Snippet not found"})
        if request.method == "GET":
            return httpx.Response(200, json=snippet)
        if request.method == "PATCH":
            snippet.update(json.loads(request.content))
            snippet["updated_at"] = "2025-01-02T00:00:00Z"
            return httpx.Response(200, json=snippet)
        return httpx.Response(405)

    def _search(self, user_id, params) -> list[dict]:
        results = [s for s in self.snippets.values() if s["user_id"] == user_id]
        if query := params.get("query"):
            q = query.lower()
            results = [
                s for s in results
                if q in s["title"].lower()
                or q in (s["description"] or "").lower()
                or q in s["code"].lower()
            ]
        if language := params.get("language"):
            results = [s for s in results if s["language"] == language]
        if category := params.get("category"):
            results = [s for s in results if s["category"] == category]
        if tags := params.get("tags"):
            wanted = set(tags.split(","))
            results = [s for s in results if wanted & set(s["tags"])]
        limit = int(params.get("limit", 20))
        return results[:limit]


@pytest.fixture
def fake_snipt():
    return FakeSnipt()


@pytest.fixture
def transport(fake_snipt):
    return httpx.MockTransport(fake_snipt.handler)
