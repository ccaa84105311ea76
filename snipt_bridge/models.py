"""Data models for the Snipt bridge."""

from typing import Literal, get_args

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class SnippetContext(BaseModel):
    """Usage guidance attached to a snippet."""

    when_to_use: str | None = None
    common_mistakes: list[str] | None = None
    prerequisites: list[str] | None = None


class Snippet(BaseModel):
    """A snippet as returned by the backend API.

    The bridge never owns snippets; unknown backend fields are kept so
    nothing is lost when a snippet is passed back to an agent.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    title: str
    description: str | None = None
    code: str
    language: str
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    context: SnippetContext | None = None
    usage_count: int = 0
    user_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class SnippetFilter(BaseModel):
    """Search filters accepted by the backend's list endpoint."""

    query: str | None = None
    tags: list[str] | None = None
    language: str | None = None
    category: str | None = None
    limit: int | None = None

    def to_params(self) -> dict[str, str]:
        """Build query parameters, omitting absent filters."""
        params: dict[str, str] = {}
        if self.query:
            params["query"] = self.query
        if self.language:
            params["language"] = self.language
        if self.category:
            params["category"] = self.category
        if self.limit:
            params["limit"] = str(self.limit)
        if self.tags:
            params["tags"] = ",".join(self.tags)
        return params


class SnippetCreate(BaseModel):
    """Fields for a new snippet."""

    title: str = Field(min_length=1, max_length=200)
    code: str = Field(min_length=1)
    language: str = Field(min_length=1)
    description: str | None = Field(default=None, max_length=500)
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    context: SnippetContext | None = None


class SnippetUpdate(BaseModel):
    """Partial update for a snippet.

    Only fields that were explicitly set are sent downstream, so absent
    fields are left unchanged by the backend.
    """

    title: str | None = Field(default=None, min_length=1, max_length=200)
    code: str | None = Field(default=None, min_length=1)
    language: str | None = Field(default=None, min_length=1)
    description: str | None = Field(default=None, max_length=500)
    category: str | None = None
    tags: list[str] | None = None
    context: SnippetContext | None = None

    def to_payload(self) -> dict:
        """Serialize only the fields that were provided."""
        return self.model_dump(exclude_unset=True, exclude_none=True)


class ApiKeyRecord(BaseModel):
    """An active API key as stored by the backend (hash only, never the key)."""

    id: str
    user_id: str
    key_hash: str
    # the hosted table calls this column key_prefix
    prefix: str | None = Field(
        default=None, validation_alias=AliasChoices("prefix", "key_prefix")
    )


PkceMethod = Literal["S256", "plain"]
PKCE_METHODS: tuple[str, ...] = get_args(PkceMethod)


class CodeIssueRequest(BaseModel):
    """Token bundle posted by the sign-in page to ``/token/generate``."""

    access_token: str | None = None
    refresh_token: str | None = None
    code_challenge: str | None = None
    code_challenge_method: PkceMethod | None = None
    redirect_uri: str | None = None


class TokenRequest(BaseModel):
    """A ``/token`` request, form-encoded or JSON.

    Unknown parameters such as ``client_id`` are ignored.
    """

    grant_type: str | None = None
    code: str | None = None
    code_verifier: str | None = None
    redirect_uri: str | None = None
    refresh_token: str | None = None


class BridgeConfig(BaseModel):
    """Root configuration for the bridge server."""

    model_config = ConfigDict(extra="forbid")

    api_key: str | None = None
    api_url: str = "https://snipt.app"
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    supabase_service_role_key: str | None = None
    port: int = 3001
    server_url: str | None = None
    api_key_prefix: str = "snip_"
    session_secret: str | None = None
    request_timeout: float = 10.0
    code_ttl: int = 600
    api_keys: list[ApiKeyRecord] = []
    oauth_client_id: str = "chatgpt-connector"
    scopes: list[str] = ["snippets:read", "snippets:write"]

    @property
    def oauth_enabled(self) -> bool:
        return bool(self.supabase_url)

    @property
    def api_key_enabled(self) -> bool:
        return bool(self.api_key)

    @property
    def public_url(self) -> str:
        """Externally visible base URL of this server, without trailing slash."""
        url = self.server_url or f"http://localhost:{self.port}"
        return url.rstrip("/")
