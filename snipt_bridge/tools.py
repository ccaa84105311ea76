"""Snippet tools exposed to agents.

Every tool body runs inside :func:`dispatch`, which looks up the caller's
identity, picks the backend client scoped to that identity and turns
bridge errors into error-flagged tool results.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Annotated, Any

import httpx
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.tools.tool import ToolResult
from pydantic import Field, ValidationError

from snipt_bridge.auth import ResolvedIdentity
from snipt_bridge.backend import DEFAULT_TIMEOUT, SnippetApiClient
from snipt_bridge.context import lookup_identity
from snipt_bridge.debug import CallMetrics, format_args, get_request_id
from snipt_bridge.exceptions import AuthenticationRequired, BackendError
from snipt_bridge.models import (
    Snippet,
    SnippetContext,
    SnippetCreate,
    SnippetFilter,
    SnippetUpdate,
)

logger = logging.getLogger(__name__)

CONNECTOR_SEARCH_LIMIT = 10
NO_RESULTS_TEXT = "No snippets found matching your search criteria."


@dataclass(frozen=True)
class ToolInvocation:
    """One tool call on behalf of one caller."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    identity: ResolvedIdentity | None = None


class ClientSelector:
    """Choose the backend client a tool call presents downstream.

    Selection order:
    1. An identity carrying a credential gets a client built from it
    2. With OAuth configured, anything else inside an HTTP request fails
       closed, including a session identity with no credential of its own
    3. Otherwise the default (API-key) client, when one is configured
    """

    def __init__(
        self,
        default_client: SnippetApiClient | None = None,
        oauth_enabled: bool = False,
        api_url: str = "https://snipt.app",
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.default_client = default_client
        self.oauth_enabled = oauth_enabled
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def for_identity(
        self, identity: ResolvedIdentity | None, in_http_request: bool
    ) -> SnippetApiClient:
        if identity is not None and identity.credential is not None:
            return SnippetApiClient(
                identity.credential.secret,
                base_url=self.api_url,
                timeout=self.timeout,
                transport=self.transport,
            )

        if self.oauth_enabled and (in_http_request or identity is not None):
            raise AuthenticationRequired()

        if self.default_client is not None:
            return self.default_client

        raise AuthenticationRequired()

    def snippet_url(self, snippet_id: str) -> str:
        return f"{self.api_url}/snippets/{snippet_id}"


@asynccontextmanager
async def dispatch(
    selector: ClientSelector, name: str, arguments: dict[str, Any]
) -> AsyncIterator[SnippetApiClient]:
    """Run one tool body with the caller's client, timing and error mapping."""
    in_http_request, identity = lookup_identity()
    invocation = ToolInvocation(name=name, arguments=arguments, identity=identity)
    metrics = CallMetrics(
        tool_name=invocation.name,
        grant_kind=identity.grant_kind if identity else None,
        request_id=get_request_id(),
    )
    logger.debug(f"CALL {invocation.name} args={format_args(invocation.arguments)}")

    try:
        yield selector.for_identity(identity, in_http_request)
    except AuthenticationRequired as e:
        metrics.complete(success=False, error=e.message)
        metrics.log()
        raise ToolError(e.message) from e
    except BackendError as e:
        metrics.complete(success=False, error=e.message)
        metrics.log()
        raise ToolError(e.message) from e
    except ValidationError as e:
        message = f"Invalid arguments: {e.errors()[0]['msg']}"
        metrics.complete(success=False, error=message)
        metrics.log()
        raise ToolError(message) from e
    else:
        metrics.complete()
        metrics.log()


# =============================================================================
# Rendering
# =============================================================================


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def _code_block(snippet: Snippet) -> str:
    return f"```{snippet.language}\n{snippet.code}\n```"


def format_search_results(snippets: list[Snippet]) -> str:
    """Markdown summary of a search, one block per snippet."""
    if not snippets:
        return NO_RESULTS_TEXT
    blocks = []
    for s in snippets:
        text = f"**{s.title}** ({s.language})\n"
        if s.description:
            text += f"{s.description}\n"
        text += _code_block(s)
        blocks.append(text)
    return f"Found {len(snippets)} snippet(s):\n\n" + "\n\n".join(blocks)


def format_snippet_markdown(snippet: Snippet) -> str:
    """Full markdown detail, including usage count and context."""
    text = f"# {snippet.title}\n\n"
    text += f"**Language**: {snippet.language}\n"
    if snippet.category:
        text += f"**Category**: {snippet.category}\n"
    if snippet.tags:
        text += f"**Tags**: {', '.join(snippet.tags)}\n"
    text += f"**Used**: {snippet.usage_count} times\n\n"

    if snippet.description:
        text += f"{snippet.description}\n\n"
    text += _code_block(snippet) + "\n\n"

    context = snippet.context
    if context and context.when_to_use:
        text += f"**When to use**: {context.when_to_use}\n\n"
    if context and context.common_mistakes:
        text += f"**Common mistakes**:\n{_bullets(context.common_mistakes)}\n\n"
    if context and context.prerequisites:
        text += f"**Prerequisites**:\n{_bullets(context.prerequisites)}\n"
    return text.rstrip("\n") + "\n"


def format_fetch_text(snippet: Snippet) -> str:
    """Document text for the connector ``fetch`` result."""
    text = f"# {snippet.title}\n\n"
    if snippet.description:
        text += f"{snippet.description}\n\n"
    text += f"**Language**: {snippet.language}\n"
    if snippet.category:
        text += f"**Category**: {snippet.category}\n"
    if snippet.tags:
        text += f"**Tags**: {', '.join(snippet.tags)}\n"
    text += f"\n{_code_block(snippet)}\n"

    context = snippet.context
    if context and context.when_to_use:
        text += f"\n**When to use**: {context.when_to_use}\n"
    if context and context.prerequisites:
        text += f"\n**Prerequisites**:\n{_bullets(context.prerequisites)}\n"
    if context and context.common_mistakes:
        text += f"\n**Common mistakes**:\n{_bullets(context.common_mistakes)}\n"
    return text


def snippet_summary(snippet: Snippet) -> dict[str, Any]:
    """Structured form of a search hit."""
    return {
        "id": snippet.id,
        "title": snippet.title,
        "code": snippet.code,
        "language": snippet.language,
        "description": snippet.description,
        "category": snippet.category,
        "tags": snippet.tags,
        "usage_count": snippet.usage_count,
    }


def build_context(
    when_to_use: str | None = None,
    common_mistakes: list[str] | None = None,
    prerequisites: list[str] | None = None,
) -> SnippetContext | None:
    """Nest flat context arguments, keeping only the ones provided."""
    fields = {
        "when_to_use": when_to_use,
        "common_mistakes": common_mistakes,
        "prerequisites": prerequisites,
    }
    provided = {k: v for k, v in fields.items() if v is not None}
    if not provided:
        return None
    return SnippetContext(**provided)


def _drop_none(arguments: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in arguments.items() if v is not None}


# =============================================================================
# Registration
# =============================================================================


def _tool_meta(invoking: str, invoked: str, scope: str, oauth_enabled: bool) -> dict:
    meta: dict[str, Any] = {
        "openai/toolInvocation/invoking": invoking,
        "openai/toolInvocation/invoked": invoked,
    }
    if oauth_enabled:
        meta["openai/security"] = [{"type": "oauth2", "scopes": [scope]}]
    return meta


def register_snippet_tools(mcp: FastMCP, selector: ClientSelector) -> None:
    """Register the snippet tools on a FastMCP server."""
    oauth_enabled = selector.oauth_enabled

    @mcp.tool(
        name="search",
        description=(
            "Search code snippets by query. Returns a list of matching snippets "
            "with their metadata."
        ),
        meta=_tool_meta("Searching snippets...", "Found snippets", "snippets:read", oauth_enabled),
    )
    async def search(
        query: Annotated[
            str, Field(description="Search query to match against title, description, and code")
        ],
    ) -> ToolResult:
        async with dispatch(selector, "search", {"query": query}) as client:
            snippets = await client.search_snippets(
                SnippetFilter(query=query, limit=CONNECTOR_SEARCH_LIMIT)
            )
        results = [
            {"id": s.id, "title": s.title, "url": selector.snippet_url(s.id)}
            for s in snippets
        ]
        return ToolResult(content=json.dumps({"results": results}))

    @mcp.tool(
        name="fetch",
        description=(
            "Retrieve complete snippet content by ID. Use this after finding "
            "relevant snippets with the search tool."
        ),
        meta=_tool_meta("Fetching snippet...", "Retrieved snippet", "snippets:read", oauth_enabled),
    )
    async def fetch(
        id: Annotated[str, Field(description="The unique ID of the snippet to fetch")],
    ) -> ToolResult:
        async with dispatch(selector, "fetch", {"id": id}) as client:
            snippet = await client.get_snippet(id)
        document = {
            "id": snippet.id,
            "title": snippet.title,
            "text": format_fetch_text(snippet),
            "url": selector.snippet_url(snippet.id),
            "metadata": {
                "language": snippet.language,
                "category": snippet.category,
                "tags": snippet.tags,
                "usage_count": snippet.usage_count,
            },
        }
        return ToolResult(content=json.dumps(document))

    @mcp.tool(
        name="search_snippets",
        description=(
            "Search code snippets by query, tags, language, or category. Returns "
            "matching snippets with their code, metadata, and context."
        ),
        meta=_tool_meta("Searching snippets...", "Found snippets", "snippets:read", oauth_enabled),
    )
    async def search_snippets(
        query: Annotated[
            str | None,
            Field(description="Search query to match against title, description, and code"),
        ] = None,
        tags: Annotated[
            list[str] | None, Field(description="Filter by tags (e.g., ['git', 'deployment'])")
        ] = None,
        language: Annotated[
            str | None,
            Field(description="Filter by programming language (e.g., 'python', 'javascript')"),
        ] = None,
        category: Annotated[
            str | None, Field(description="Filter by category (e.g., 'CLI', 'Database', 'API')")
        ] = None,
        limit: Annotated[
            int | None,
            Field(description="Maximum number of results to return (default: 20)", ge=1),
        ] = None,
    ) -> ToolResult:
        arguments = _drop_none(
            {"query": query, "tags": tags, "language": language, "category": category, "limit": limit}
        )
        async with dispatch(selector, "search_snippets", arguments) as client:
            snippets = await client.search_snippets(SnippetFilter(**arguments))
        return ToolResult(
            content=format_search_results(snippets),
            structured_content={"snippets": [snippet_summary(s) for s in snippets]},
        )

    @mcp.tool(
        name="get_snippet",
        description=(
            "Get a specific snippet by ID. Returns the complete snippet with all "
            "details including code, metadata, and context."
        ),
        meta=_tool_meta("Retrieving snippet...", "Retrieved snippet", "snippets:read", oauth_enabled),
    )
    async def get_snippet(
        id: Annotated[str, Field(description="The unique ID of the snippet")],
    ) -> ToolResult:
        async with dispatch(selector, "get_snippet", {"id": id}) as client:
            snippet = await client.get_snippet(id)
        return ToolResult(content=format_snippet_markdown(snippet))

    @mcp.tool(
        name="create_snippet",
        description=(
            "Create a new code snippet. Use this to save commands, code blocks, or "
            "solutions you've just helped with so they can be reused later. Include "
            "rich context like when to use it, common mistakes, and prerequisites."
        ),
        meta=_tool_meta("Creating snippet...", "Created snippet", "snippets:write", oauth_enabled),
    )
    async def create_snippet(
        title: Annotated[
            str,
            Field(description="Short, descriptive title for the snippet", min_length=1, max_length=200),
        ],
        code: Annotated[str, Field(description="The actual code or command", min_length=1)],
        language: Annotated[
            str,
            Field(
                description="Programming language or type (e.g., 'bash', 'python', 'javascript')",
                min_length=1,
            ),
        ],
        description: Annotated[
            str | None,
            Field(description="Detailed explanation of what this code does", max_length=500),
        ] = None,
        category: Annotated[
            str | None,
            Field(description="Category like 'CLI', 'Database', 'API', 'DevOps', etc."),
        ] = None,
        tags: Annotated[
            list[str] | None,
            Field(description="Tags for easier searching (e.g., ['git', 'deploy', 'automation'])"),
        ] = None,
        when_to_use: Annotated[
            str | None, Field(description="Explain when this snippet should be used")
        ] = None,
        common_mistakes: Annotated[
            list[str] | None,
            Field(description="Common mistakes or pitfalls to avoid when using this"),
        ] = None,
        prerequisites: Annotated[
            list[str] | None, Field(description="What needs to be set up or installed first")
        ] = None,
    ) -> ToolResult:
        arguments = _drop_none(
            {
                "title": title,
                "code": code,
                "language": language,
                "description": description,
                "category": category,
                "tags": tags,
            }
        )
        async with dispatch(selector, "create_snippet", arguments) as client:
            fields = SnippetCreate(
                **arguments,
                context=build_context(when_to_use, common_mistakes, prerequisites),
            )
            snippet = await client.create_snippet(fields)
        return ToolResult(
            content=f'Successfully created snippet "{snippet.title}" (ID: {snippet.id})',
            structured_content={"id": snippet.id, "title": snippet.title},
        )

    @mcp.tool(
        name="update_snippet",
        description=(
            "Update an existing snippet. Use this to add lessons learned, fix code, "
            "or improve context. Fields that are not provided are left unchanged."
        ),
        meta=_tool_meta("Updating snippet...", "Updated snippet", "snippets:write", oauth_enabled),
    )
    async def update_snippet(
        id: Annotated[str, Field(description="The unique ID of the snippet to update")],
        title: Annotated[
            str | None, Field(description="Updated title", min_length=1, max_length=200)
        ] = None,
        code: Annotated[str | None, Field(description="Updated code", min_length=1)] = None,
        language: Annotated[
            str | None, Field(description="Updated language", min_length=1)
        ] = None,
        description: Annotated[
            str | None, Field(description="Updated description", max_length=500)
        ] = None,
        category: Annotated[str | None, Field(description="Updated category")] = None,
        tags: Annotated[list[str] | None, Field(description="Updated tags")] = None,
        when_to_use: Annotated[str | None, Field(description="Updated usage guidance")] = None,
        common_mistakes: Annotated[
            list[str] | None, Field(description="Updated common mistakes")
        ] = None,
        prerequisites: Annotated[
            list[str] | None, Field(description="Updated prerequisites")
        ] = None,
    ) -> ToolResult:
        updates = _drop_none(
            {
                "title": title,
                "code": code,
                "language": language,
                "description": description,
                "category": category,
                "tags": tags,
            }
        )
        context = build_context(when_to_use, common_mistakes, prerequisites)
        if context is not None:
            updates["context"] = context

        async with dispatch(selector, "update_snippet", {"id": id, **updates}) as client:
            snippet = await client.update_snippet(id, SnippetUpdate(**updates))
        return ToolResult(
            content=f'Successfully updated snippet "{snippet.title}" (ID: {snippet.id})'
        )
