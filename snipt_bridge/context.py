"""Request-scoped caller identity.

The identity resolved for an inbound HTTP request is bound to a
``ContextVar`` for exactly the lifetime of that request, so concurrent
requests never observe each other's identity. Tool bodies read it back
with :func:`lookup_identity`, which falls back to the identity stored on
the physical Starlette request when the protocol framework runs the tool
outside the bound context.
"""

from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from snipt_bridge.auth import ResolvedIdentity

_identity: contextvars.ContextVar[ResolvedIdentity | None] = contextvars.ContextVar(
    "snipt_identity", default=None
)


@contextmanager
def identity_scope(identity: ResolvedIdentity | None) -> Iterator[None]:
    """Bind an identity for the duration of one logical request."""
    token = _identity.set(identity)
    try:
        yield
    finally:
        _identity.reset(token)


def current_identity() -> ResolvedIdentity | None:
    """Identity bound to the current context, if any."""
    return _identity.get()


def request_identity() -> tuple[bool, ResolvedIdentity | None]:
    """Look up the identity stored on the in-flight HTTP request.

    Returns ``(in_http_request, identity)``. ``in_http_request`` is False
    when the tool is running over a non-HTTP transport such as stdio.
    """
    from fastmcp.server.dependencies import get_http_request

    try:
        request = get_http_request()
    except RuntimeError:
        return False, None
    return True, getattr(request.state, "identity", None)


def lookup_identity() -> tuple[bool, ResolvedIdentity | None]:
    """Resolve the caller identity for a tool call.

    The context variable is authoritative; the request object is consulted
    only when nothing is bound.
    """
    identity = current_identity()
    if identity is not None:
        return True, identity
    return request_identity()
