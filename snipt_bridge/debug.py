"""Debug instrumentation for the Snipt bridge.

Provides timing, logging, and request correlation for tool calls.
Enable verbose output via SNIPT_BRIDGE_DEBUG=1 or enable_debug().

Features:
- Timing for all tool calls with slow call warnings
- Request ID correlation for tracing related log lines
- Truncated args in log lines, secrets masked
"""

import contextvars
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger("snipt_bridge.debug")

# Context variable for request tracking
_request_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id", default=None
)

# Module-level debug state
_debug_enabled = False

# Configurable threshold (milliseconds)
SLOW_TOOL_THRESHOLD_MS = 1000


def is_debug_enabled() -> bool:
    """Check if debug logging is enabled.

    Returns True if either:
    - enable_debug() was called
    - SNIPT_BRIDGE_DEBUG env var is set to "1", "true", or "yes"
    """
    if _debug_enabled:
        return True
    env_val = os.environ.get("SNIPT_BRIDGE_DEBUG", "").lower()
    return env_val in ("1", "true", "yes")


def enable_debug() -> None:
    """Enable debug logging programmatically."""
    global _debug_enabled
    _debug_enabled = True


def disable_debug() -> None:
    """Disable debug logging programmatically."""
    global _debug_enabled
    _debug_enabled = False


def get_request_id() -> str:
    """Get or create a request ID for the current context."""
    req_id = _request_id.get()
    if req_id is None:
        req_id = str(uuid.uuid4())[:8]
        _request_id.set(req_id)
    return req_id


def set_request_id(req_id: str | None = None) -> contextvars.Token:
    """Bind a request ID to the current context. Returns the reset token."""
    if req_id is None:
        req_id = str(uuid.uuid4())[:8]
    return _request_id.set(req_id)


def clear_request_id(token: contextvars.Token | None = None) -> None:
    """Clear the request ID for the current context."""
    if token is not None:
        _request_id.reset(token)
    else:
        _request_id.set(None)


@dataclass
class CallMetrics:
    """Metrics collected during a tool call."""

    tool_name: str
    grant_kind: str | None = None
    start_time: float = field(default_factory=time.perf_counter)
    end_time: float | None = None
    success: bool = True
    error: str | None = None
    request_id: str | None = None

    @property
    def elapsed_ms(self) -> float:
        """Elapsed time in milliseconds."""
        if self.end_time is None:
            return (time.perf_counter() - self.start_time) * 1000
        return (self.end_time - self.start_time) * 1000

    def complete(self, success: bool = True, error: str | None = None) -> None:
        """Mark the call as complete."""
        self.end_time = time.perf_counter()
        self.success = success
        self.error = error

    def log(self) -> None:
        """Emit the completion line at a level matching the outcome."""
        context_str = f"req={self.request_id} grant={self.grant_kind or 'default'}"
        elapsed = self.elapsed_ms
        if not self.success:
            logger.error(
                f"FAIL [{context_str}] {self.tool_name} failed in {elapsed:.1f}ms: "
                f"{self.error}"
            )
        elif elapsed > SLOW_TOOL_THRESHOLD_MS:
            logger.warning(
                f"SLOW [{context_str}] {self.tool_name} completed in {elapsed:.1f}ms"
            )
        elif is_debug_enabled():
            logger.debug(
                f"DONE [{context_str}] {self.tool_name} completed in {elapsed:.1f}ms"
            )


def _truncate(value: str, max_len: int = 100) -> str:
    """Truncate a string with ellipsis if too long."""
    if len(value) <= max_len:
        return value
    return value[: max_len - 3] + "..."


def _format_value(value: Any, max_len: int = 100) -> str:
    """Format a value for logging, truncating if needed."""
    if value is None:
        return "None"
    if isinstance(value, str):
        return _truncate(repr(value), max_len)
    if isinstance(value, (dict, list)):
        try:
            s = json.dumps(value, default=str)
            return _truncate(s, max_len)
        except (TypeError, ValueError):
            return _truncate(str(value), max_len)
    return _truncate(str(value), max_len)


def format_args(args: dict[str, Any], max_len: int = 100) -> str:
    """Format tool arguments for logging."""
    if not args:
        return "{}"
    parts = []
    for k, v in args.items():
        parts.append(f"{k}={_format_value(v, 50)}")
    result = "{" + ", ".join(parts) + "}"
    return _truncate(result, max_len)


def mask_secret(secret: str | None, visible: int = 6) -> str:
    """Preview a token or key without revealing it."""
    if not secret:
        return "None"
    if len(secret) <= visible * 2:
        return "***"
    return f"{secret[:visible]}...{secret[-4:]}"


def configure_debug_logging(level: int = logging.DEBUG) -> None:
    """Configure logging for bridge output.

    Sets up the snipt_bridge logger with appropriate formatting.
    Call this during application startup.

    Args:
        level: Logging level for the bridge loggers
    """
    bridge_logger = logging.getLogger("snipt_bridge")
    bridge_logger.setLevel(level)

    if not bridge_logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        )
        handler.setFormatter(formatter)
        bridge_logger.addHandler(handler)
