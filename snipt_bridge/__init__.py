"""Snipt bridge: exposes Snipt code snippets to AI agents over MCP."""

__version__ = "1.0.0"
