"""Exceptions raised by the Snipt bridge."""


class BridgeError(Exception):
    """Base class for bridge errors."""


class ConfigError(BridgeError):
    """Raised when the bridge configuration cannot be used to start a server."""


class AuthenticationRequired(BridgeError):
    """Raised when no caller identity or fallback credential is available."""

    def __init__(
        self,
        message: str = "Authentication required. Please sign in to access your snippets.",
    ):
        super().__init__(message)
        self.message = message


class InvalidGrant(BridgeError):
    """Raised when an authorization code is unknown, expired or already used."""

    error = "invalid_grant"

    def __init__(self, description: str = "Invalid authorization code"):
        super().__init__(description)
        self.description = description


class BackendError(BridgeError):
    """Raised when the snippet REST API returns a non-2xx response.

    The message is the backend's own error text so it can be surfaced to
    the agent verbatim.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class IdentityProviderError(BridgeError):
    """Raised when the identity provider cannot be reached."""
