"""
relay_errors.py - Error taxonomy for the OAuth relay.

Only ConfigurationError is allowed to stop the process. Every other error
is per-flow: the flow controller turns it into a Failure outcome and the
user only ever sees a short redirect message.
"""

from __future__ import annotations

from relay_state import StateCheck


class RelayError(Exception):
    """Base class for relay errors."""


class ConfigurationError(RelayError):
    """Required configuration is missing or malformed (startup only)."""


class CsrfValidationError(RelayError):
    """The state cookie did not verify against the callback state."""

    def __init__(self, check: StateCheck):
        self.check = check
        super().__init__(f"state check failed: {check.value}")


class ProviderError(RelayError):
    """GitHub answered with something other than success."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class UpstreamUnavailable(ProviderError):
    """GitHub could not be reached at all."""


class TokenExchangeError(ProviderError):
    """The authorization code could not be traded for an access token."""


class PermissionCheckError(ProviderError):
    """The collaborator permission endpoint failed with a non-404 status."""
