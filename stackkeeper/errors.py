"""
Error taxonomy for stack lifecycle reconciliation.
"""

from typing import Optional


class StackkeeperError(Exception):
    """Base class for all stackkeeper errors."""


class ConfigError(StackkeeperError):
    """Missing or invalid policy/configuration input. Aborts the pass for one stack."""


class AuthError(StackkeeperError):
    """No usable access token, or the management API rejected it (401/403)."""


class NotFound(StackkeeperError):
    """The requested record or remote resource does not exist."""


class UpstreamUnavailable(StackkeeperError):
    """The management API answered with a non-2xx status or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
