"""BizArchive - Error Taxonomy.

Scope of each failure:
  ConfigError, AuthError at startup  -> whole run aborts before any integration
  everything else                    -> current window fails, that integration stops
"""

from typing import Optional


class BizArchiveError(Exception):
    """Base class for all exporter errors."""


class ConfigError(BizArchiveError):
    """Raised when required configuration is missing or invalid."""


class AuthError(BizArchiveError):
    """Raised when an OAuth access token cannot be obtained."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class QueryTransportError(BizArchiveError):
    """Raised on non-success HTTP responses or network failures talking to the query API."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class QueryFailed(BizArchiveError):
    """Raised when a query ends in a non-SUCCEEDED state or exhausts its poll budget."""

    def __init__(self, message: str, state: Optional[str] = None):
        self.state = state
        super().__init__(message)


class ArchiveIOError(BizArchiveError):
    """Raised when a staging archive cannot be written or sealed."""


class UploadError(BizArchiveError):
    """Raised when a sealed archive cannot be stored in the data bucket."""


class CheckpointIOError(BizArchiveError):
    """Raised when a checkpoint cannot be loaded or saved."""
