"""Error taxonomy for the secret synchronization engine.

Azure SDK exceptions are caught at the adapter boundary (tokens, resolver,
reader) and re-raised as one of the SyncError subclasses below, with the
SDK exception chained as ``__cause__``. The reconciler only ever handles
SyncError; anything else is a bug and propagates to main.
"""

from __future__ import annotations

from azure.core.exceptions import (
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)

# HTTP status codes that are worth retrying
TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})


class SyncError(Exception):
    """Base class for failures during a reconciliation cycle.

    Attributes:
        transient: True if retrying the failed step may succeed
            (network blips, throttling, server-side errors).
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class AuthenticationError(SyncError):
    """Raised when a token cannot be acquired for an audience."""

    pass


class ResolutionError(SyncError):
    """Raised when the vault endpoint cannot be determined."""

    pass


class FetchError(SyncError):
    """Raised when the secret cannot be retrieved from the vault."""

    pass


class SecretNotFoundError(FetchError):
    """Raised when the secret (or requested version) does not exist."""

    pass


class SecretAccessDeniedError(FetchError):
    """Raised when the identity is not allowed to read the secret."""

    pass


class PersistenceError(SyncError):
    """Raised when the local copy cannot be read or written."""

    pass


def is_transient_azure_error(error: BaseException) -> bool:
    """Classify an Azure SDK exception as transient or permanent.

    Connection and read failures are always transient. HTTP errors are
    transient only for timeout, throttling and 5xx responses.
    """
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return True
    if isinstance(error, HttpResponseError):
        return error.status_code in TRANSIENT_STATUS_CODES
    return False
