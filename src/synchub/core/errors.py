"""Exception hierarchy shared by the token cache, reconciler, formula engine and orchestrator.

Provides:
- SyncHubError: Root of every domain error
- AuthError: Credential unavailable or rejected (fatal to a run, never retried)
- UpstreamError / TransientUpstreamError / PermanentUpstreamError: External
  call failures classified by HTTP status code
- MappingError / DuplicateKeyError: Record-level reconciliation failures
- ValidationError / EvalError: Formula syntax and evaluation failures
- SyncLogStateError / SyncRunError: Audit log misuse and wrapped run failures
"""

from __future__ import annotations


class SyncHubError(Exception):
    """Base class for all sync hub errors."""


class AuthError(SyncHubError):
    """No usable credential for an external system."""


class UpstreamError(SyncHubError):
    """An external system call failed.

    Attributes:
        status_code: HTTP status returned by the upstream, or None for
            transport-level failures (timeouts, connection resets).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """Rate limited (429), server error (5xx) or network failure -- retryable."""


class PermanentUpstreamError(UpstreamError):
    """Client error other than 429 -- retrying will not help."""


class MappingError(SyncHubError):
    """External record is malformed or its match is ambiguous."""


class DuplicateKeyError(SyncHubError):
    """Store rejected an insert because a unique external id is already claimed."""


class ValidationError(SyncHubError):
    """Formula expression is syntactically invalid.

    Attributes:
        position: Zero-based character offset of the offending token, if known.
    """

    def __init__(self, message: str, position: int | None = None) -> None:
        super().__init__(message)
        self.position = position


class EvalError(SyncHubError):
    """Formula references a field absent from the supplied field values."""


class SyncLogStateError(SyncHubError):
    """Attempted to transition a sync log entry that is not PENDING."""


class SyncRunError(SyncHubError):
    """Unexpected internal failure during a sync run (details are in the logs)."""


def upstream_error_for_status(status_code: int | None, message: str) -> UpstreamError:
    """Classify an upstream failure by status code.

    429 and 5xx (and status-less transport failures) are transient;
    everything else is permanent.
    """
    if status_code is None or status_code == 429 or status_code >= 500:
        return TransientUpstreamError(message, status_code=status_code)
    return PermanentUpstreamError(message, status_code=status_code)
