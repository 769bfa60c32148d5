"""
Exception hierarchy for the sync engine.

Errors raised before a caller receives a job id propagate directly.
Anything after that point is rendered with ``render_error`` and stored
on the job in the ledger.
"""

from __future__ import annotations

from typing import Iterable


class SyncError(Exception):
    """Base class for all casesync errors."""


class ConfigError(SyncError):
    """Raised when required configuration is missing or invalid."""


class PeerConfigError(ConfigError):
    """Raised when a peer URL is unknown or has sync disabled."""


class AccessDeniedError(SyncError):
    """Raised when a request touches outbreaks the caller may not access.

    Attributes:
        disallowed: The outbreak IDs that were rejected.
    """

    def __init__(self, disallowed: Iterable[str]):
        self.disallowed = sorted(disallowed)
        super().__init__(
            "Access denied to outbreak(s): " + ", ".join(self.disallowed)
        )


class SyncInProgressError(SyncError):
    """Raised when a sync with the same peer is already running."""

    def __init__(self, peer_name: str):
        self.peer_name = peer_name
        super().__init__(
            f"A sync with upstream server '{peer_name}' is already in progress"
        )


class NoDataError(SyncError):
    """No collection produced any record.

    Not a failure: callers treat it as "nothing to export".
    """

    def __init__(self, message: str = "No data to export"):
        super().__init__(message)


class FilterError(SyncError):
    """Raised when a declarative filter cannot be translated."""


class MergeError(SyncError):
    """Raised when a record cannot be merged into the local store."""


class ArchiveError(SyncError):
    """Raised when an archive cannot be created or unpacked."""


class DecryptionError(SyncError):
    """Raised when an artifact cannot be decrypted."""


class SnapshotImportError(SyncError):
    """Raised when a snapshot import leaves no usable data."""


class PeerRequestError(SyncError):
    """Raised when the upstream server cannot be reached or answers badly."""


class WorkerError(SyncError):
    """Raised when a worker task fails.

    Attributes:
        error_type: Class name of the exception raised inside the worker.
    """

    def __init__(self, message: str, error_type: str = ""):
        self.error_type = error_type
        super().__init__(message)


def render_error(exc: BaseException) -> str:
    """Render an exception as readable text for the ledger."""
    message = str(exc).strip()
    if not message:
        return type(exc).__name__
    if isinstance(exc, SyncError):
        return message
    return f"{type(exc).__name__}: {message}"
