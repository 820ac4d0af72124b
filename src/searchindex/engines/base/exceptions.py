"""Engine and sync exceptions.

``TransientError`` marks failures a caller-owned retry policy may retry
(network faults, backend 5xx, partial bulk failures).  Everything else is
permanent: retrying a schema or validation error cannot succeed.
"""

from __future__ import annotations

from dataclasses import dataclass


class EngineError(Exception):
    """Base exception for engine errors."""


class TransientError(EngineError):
    """Failure that may succeed when retried."""


class ConnectionError(TransientError):
    """Raised when the backend is unreachable or rejects the credentials."""


class QueryError(TransientError):
    """Raised when a backend request fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermissionRestrictedError(QueryError):
    """Raised when the credential lacks rights for an operation (HTTP 403).

    Adapters catch this to fall back to a lesser-privileged equivalent.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=403)


class SchemaError(EngineError):
    """Raised when an index schema cannot be built or created."""


class CapabilityError(EngineError):
    """Raised when a backend cannot provide a requested feature."""


class ConfigurationError(EngineError):
    """Raised when engine or index configuration is invalid."""


class SwapCoordinationError(ConfigurationError):
    """Raised when the swap-counter mutex cannot be acquired.

    Not retryable: a lock that cannot be taken points at the lock backend
    (Redis down, timeout too short), not at the batch.
    """


class SwapScheduleError(TransientError):
    """Raised when the swap task could not be queued after the last batch.

    The swap counter is restored to 1 first, so retrying the batch
    schedules the swap again.
    """


class ValidationError(EngineError):
    """Raised for malformed caller input; never sent to a backend."""


class IndexNotFoundError(ValidationError):
    """Raised when an index handle is not configured."""

    def __init__(self, handle: str) -> None:
        super().__init__(f"Index not found: {handle}")
        self.handle = handle


@dataclass(frozen=True)
class BulkFailure:
    """One document that a bulk request rejected."""

    object_id: str
    reason: str


class BulkIndexError(TransientError):
    """Raised when some documents of a bulk request failed.

    Attributes:
        failures: The rejected documents; the rest of the batch succeeded.
    """

    def __init__(self, index_name: str, failures: list[BulkFailure]) -> None:
        reasons = "; ".join(f"{f.object_id}: {f.reason}" for f in failures[:5])
        more = f" (+{len(failures) - 5} more)" if len(failures) > 5 else ""
        super().__init__(f"{len(failures)} document(s) failed in bulk request to '{index_name}': {reasons}{more}")
        self.index_name = index_name
        self.failures = failures

    @property
    def failed_ids(self) -> list[str]:
        return [f.object_id for f in self.failures]
