"""Error taxonomy surfaced by the results sync layer."""
from enum import Enum

SIGN_IN_AGAIN_MESSAGE = "Session expired. Please sign in again to continue saving progress."


class FailureKind(str, Enum):
    """Three-way classification of storage failures."""

    NETWORK = "network"  # connectivity, timeout, offline, expired auth: queue and retry
    CAPABILITY = "capability"  # missing table / column: downgrade, never queue
    OTHER = "other"  # terminal, propagates


class IdentityError(Exception):
    """No authenticated principal is available."""

    def __init__(self, message: str = SIGN_IN_AGAIN_MESSAGE):
        super().__init__(message)


class ValidationError(ValueError):
    """A trial, summary or result payload violates the results schema."""


class NotFoundError(LookupError):
    """The referenced game session does not exist."""


class StoreError(Exception):
    """Failure reported by the durable store, tagged with its FailureKind."""

    def __init__(self, message: str, kind: FailureKind = FailureKind.OTHER):
        super().__init__(message)
        self.kind = kind

    def __repr__(self) -> str:
        return f"<StoreError(kind={self.kind.value}, message={str(self)!r})>"
