"""Exception hierarchy shared by bucket admission, persistence, and configuration.

Every failure a caller can observe is a request rejection rather than a
process-fatal condition.  The hierarchy lets callers react to the broad
category (``TokenBucketError``) while the ``kind`` tag on each instance gives a
stable value to branch on without matching class names or message strings.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

__all__ = [
    "ErrorKind",
    "TokenBucketError",
    "NotEnoughSize",
    "NoInfinityRemoval",
    "ExceedsMaxWait",
    "NoPersistenceConfigured",
    "StoreError",
    "BucketConfigError",
]


class ErrorKind(str, Enum):
    """Stable tags carried by every :class:`TokenBucketError`."""

    NOT_ENOUGH_SIZE = "NotEnoughSize"
    NO_INFINITY_REMOVAL = "NoInfinityRemoval"
    EXCEEDS_MAX_WAIT = "ExceedsMaxWait"
    NO_PERSISTENCE_CONFIGURED = "NoPersistenceConfigured"
    STORE_ERROR = "StoreError"
    CONFIG_ERROR = "ConfigError"


class TokenBucketError(RuntimeError):
    """Base exception for token bucket admission and persistence failures."""

    kind: ErrorKind


class NotEnoughSize(TokenBucketError):
    """Raised when the requested tokens exceed the bucket size."""

    kind = ErrorKind.NOT_ENOUGH_SIZE

    def __init__(self, tokens: float, size: float) -> None:
        super().__init__(f"Requested tokens ({tokens:g}) exceed bucket size ({size:g})")
        self.tokens = tokens
        self.size = size


class NoInfinityRemoval(TokenBucketError):
    """Raised when an infinite number of tokens is requested."""

    kind = ErrorKind.NO_INFINITY_REMOVAL

    def __init__(self) -> None:
        super().__init__("Not possible to remove infinite tokens.")


class ExceedsMaxWait(TokenBucketError):
    """Raised when the wait across the hierarchy is above the tightest ``max_wait``."""

    kind = ErrorKind.EXCEEDS_MAX_WAIT

    def __init__(self, wait_ms: int, max_wait_ms: int) -> None:
        super().__init__(
            f"It will exceed maximum waiting time ({wait_ms}ms needed, {max_wait_ms}ms allowed)"
        )
        self.wait_ms = wait_ms
        self.max_wait_ms = max_wait_ms


class NoPersistenceConfigured(TokenBucketError):
    """Raised when save/load is called on a bucket without a persistence identity."""

    kind = ErrorKind.NO_PERSISTENCE_CONFIGURED

    def __init__(self, message: str = "Persistence options missing.") -> None:
        super().__init__(message)


class StoreError(TokenBucketError):
    """Wraps a failure reported by the underlying key/value store."""

    kind = ErrorKind.STORE_ERROR

    def __init__(self, detail: str, *, bucket_name: Optional[str] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.bucket_name = bucket_name


class BucketConfigError(TokenBucketError):
    """Raised when bucket configuration inputs are invalid."""

    kind = ErrorKind.CONFIG_ERROR


# === NAVMAP v1 ===
# {
#   "module": "tokenbucket.errors",
#   "purpose": "Define the exception hierarchy used across admission, persistence, and configuration",
#   "sections": [
#     {"id": "kinds", "name": "Error Kinds", "anchor": "KND", "kind": "api"},
#     {"id": "admission", "name": "Admission Errors", "anchor": "ADM", "kind": "api"},
#     {"id": "persistence", "name": "Persistence Errors", "anchor": "PER", "kind": "api"},
#     {"id": "configuration", "name": "Configuration Errors", "anchor": "CFG", "kind": "api"}
#   ]
# }
# === /NAVMAP ===
