from __future__ import annotations

from typing import Optional


class PrefetchError(RuntimeError):
    """Base error. `retryable` tells the fetch loop whether another attempt can help."""

    kind = "error"
    retryable = False

    def __init__(self, message: str, *, digest: Optional[str] = None) -> None:
        super().__init__(message)
        self.digest = digest


class InvalidReference(PrefetchError, ValueError):
    kind = "invalid"


class NotFound(PrefetchError):
    kind = "not_found"


class AuthFailure(PrefetchError):
    kind = "auth"


class RegistryUnavailable(PrefetchError):
    kind = "transient"
    retryable = True

    def __init__(self, message: str, *, digest: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message, digest=digest)
        self.status = status


class RegistryTimeout(PrefetchError):
    kind = "transient"
    retryable = True


class DigestMismatch(PrefetchError):
    """Downloaded bytes do not hash to the expected digest. Forces a full re-download."""

    kind = "integrity"
    retryable = True

    def __init__(self, digest: str, got: str) -> None:
        super().__init__(f"digest mismatch: expected {digest}, got {got}", digest=digest)
        self.got = got


class AlreadyInProgress(PrefetchError):
    kind = "conflict"


class BudgetExceeded(PrefetchError):
    kind = "resource"

    def __init__(self, message: str, *, needed: int = 0, available: int = 0) -> None:
        super().__init__(message)
        self.needed = needed
        self.available = available


class InsufficientCacheSpace(PrefetchError):
    kind = "resource"


class RetriesExhausted(PrefetchError):
    """Raised after `max_attempts` retryable failures. `last_error` is the final cause."""

    kind = "transient"

    def __init__(self, message: str, *, digest: Optional[str] = None, last_error: Optional[PrefetchError] = None) -> None:
        super().__init__(message, digest=digest)
        self.last_error = last_error


class TaskTimeout(PrefetchError):
    kind = "transient"


class Canceled(PrefetchError):
    kind = "canceled"
