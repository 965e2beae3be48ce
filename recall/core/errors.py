"""
Error taxonomy for the embedding engine.

Only ValidationError is surfaced directly to callers of synchronous operations.
Every other error is captured per item and reported through results, run
summaries, and telemetry.
"""

from typing import Optional, Sequence


class RecallError(Exception):
    """Base class for engine errors."""
    pass


class ValidationError(RecallError):
    """Malformed input (empty text, unknown content type). Never retried."""
    pass


class ProviderError(RecallError):
    """Failure reported by the embedding provider."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimited(ProviderError):
    """Provider rejected the call because a rate limit was hit."""

    retryable = True

    def __init__(self, message: str = "rate limited", status_code: Optional[int] = 429,
                 retry_after: Optional[float] = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class Unavailable(ProviderError):
    """Provider could not be reached or returned a server error."""

    retryable = True


class InvalidInput(ProviderError):
    """Provider refused one or more inputs. Never retried.

    ``indices`` names the offending positions in the submitted batch when the
    provider reports them.
    """

    def __init__(self, message: str = "invalid input", status_code: Optional[int] = 400,
                 indices: Optional[Sequence[int]] = None):
        super().__init__(message, status_code)
        self.indices = list(indices) if indices else []


class CacheCorruption(RecallError):
    """Cached vector is unreadable or has the wrong dimensionality."""
    pass


class DimensionMismatch(RecallError):
    """Vector length differs from the dimension fixed for its model version."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Vector dimension {actual} does not match expected dimension {expected}")
        self.expected = expected
        self.actual = actual


class StoreWriteError(RecallError):
    """Vector store write failed after a successful embed."""
    pass


class BackpressureError(RecallError):
    """Rate limiter queue is full; callers should degrade instead of waiting."""
    pass


class OperationCancelled(RecallError):
    """A cancellation token fired or a deadline passed."""
    pass


class MaintenanceError(RecallError):
    """Maintenance operation could not start."""
    pass
