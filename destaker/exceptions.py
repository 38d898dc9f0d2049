"""Error taxonomy shared by the clients, services and API layer."""

from __future__ import annotations


class DestakerError(Exception):
    """Base class for all service errors."""


class NoMatchingPools(DestakerError):
    """No pool record matched an asset's pattern."""

    def __init__(self, asset: str) -> None:
        self.asset = asset
        super().__init__(f"No yield data found for asset: {asset}")


class UpstreamFetchError(DestakerError):
    """The pool data source returned non-2xx or a malformed payload."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ClassifierUnavailable(DestakerError):
    """The AI classifier timed out, failed, or answered with something unusable."""

    reason = "unavailable"

    def __init__(self, message: str = "Classifier unavailable", status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ClassifierTimeout(ClassifierUnavailable):
    reason = "timeout"

    def __init__(self, message: str = "Classifier call timed out") -> None:
        super().__init__(message)


class ClassifierRateLimited(ClassifierUnavailable):
    """HTTP 429 from the gateway."""

    reason = "rate_limited"

    def __init__(self, message: str = "Rate limited, please try again later.") -> None:
        super().__init__(message, status_code=429)


class ClassifierQuotaExceeded(ClassifierUnavailable):
    """HTTP 402 from the gateway."""

    reason = "quota_exceeded"

    def __init__(self, message: str = "Payment required for AI predictions.") -> None:
        super().__init__(message, status_code=402)


class MalformedClassifierResponse(ClassifierUnavailable):
    reason = "malformed"

    def __init__(self, message: str = "AI did not return a structured response") -> None:
        super().__init__(message)


class PersistenceError(DestakerError):
    """A write to (or read from) the results store failed."""
