"""Exception hierarchy for the order synchronizer.

- SyncError: base for everything raised on purpose by this package
- OrderValidationError: order content cannot be turned into CRM entities
  (e.g. no usable buyer phone). Fatal to that order only.
- ExternalAPIError: a call to Kaspi or amoCRM failed after retries.
  UpstreamAPIError / CRMAPIError tell the two services apart so daily
  stats can count them separately.
- AuthenticationError: amoCRM token refresh failed.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for synchronizer errors."""


class OrderValidationError(SyncError):
    """Order data is unusable for CRM entity creation."""

    def __init__(self, message: str, order_code: str | None = None) -> None:
        super().__init__(message)
        self.order_code = order_code


class ExternalAPIError(SyncError):
    """A third-party API call failed (after retries, if retryable)."""

    service = "external"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429


class UpstreamAPIError(ExternalAPIError):
    """Kaspi order API failure."""

    service = "kaspi"


class CRMAPIError(ExternalAPIError):
    """amoCRM API failure."""

    service = "amocrm"


class AuthenticationError(CRMAPIError):
    """amoCRM rejected credentials and the token refresh did not help."""
