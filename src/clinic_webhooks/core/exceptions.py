"""Common exceptions for the service and repository layers."""
from __future__ import annotations


class WebhookServiceError(Exception):
    """Base error for the service layer."""


class RepositoryError(WebhookServiceError):
    """Raised when repository operations fail."""


class NotFoundError(RepositoryError):
    """Raised when requested entity is missing."""


class SubscriptionInUseError(RepositoryError):
    """Raised when deleting a subscription that still has delivery history."""


class InvalidEventTypesError(WebhookServiceError):
    """Raised when a subscription edit names event types outside the catalog."""

    def __init__(self, invalid: list[str]):
        self.invalid = list(invalid)
        super().__init__(f"Invalid event types: {', '.join(self.invalid)}")


class InvalidTargetUrlError(WebhookServiceError):
    """Raised when a target URL is not an acceptable webhook endpoint."""
