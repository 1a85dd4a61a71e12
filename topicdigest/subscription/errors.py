"""
Subscription error taxonomy.

- ConfigurationError: the subscription can't run as configured (no topics)
- RateLimitError: attempted too soon; retry after ``retry_after`` seconds
- GenerationInProgressError: a digest is already being generated
- OwnershipError: confirmation token missing or wrong
- CollaboratorError: research/compose call failed
"""

from __future__ import annotations


class SubscriptionError(Exception):
    """Base exception for subscription actor errors."""

    pass


class ConfigurationError(SubscriptionError):
    """Subscription is missing required configuration."""

    pass


class RateLimitError(SubscriptionError):
    """Operation attempted inside its minimum interval."""

    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


class GenerationInProgressError(SubscriptionError):
    """A digest generation is already running for this subscription."""

    pass


class OwnershipError(SubscriptionError):
    """Presented confirmation token does not match the stored one."""

    pass


class CollaboratorError(SubscriptionError):
    """An external collaborator call failed."""

    pass
