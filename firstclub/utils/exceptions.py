"""
Custom exceptions for membership business logic.

Every exception carries a stable machine-readable ``code`` next to its
human-readable message. The API layer maps them to HTTP responses in
``firstclub.utils.errors``.
"""
from typing import Any, Dict, List, Optional


class MembershipError(Exception):
    """Base exception for all membership business logic errors."""

    retryable = False

    def __init__(self, message: str, code: str = "MEMBERSHIP_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {'message': self.message, 'code': self.code}


class NotFoundError(MembershipError):
    """Resource not found."""

    def __init__(self, resource: str, identifier=None):
        self.resource = resource
        self.identifier = identifier
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with ID {identifier} not found"
        super().__init__(message, f"{resource.upper()}_NOT_FOUND")


class PlanNotFoundError(NotFoundError):
    """Membership plan not found."""

    def __init__(self, identifier=None):
        super().__init__("Plan", identifier)


class TierNotFoundError(NotFoundError):
    """Membership tier not found."""

    def __init__(self, identifier=None):
        super().__init__("Tier", identifier)


class SubscriptionNotFoundError(NotFoundError):
    """Subscription not found."""

    def __init__(self, identifier=None):
        super().__init__("Subscription", identifier)


class ValidationError(MembershipError):
    """Invalid input data."""

    def __init__(self, message: str, field: str = None):
        self.field = field
        code = f"INVALID_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(message, code)


class ActiveSubscriptionExistsError(MembershipError):
    """User already holds a live (ACTIVE or PENDING_RENEWAL) subscription."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(
            f"User {user_id} already has an active subscription",
            "ACTIVE_SUBSCRIPTION_EXISTS"
        )


class NoActiveSubscriptionError(MembershipError):
    """Operation requires a live subscription and there is none."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(
            f"No active subscription found for user: {user_id}",
            "NO_ACTIVE_SUBSCRIPTION"
        )


class TierEligibilityError(MembershipError):
    """User does not meet the requirements of the requested tier."""

    def __init__(self, user_id: str, tier_name: str, unmet: Optional[List[Dict[str, Any]]] = None):
        self.user_id = user_id
        self.tier_name = tier_name
        self.unmet = unmet or []
        super().__init__(
            f"User {user_id} does not meet requirements for {tier_name} tier",
            "TIER_NOT_ELIGIBLE"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['tier'] = self.tier_name
        data['unmet_requirements'] = self.unmet
        return data


class InvalidTierChangeError(MembershipError):
    """Upgrade to a lower tier or downgrade to a higher one."""

    def __init__(self, message: str):
        super().__init__(message, "INVALID_TIER_CHANGE")


class RenewalNotAllowedError(MembershipError):
    """Renewal requested outside the renewal window."""

    def __init__(self, user_id: str, expires_at):
        self.user_id = user_id
        self.expires_at = expires_at
        super().__init__(
            f"Subscription for user {user_id} cannot be renewed before "
            f"the renewal window (expires {expires_at.isoformat()})",
            "RENEWAL_NOT_ALLOWED"
        )


class InvalidActivityError(MembershipError):
    """Activity event rejected at ingestion."""

    def __init__(self, message: str):
        super().__init__(message, "INVALID_ACTIVITY")


class BatchTooLargeError(MembershipError):
    """Activity batch exceeds the configured maximum size."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(
            f"Activity batch of {size} events exceeds the limit of {limit}",
            "BATCH_TOO_LARGE"
        )


class BusyError(MembershipError):
    """Per-user lock could not be acquired in time. Safe to retry."""

    retryable = True

    def __init__(self, user_id: str, timeout: float):
        self.user_id = user_id
        self.timeout = timeout
        super().__init__(
            f"Another operation is in progress for user {user_id}; retry shortly",
            "BUSY"
        )


class ConfigurationError(MembershipError):
    """Application configuration error."""

    def __init__(self, message: str):
        super().__init__(message, "CONFIGURATION_ERROR")


class InternalError(MembershipError):
    """Storage or infrastructure failure. The operation did not apply."""

    def __init__(self, message: str = "An unexpected error occurred"):
        super().__init__(message, "INTERNAL_ERROR")
