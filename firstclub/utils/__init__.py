"""
Utility modules for FirstClub.
"""
from .logging_config import setup_logging
from .errors import (
    ErrorCode,
    error_response,
    membership_error_response,
    bad_request,
    not_found,
    internal_error
)
from .exceptions import (
    MembershipError,
    NotFoundError,
    PlanNotFoundError,
    TierNotFoundError,
    SubscriptionNotFoundError,
    ValidationError,
    ActiveSubscriptionExistsError,
    NoActiveSubscriptionError,
    TierEligibilityError,
    InvalidTierChangeError,
    RenewalNotAllowedError,
    InvalidActivityError,
    BatchTooLargeError,
    BusyError,
    ConfigurationError,
    InternalError
)
