"""
Database models for the FirstClub membership service.
"""
from .catalog import (
    MembershipPlan,
    MembershipTier,
    PlanType,
    TierLevel,
    BENEFIT_FLAGS,
    DEFAULT_PLANS,
    DEFAULT_TIERS,
    seed_default_catalog,
)
from .subscription import (
    Subscription,
    TierChangeLog,
    SubscriptionStatus,
    TierChangeDirection,
    TierChangeCause,
    LIVE_STATUSES,
)
from .activity import ActivityBucket, ActivityType, UserCohort

__all__ = [
    # Catalog
    'MembershipPlan',
    'MembershipTier',
    'PlanType',
    'TierLevel',
    'BENEFIT_FLAGS',
    'DEFAULT_PLANS',
    'DEFAULT_TIERS',
    'seed_default_catalog',
    # Subscriptions
    'Subscription',
    'TierChangeLog',
    'SubscriptionStatus',
    'TierChangeDirection',
    'TierChangeCause',
    'LIVE_STATUSES',
    # Activity & cohorts
    'ActivityBucket',
    'ActivityType',
    'UserCohort',
]
