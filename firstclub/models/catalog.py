"""
Membership catalog models: plans (billing duration + price) and tiers
(benefit level earned by activity).

The catalog is read-mostly. Services never query these tables directly on
the hot path; they read the immutable snapshot built by
``firstclub.services.catalog_service``.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from ..extensions import db


# ==================== Enums ====================

class PlanType(str, Enum):
    """Billing durations. Each type has a fixed month count."""
    MONTHLY = 'MONTHLY'
    QUARTERLY = 'QUARTERLY'
    YEARLY = 'YEARLY'

    @property
    def months(self) -> int:
        return PLAN_TYPE_MONTHS[self]

    @property
    def display_name(self) -> str:
        return f'{self.value.capitalize()} Plan'


PLAN_TYPE_MONTHS = {
    PlanType.MONTHLY: 1,
    PlanType.QUARTERLY: 3,
    PlanType.YEARLY: 12,
}


class TierLevel(str, Enum):
    """Tier levels in ascending order of benefits."""
    SILVER = 'SILVER'
    GOLD = 'GOLD'
    PLATINUM = 'PLATINUM'

    @property
    def ordinal(self) -> int:
        return TIER_LEVEL_ORDINALS[self]

    @property
    def display_name(self) -> str:
        return f'{self.value.capitalize()} Tier'


TIER_LEVEL_ORDINALS = {
    TierLevel.SILVER: 1,
    TierLevel.GOLD: 2,
    TierLevel.PLATINUM: 3,
}

BENEFIT_FLAGS = ('free_delivery', 'priority_support', 'exclusive_deals', 'early_access')


# ==================== Models ====================

class MembershipPlan(db.Model):
    """
    A plan a user subscribes to (Monthly, Quarterly, Yearly).

    Price and duration are copied into each subscription at creation, so
    editing a plan never changes existing subscriptions.
    """
    __tablename__ = 'membership_plans'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    plan_type = db.Column(db.String(20), nullable=False)  # PlanType value
    duration_months = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint('price > 0', name='ck_membership_plans_price_positive'),
        db.CheckConstraint('duration_months > 0', name='ck_membership_plans_duration_positive'),
    )

    def __repr__(self):
        return f'<MembershipPlan {self.name}>'

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'plan_type': self.plan_type,
            'duration_months': self.duration_months,
            'price': float(self.price),
            'is_active': self.is_active,
            'description': self.description
        }


class MembershipTier(db.Model):
    """
    A benefit tier (Silver, Gold, Platinum).

    A user qualifies for a tier when their rolling activity meets both
    thresholds and, if ``eligible_cohorts`` is non-empty, they belong to at
    least one of the listed cohorts.
    """
    __tablename__ = 'membership_tiers'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    level = db.Column(db.String(20), nullable=False)  # TierLevel value

    # Eligibility thresholds (inclusive)
    min_orders_required = db.Column(db.Integer, default=0, nullable=False)
    min_order_value_monthly = db.Column(db.Numeric(10, 2), default=Decimal('0'), nullable=False)

    discount_percentage = db.Column(db.Numeric(5, 2), default=Decimal('0'), nullable=False)

    # Benefits
    free_delivery = db.Column(db.Boolean, default=False, nullable=False)
    priority_support = db.Column(db.Boolean, default=False, nullable=False)
    exclusive_deals = db.Column(db.Boolean, default=False, nullable=False)
    early_access = db.Column(db.Boolean, default=False, nullable=False)

    # Cohort labels, e.g. ["PREMIUM", "VIP"]; empty = open to everyone
    eligible_cohorts = db.Column(db.JSON, default=list)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint('min_orders_required >= 0', name='ck_membership_tiers_min_orders'),
        db.CheckConstraint('min_order_value_monthly >= 0', name='ck_membership_tiers_min_value'),
        db.CheckConstraint('discount_percentage >= 0', name='ck_membership_tiers_discount'),
    )

    def __repr__(self):
        return f'<MembershipTier {self.name}>'


# ==================== Seed Data ====================

DEFAULT_PLANS = [
    {
        'name': 'Monthly Membership',
        'plan_type': PlanType.MONTHLY.value,
        'duration_months': 1,
        'price': Decimal('9.99'),
        'description': 'Monthly subscription with basic benefits',
    },
    {
        'name': 'Quarterly Membership',
        'plan_type': PlanType.QUARTERLY.value,
        'duration_months': 3,
        'price': Decimal('27.99'),
        'description': 'Quarterly subscription with enhanced benefits',
    },
    {
        'name': 'Yearly Membership',
        'plan_type': PlanType.YEARLY.value,
        'duration_months': 12,
        'price': Decimal('99.99'),
        'description': 'Yearly subscription with premium benefits and savings',
    },
]

DEFAULT_TIERS = [
    {
        'name': 'Silver Membership',
        'level': TierLevel.SILVER.value,
        'min_orders_required': 0,
        'min_order_value_monthly': Decimal('0.00'),
        'discount_percentage': Decimal('5.00'),
        'description': 'Entry-level tier with basic benefits',
    },
    {
        'name': 'Gold Membership',
        'level': TierLevel.GOLD.value,
        'min_orders_required': 5,
        'min_order_value_monthly': Decimal('100.00'),
        'discount_percentage': Decimal('10.00'),
        'free_delivery': True,
        'description': 'Mid-level tier with enhanced benefits and free delivery',
    },
    {
        'name': 'Platinum Membership',
        'level': TierLevel.PLATINUM.value,
        'min_orders_required': 15,
        'min_order_value_monthly': Decimal('500.00'),
        'discount_percentage': Decimal('15.00'),
        'free_delivery': True,
        'priority_support': True,
        'exclusive_deals': True,
        'early_access': True,
        'description': 'Premium tier with maximum benefits and exclusive access',
    },
]


def seed_default_catalog() -> dict:
    """
    Insert the default plans and tiers that are missing (matched by name).

    Returns:
        Dict with counts of created plans and tiers
    """
    created = {'plans': 0, 'tiers': 0}

    existing_plans = {name for (name,) in db.session.query(MembershipPlan.name).all()}
    for config in DEFAULT_PLANS:
        if config['name'] not in existing_plans:
            db.session.add(MembershipPlan(**config))
            created['plans'] += 1

    existing_tiers = {name for (name,) in db.session.query(MembershipTier.name).all()}
    for config in DEFAULT_TIERS:
        if config['name'] not in existing_tiers:
            db.session.add(MembershipTier(eligible_cohorts=[], **config))
            created['tiers'] += 1

    db.session.commit()
    return created
