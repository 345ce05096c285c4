"""
Subscription and tier-history models.
"""
from datetime import datetime
from enum import Enum
from ..extensions import db


class SubscriptionStatus(str, Enum):
    """Subscription states. CANCELLED and EXPIRED are terminal."""
    ACTIVE = 'ACTIVE'
    PENDING_RENEWAL = 'PENDING_RENEWAL'
    CANCELLED = 'CANCELLED'
    EXPIRED = 'EXPIRED'


# Statuses that count toward the one-subscription-per-user rule
LIVE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PENDING_RENEWAL.value)


class TierChangeDirection(str, Enum):
    """Direction of a tier transition."""
    ASSIGNED = 'ASSIGNED'    # first tier of a new subscription
    UPGRADE = 'UPGRADE'
    DOWNGRADE = 'DOWNGRADE'
    UNCHANGED = 'UNCHANGED'  # evaluation result only, never stored


class TierChangeCause(str, Enum):
    """Why a tier changed. Stored verbatim in the history."""
    SUBSCRIPTION_CREATED = 'subscription created'
    USER_REQUESTED = 'user requested'
    SYSTEM_REEVALUATION = 'system re-evaluation'
    ACTIVITY_THRESHOLD = 'activity threshold crossed'
    ADMIN_OVERRIDE = 'administrative override'


_live_filter = "status IN ('ACTIVE', 'PENDING_RENEWAL')"


class Subscription(db.Model):
    """
    A user's membership subscription.

    Owned by exactly one user. Plan price and duration are snapshotted at
    creation; ``tier_id`` is the user's current tier while the subscription is
    live.
    """
    __tablename__ = 'subscriptions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(50), nullable=False, index=True)

    # Plan snapshot
    plan_id = db.Column(db.Integer, db.ForeignKey('membership_plans.id'), nullable=False)
    plan_name = db.Column(db.String(100), nullable=False)
    plan_type = db.Column(db.String(20), nullable=False)
    plan_price = db.Column(db.Numeric(10, 2), nullable=False)
    plan_duration_months = db.Column(db.Integer, nullable=False)

    tier_id = db.Column(db.Integer, db.ForeignKey('membership_tiers.id'), nullable=False)

    status = db.Column(db.String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    started_at = db.Column(db.DateTime, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    renewed_at = db.Column(db.DateTime)
    renewal_count = db.Column(db.Integer, nullable=False, default=0)
    cancelled_at = db.Column(db.DateTime)
    cancellation_reason = db.Column(db.String(500))
    expired_at = db.Column(db.DateTime)

    # Bumped on every UPDATE; a writer holding an older row gets StaleDataError
    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tier = db.relationship('MembershipTier', lazy='joined')
    tier_changes = db.relationship(
        'TierChangeLog',
        backref='subscription',
        lazy='dynamic',
        order_by='TierChangeLog.sequence'
    )

    __table_args__ = (
        # At most one live subscription per user, even across processes
        db.Index(
            'uq_subscriptions_user_live',
            'user_id',
            unique=True,
            sqlite_where=db.text(_live_filter),
            postgresql_where=db.text(_live_filter),
        ),
        db.Index('ix_subscriptions_status_expires', 'status', 'expires_at'),
    )

    __mapper_args__ = {'version_id_col': version}

    def __repr__(self):
        return f'<Subscription {self.id} user={self.user_id} {self.status}>'

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def to_dict(self):
        live = self.is_live
        return {
            'subscription_id': self.id,
            'user_id': self.user_id,
            'status': self.status,
            'plan': {
                'id': self.plan_id,
                'name': self.plan_name,
                'plan_type': self.plan_type,
                'price': float(self.plan_price),
                'duration_months': self.plan_duration_months
            },
            # A user without a live subscription has no tier
            'tier': {
                'id': self.tier.id,
                'name': self.tier.name,
                'level': self.tier.level,
                'discount_percentage': float(self.tier.discount_percentage)
            } if live and self.tier else None,
            'started_at': self.started_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
            'renewed_at': self.renewed_at.isoformat() if self.renewed_at else None,
            'renewal_count': self.renewal_count,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None,
            'cancellation_reason': self.cancellation_reason,
            'expired_at': self.expired_at.isoformat() if self.expired_at else None
        }


class TierChangeLog(db.Model):
    """
    Append-only tier history of a subscription.

    ``sequence`` is contiguous per subscription starting at 1; the unique
    constraint rejects interleaved writers.
    """
    __tablename__ = 'tier_change_logs'

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey('subscriptions.id'), nullable=False)
    user_id = db.Column(db.String(50), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)

    previous_tier_id = db.Column(db.Integer, db.ForeignKey('membership_tiers.id'))
    previous_tier_name = db.Column(db.String(100))
    new_tier_id = db.Column(db.Integer, db.ForeignKey('membership_tiers.id'), nullable=False)
    new_tier_name = db.Column(db.String(100), nullable=False)

    direction = db.Column(db.String(20), nullable=False)  # TierChangeDirection value
    cause = db.Column(db.String(50), nullable=False)      # TierChangeCause value
    reason = db.Column(db.String(500))
    created_by = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('subscription_id', 'sequence', name='uq_tier_change_logs_sequence'),
    )

    def __repr__(self):
        return f'<TierChangeLog {self.subscription_id}#{self.sequence} {self.direction}>'

    def to_dict(self):
        return {
            'sequence': self.sequence,
            'previous_tier_id': self.previous_tier_id,
            'previous_tier_name': self.previous_tier_name,
            'new_tier_id': self.new_tier_id,
            'new_tier_name': self.new_tier_name,
            'direction': self.direction,
            'cause': self.cause,
            'reason': self.reason,
            'created_by': self.created_by,
            'created_at': self.created_at.isoformat()
        }
