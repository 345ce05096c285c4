"""
Activity aggregation and cohort membership models.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from ..extensions import db


class ActivityType(str, Enum):
    """Activity kinds accepted at ingestion."""
    ORDER = 'ORDER'         # counts toward orders and monthly spend
    RETURN = 'RETURN'       # reduces monthly spend
    REVIEW = 'REVIEW'
    REFERRAL = 'REFERRAL'

    @property
    def is_monetary(self) -> bool:
        return self in (ActivityType.ORDER, ActivityType.RETURN)


class ActivityBucket(db.Model):
    """
    One user's activity totals for one calendar month.

    Rows are created by upsert on the first event of the month and only ever
    changed by in-database increments, so concurrent ingestion never loses an
    update. ``period_start`` is the first day of the month the event
    happened in, not the day it was received.
    """
    __tablename__ = 'activity_buckets'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(50), nullable=False)
    period_start = db.Column(db.Date, nullable=False)

    order_count = db.Column(db.Integer, nullable=False, default=0)
    order_value = db.Column(db.Numeric(14, 2), nullable=False, default=Decimal('0'))
    return_count = db.Column(db.Integer, nullable=False, default=0)
    return_value = db.Column(db.Numeric(14, 2), nullable=False, default=Decimal('0'))
    review_count = db.Column(db.Integer, nullable=False, default=0)
    referral_count = db.Column(db.Integer, nullable=False, default=0)

    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'period_start', name='uq_activity_buckets_user_period'),
    )

    def __repr__(self):
        return f'<ActivityBucket {self.user_id} {self.period_start:%Y-%m}>'

    def to_dict(self):
        return {
            'period': self.period_start.strftime('%Y-%m'),
            'order_count': self.order_count,
            'order_value': float(self.order_value),
            'return_count': self.return_count,
            'return_value': float(self.return_value),
            'review_count': self.review_count,
            'referral_count': self.referral_count
        }


class UserCohort(db.Model):
    """
    Cohort label held by a user (e.g. PREMIUM, VIP).

    Written by the external identity system; read-only to tier matching.
    """
    __tablename__ = 'user_cohorts'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(50), nullable=False, index=True)
    cohort = db.Column(db.String(50), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'cohort', name='uq_user_cohorts_user_cohort'),
    )

    def __repr__(self):
        return f'<UserCohort {self.user_id} {self.cohort}>'
