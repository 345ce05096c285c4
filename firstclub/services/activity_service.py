"""
Activity Aggregator.

Ingests per-user activity events and keeps monthly totals in
``activity_buckets``. Buckets are keyed by the month of the event timestamp,
so late or out-of-order events land in the right month as long as they are
inside the retention window.

Bucket writes are single-statement upserts that add to the existing totals
(``INSERT ... ON CONFLICT DO UPDATE SET x = x + excluded.x``). Recording
activity never takes the user's subscription lock.

Tier policy: upgrades are eager. After an ORDER is recorded, a user whose
new totals qualify for a higher tier is promoted right away. Downgrades are
left to the scheduled sweep so one quiet month does not bounce a member
between tiers.
"""
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models.activity import ActivityBucket, ActivityType
from ..models.subscription import TierChangeCause
from ..utils.clock import utcnow
from ..utils.exceptions import (
    InvalidActivityError,
    BatchTooLargeError,
    BusyError,
    InternalError,
    ValidationError,
)
from ..utils.validators import validate_user_id, parse_timestamp
from .tier_evaluator import ActivityAggregate

logger = logging.getLogger(__name__)

MAX_ACTIVITY_VALUE = Decimal('999999.99')
CENT = Decimal('0.01')

# Which bucket columns an event of each type increments
COUNT_COLUMN = {
    ActivityType.ORDER: 'order_count',
    ActivityType.RETURN: 'return_count',
    ActivityType.REVIEW: 'review_count',
    ActivityType.REFERRAL: 'referral_count',
}
VALUE_COLUMN = {
    ActivityType.ORDER: 'order_value',
    ActivityType.RETURN: 'return_value',
}


def month_start(moment) -> date:
    """First day of the month containing ``moment``."""
    return date(moment.year, moment.month, 1)


def parse_activity_type(value) -> ActivityType:
    if isinstance(value, ActivityType):
        return value
    try:
        return ActivityType(str(value).strip().upper())
    except (ValueError, AttributeError):
        allowed = ', '.join(t.value for t in ActivityType)
        raise InvalidActivityError(f'Invalid activity type "{value}" (expected one of: {allowed})')


def parse_activity_value(value) -> Decimal:
    """Non-negative, finite amount with at most cent precision."""
    if value is None:
        return Decimal('1')
    if isinstance(value, bool):
        raise InvalidActivityError('Activity value must be a number')
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidActivityError(f'Activity value "{value}" is not a number')
    if not amount.is_finite():
        raise InvalidActivityError('Activity value must be finite')
    if amount < 0:
        raise InvalidActivityError('Activity value cannot be negative')
    if amount > MAX_ACTIVITY_VALUE:
        raise InvalidActivityError(f'Activity value cannot exceed {MAX_ACTIVITY_VALUE}')
    return amount.quantize(CENT)


class ActivityService:
    """Records activity and answers aggregate queries."""

    def __init__(self, settings=None):
        self.settings = settings or current_app.extensions['membership_settings']

    # ==================== Windows ====================

    def retention_start(self, now: datetime) -> date:
        """Oldest month still kept."""
        return month_start(now) - relativedelta(months=self.settings.activity_retention_months - 1)

    def order_window_start(self, now: datetime) -> date:
        return month_start(now) - relativedelta(months=self.settings.order_count_window_months - 1)

    # ==================== Ingestion ====================

    def _validate(self, user_id, activity_type, value, occurred_at, now: datetime) -> Dict[str, Any]:
        try:
            user_id = validate_user_id(user_id)
            occurred = parse_timestamp(occurred_at) or now
        except ValidationError as e:
            raise InvalidActivityError(e.message)

        activity_type = parse_activity_type(activity_type)
        amount = parse_activity_value(value)

        if month_start(occurred) < self.retention_start(now):
            raise InvalidActivityError(
                f'Activity at {occurred.isoformat()} is older than the '
                f'{self.settings.activity_retention_months}-month retention window'
            )
        if occurred > now + timedelta(seconds=self.settings.activity_future_skew_seconds):
            raise InvalidActivityError(f'Activity at {occurred.isoformat()} is in the future')

        return {
            'user_id': user_id,
            'activity_type': activity_type,
            'value': amount,
            'occurred_at': occurred,
            'period_start': month_start(occurred),
        }

    def _increment_bucket(self, event: Dict[str, Any], now: datetime) -> None:
        """Atomically add one event to its month bucket."""
        activity_type = event['activity_type']
        increments = {COUNT_COLUMN[activity_type]: 1}
        if activity_type in VALUE_COLUMN:
            increments[VALUE_COLUMN[activity_type]] = event['value']

        table = ActivityBucket.__table__
        dialect = db.engine.dialect.name

        if dialect in ('postgresql', 'sqlite'):
            if dialect == 'postgresql':
                from sqlalchemy.dialects.postgresql import insert
            else:
                from sqlalchemy.dialects.sqlite import insert

            stmt = insert(table).values(
                user_id=event['user_id'],
                period_start=event['period_start'],
                updated_at=now,
                **increments
            )
            updates = {col: table.c[col] + stmt.excluded[col] for col in increments}
            updates['updated_at'] = stmt.excluded.updated_at
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.user_id, table.c.period_start],
                set_=updates
            )
            db.session.execute(stmt)
            return

        # Other backends: increment in place, insert when the month is new
        update = table.update().where(
            table.c.user_id == event['user_id'],
            table.c.period_start == event['period_start']
        ).values(updated_at=now, **{col: table.c[col] + amount for col, amount in increments.items()})
        if db.session.execute(update).rowcount == 0:
            db.session.execute(table.insert().values(
                user_id=event['user_id'],
                period_start=event['period_start'],
                updated_at=now,
                **increments
            ))

    def _apply(self, events: List[Dict[str, Any]], now: datetime) -> None:
        try:
            for event in events:
                self._increment_bucket(event, now)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception(f'Failed to record activity: {e}')
            raise InternalError('Activity could not be recorded')

    def record_activity(
        self,
        user_id: str,
        activity_type,
        value=None,
        occurred_at=None,
        cohorts=None
    ) -> Dict[str, Any]:
        """
        Record one activity event.

        Args:
            user_id: User the activity belongs to
            activity_type: ORDER, RETURN, REVIEW or REFERRAL
            value: Order/return amount (defaults to 1 for count-only types)
            occurred_at: Event time (defaults to now); selects the month bucket
            cohorts: Optional cohort override for the eager tier check

        Returns:
            Dict with the recorded event, updated aggregate and any tier change

        Raises:
            InvalidActivityError: unknown type, bad value or timestamp
        """
        now = utcnow()
        event = self._validate(user_id, activity_type, value, occurred_at, now)
        self._apply([event], now)

        tier_change = None
        if event['activity_type'] == ActivityType.ORDER:
            tier_change = self._promote_if_eligible(event['user_id'], cohorts)

        return {
            'success': True,
            'user_id': event['user_id'],
            'activity_type': event['activity_type'].value,
            'value': float(event['value']),
            'occurred_at': event['occurred_at'].isoformat(),
            'period': event['period_start'].strftime('%Y-%m'),
            'aggregate': self.get_aggregate(event['user_id']).to_dict(),
            'tier_change': tier_change
        }

    def record_activities(self, events: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Record a batch of events atomically.

        Every event is validated before any is written; one bad event rejects
        the whole batch.

        Raises:
            BatchTooLargeError: more than MAX_ACTIVITY_BATCH_SIZE events
            InvalidActivityError: any event fails validation
        """
        if events is None or not isinstance(events, (list, tuple)):
            raise InvalidActivityError('events must be a list')
        limit = self.settings.max_activity_batch_size
        if len(events) > limit:
            raise BatchTooLargeError(len(events), limit)

        now = utcnow()
        validated = []
        for index, raw in enumerate(events):
            if not isinstance(raw, dict):
                raise InvalidActivityError(f'Event #{index} must be an object')
            try:
                validated.append(self._validate(
                    raw.get('user_id'),
                    raw.get('activity_type'),
                    raw.get('value'),
                    raw.get('occurred_at'),
                    now
                ))
            except InvalidActivityError as e:
                raise InvalidActivityError(f'Event #{index}: {e.message}')

        self._apply(validated, now)

        # One eager check per user with new orders, in first-seen order
        order_users = list(dict.fromkeys(
            e['user_id'] for e in validated if e['activity_type'] == ActivityType.ORDER
        ))
        tier_changes = []
        for user_id in order_users:
            change = self._promote_if_eligible(user_id)
            if change:
                tier_changes.append({'user_id': user_id, **change})

        return {
            'success': True,
            'recorded': len(validated),
            'users': sorted({e['user_id'] for e in validated}),
            'tier_changes': tier_changes
        }

    # ==================== Event-Driven Tier Check ====================

    def _promote_if_eligible(self, user_id: str, cohorts=None) -> Optional[Dict[str, Any]]:
        """
        Upgrade the user's live subscription if their totals now qualify.

        Only upward moves are applied here. A busy user is left for the
        scheduled sweep.
        """
        if not self.settings.enable_eager_tier_upgrades:
            return None

        from .subscription_service import SubscriptionService
        from ..models.subscription import TierChangeDirection

        service = SubscriptionService()
        preview = service.preview_tier_evaluation(user_id, cohorts=cohorts)
        if preview is None or preview.direction != TierChangeDirection.UPGRADE:
            return None

        try:
            decision = service.apply_tier_evaluation(
                user_id,
                cohorts=cohorts,
                allow_downgrade=False,
                cause=TierChangeCause.ACTIVITY_THRESHOLD
            )
        except BusyError:
            logger.warning(f'User {user_id} busy; eager tier upgrade deferred to scheduled sweep')
            return None

        if decision is None or not decision.changed:
            return None
        return decision.to_dict()

    # ==================== Queries ====================

    def get_aggregate(self, user_id: str, as_of: datetime = None) -> ActivityAggregate:
        """Rolling totals for ``user_id`` as of ``as_of`` (default now)."""
        now = as_of or utcnow()
        current = month_start(now)
        window_start = self.order_window_start(now)

        buckets = ActivityBucket.query.filter(
            ActivityBucket.user_id == user_id,
            ActivityBucket.period_start >= window_start,
            ActivityBucket.period_start <= current
        ).all()

        orders = 0
        reviews = 0
        referrals = 0
        spend = Decimal('0')
        for bucket in buckets:
            orders += bucket.order_count or 0
            reviews += bucket.review_count or 0
            referrals += bucket.referral_count or 0
            if bucket.period_start == current:
                spend = Decimal(bucket.order_value or 0) - Decimal(bucket.return_value or 0)

        return ActivityAggregate(
            user_id=user_id,
            evaluation_month=current,
            window_months=self.settings.order_count_window_months,
            orders_in_window=orders,
            monthly_spend=max(spend, Decimal('0')).quantize(CENT),
            reviews_in_window=reviews,
            referrals_in_window=referrals,
        )

    def get_buckets(self, user_id: str) -> List[Dict[str, Any]]:
        """All retained month buckets for a user, newest first."""
        buckets = ActivityBucket.query.filter_by(user_id=user_id).order_by(
            ActivityBucket.period_start.desc()
        ).all()
        return [b.to_dict() for b in buckets]

    # ==================== Retention ====================

    def trim_expired_buckets(self, dry_run: bool = False) -> Dict[str, Any]:
        """Delete buckets older than the retention window."""
        now = utcnow()
        cutoff = self.retention_start(now)
        query = ActivityBucket.query.filter(ActivityBucket.period_start < cutoff)

        if dry_run:
            return {'deleted': query.count(), 'cutoff': cutoff.isoformat(), 'dry_run': True}

        try:
            deleted = query.delete(synchronize_session=False)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception(f'Activity retention trim failed: {e}')
            raise InternalError('Activity retention trim failed')

        logger.info(f'Trimmed {deleted} activity buckets older than {cutoff.isoformat()}')
        return {'deleted': deleted, 'cutoff': cutoff.isoformat(), 'dry_run': False}
