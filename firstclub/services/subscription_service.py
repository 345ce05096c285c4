"""
Subscription Lifecycle Manager.

Owns the subscription state machine:

    NONE -> ACTIVE -> PENDING_RENEWAL -> ACTIVE (renew)
                   -> CANCELLED
                   -> EXPIRED
    PENDING_RENEWAL -> EXPIRED | CANCELLED

CANCELLED and EXPIRED are terminal; a user without a live subscription has
no tier.

Every mutation follows the same shape:
1. Take the user's lock (bounded wait, BusyError on timeout)
2. Re-read the subscription from the database
3. Validate and apply the transition, appending tier history
4. Commit once (roll back everything on any failure)
5. Release the lock, then publish events
"""
import logging
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import lazyload
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models.subscription import (
    Subscription,
    SubscriptionStatus,
    TierChangeLog,
    TierChangeDirection,
    TierChangeCause,
    LIVE_STATUSES,
)
from ..utils.clock import utcnow
from ..utils.exceptions import (
    MembershipError,
    BusyError,
    ActiveSubscriptionExistsError,
    NoActiveSubscriptionError,
    InvalidTierChangeError,
    RenewalNotAllowedError,
    SubscriptionNotFoundError,
    PlanNotFoundError,
    TierNotFoundError,
    ValidationError,
    InternalError,
)
from ..utils.validators import validate_user_id, validate_id
from .catalog_service import TierSnapshot
from .cohort_service import get_user_cohorts, normalize_cohorts
from .events import SubscriptionEvent, LIFECYCLE, TIER
from .tier_evaluator import TierDecision, evaluate, require_eligible

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = 'system'

# Causes attached to lifecycle (status) events
CAUSE_RENEWED = 'renewed'
CAUSE_CANCELLED = 'cancelled by user'
CAUSE_EXPIRED = 'expired'
CAUSE_RENEWAL_DUE = 'renewal window opened'


class SubscriptionService:
    """
    Lifecycle operations for user subscriptions.

    Collaborators default to the ones installed on the current app; tests may
    pass their own.
    """

    def __init__(self, settings=None, catalog=None, locks=None, events=None):
        extensions = current_app.extensions
        self.settings = settings or extensions['membership_settings']
        self.catalog = catalog or extensions['membership_catalog']
        self.locks = locks or extensions['membership_locks']
        self.events = events or extensions['membership_events']

    # ==================== Transaction Plumbing ====================

    @contextmanager
    def _locked(self, user_id: str, conflict=None):
        """
        Hold the user's lock around one database transaction.

        Yields a list; events appended to it are published after the commit
        and after the lock is released.
        """
        pending: List[SubscriptionEvent] = []
        with self.locks.hold(user_id):
            try:
                yield pending
                db.session.commit()
            except MembershipError:
                db.session.rollback()
                raise
            except StaleDataError:
                # Another process changed the row after we read it
                db.session.rollback()
                logger.warning(f'Concurrent update of subscription for user {user_id}; rolled back')
                raise BusyError(user_id, self.locks.timeout)
            except IntegrityError as e:
                db.session.rollback()
                if conflict is not None:
                    raise conflict()
                logger.exception(f'Integrity error for user {user_id}: {e}')
                raise InternalError('Subscription update conflicted; nothing was changed')
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.exception(f'Database error for user {user_id}: {e}')
                raise InternalError('Subscription update failed; nothing was changed')
            except Exception:
                db.session.rollback()
                raise

        self.events.publish_all(pending)

    def _live_subscription(self, user_id: str, for_update: bool = False) -> Optional[Subscription]:
        """
        Fresh read of the user's live subscription, bypassing the identity map.

        With ``for_update`` the row stays locked until commit on databases
        that support it (PostgreSQL); the version column covers the rest.
        """
        query = Subscription.query.filter(
            Subscription.user_id == user_id,
            Subscription.status.in_(LIVE_STATUSES)
        ).order_by(Subscription.id.desc()).populate_existing()
        if for_update:
            query = query.options(lazyload(Subscription.tier)).with_for_update(of=Subscription)
        return query.first()

    def _require_active(self, user_id: str) -> Subscription:
        subscription = self._live_subscription(user_id, for_update=True)
        if subscription is None or subscription.status != SubscriptionStatus.ACTIVE.value:
            raise NoActiveSubscriptionError(user_id)
        return subscription

    def _latest_subscription(self, user_id: str) -> Optional[Subscription]:
        return Subscription.query.filter_by(user_id=user_id).order_by(
            Subscription.id.desc()
        ).first()

    def _get_by_id(self, subscription_id) -> Subscription:
        subscription_id = validate_id(subscription_id, 'subscription_id')
        subscription = db.session.get(Subscription, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    def _reload(self, subscription_id: int, for_update: bool = False) -> Subscription:
        query = Subscription.query.filter_by(id=subscription_id).populate_existing()
        if for_update:
            query = query.options(lazyload(Subscription.tier)).with_for_update(of=Subscription)
        return query.one()

    # ==================== Catalog / Input Helpers ====================

    def _active_plan(self, plan_id):
        plan = self.catalog.get_plan(validate_id(plan_id, 'plan_id'))
        if not plan.is_active:
            raise PlanNotFoundError(plan.id)
        return plan

    def _active_tier(self, tier_id) -> TierSnapshot:
        tier = self.catalog.get_tier(validate_id(tier_id, 'tier_id'))
        if not tier.is_active:
            raise TierNotFoundError(tier.id)
        return tier

    def _tier_of(self, subscription: Subscription) -> TierSnapshot:
        try:
            return self.catalog.get_tier(subscription.tier_id)
        except TierNotFoundError:
            # Tier added after the snapshot was taken
            return TierSnapshot.from_model(subscription.tier)

    def _cohorts(self, user_id: str, cohorts=None):
        if cohorts is not None:
            return normalize_cohorts(cohorts)
        return get_user_cohorts(user_id)

    def _aggregate(self, user_id: str):
        from .activity_service import ActivityService
        return ActivityService(self.settings).get_aggregate(user_id)

    # ==================== History ====================

    def _record_tier_change(
        self,
        subscription: Subscription,
        previous: Optional[TierSnapshot],
        new: TierSnapshot,
        direction: TierChangeDirection,
        cause: TierChangeCause,
        pending: List[SubscriptionEvent],
        now,
        reason: str = None,
        created_by: str = SYSTEM_ACTOR
    ) -> TierChangeLog:
        """Point the subscription at ``new`` and append the history entry."""
        last = db.session.query(func.max(TierChangeLog.sequence)).filter(
            TierChangeLog.subscription_id == subscription.id
        ).scalar()

        subscription.tier_id = new.id
        entry = TierChangeLog(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            sequence=(last or 0) + 1,
            previous_tier_id=previous.id if previous else None,
            previous_tier_name=previous.name if previous else None,
            new_tier_id=new.id,
            new_tier_name=new.name,
            direction=direction.value,
            cause=cause.value,
            reason=reason,
            created_by=created_by,
            created_at=now
        )
        db.session.add(entry)

        pending.append(SubscriptionEvent(
            kind=TIER,
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            from_value=previous.name if previous else None,
            to_value=new.name,
            occurred_at=now,
            cause=cause.value
        ))
        logger.info(
            f'Tier {direction.value.lower()}: user {subscription.user_id} '
            f'{previous.name if previous else "-"} -> {new.name} ({cause.value})'
        )
        return entry

    def _status_event(self, subscription: Subscription, previous_status, cause: str, now) -> SubscriptionEvent:
        logger.info(
            f'Subscription {subscription.id} for {subscription.user_id}: '
            f'{previous_status or "NONE"} -> {subscription.status} ({cause})'
        )
        return SubscriptionEvent(
            kind=LIFECYCLE,
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            from_value=previous_status,
            to_value=subscription.status,
            occurred_at=now,
            cause=cause
        )

    # ==================== Subscribe ====================

    def subscribe(self, user_id: str, plan_id, tier_id=None, cohorts=None) -> Dict[str, Any]:
        """
        Start a subscription.

        Args:
            user_id: Subscribing user
            plan_id: Active plan to subscribe to
            tier_id: Requested tier; None means the baseline tier
            cohorts: Optional cohort override for the eligibility check

        Returns:
            The new subscription as a dict

        Raises:
            ActiveSubscriptionExistsError: user already has a live subscription
            PlanNotFoundError / TierNotFoundError: unknown or inactive entries
            TierEligibilityError: requested tier's thresholds not met
        """
        user_id = validate_user_id(user_id)
        plan = self._active_plan(plan_id)
        baseline = self.catalog.baseline_tier()
        tier = baseline if tier_id is None else self._active_tier(tier_id)

        with self._locked(user_id, conflict=lambda: ActiveSubscriptionExistsError(user_id)) as pending:
            if self._live_subscription(user_id, for_update=True) is not None:
                raise ActiveSubscriptionExistsError(user_id)

            if tier.id != baseline.id:
                require_eligible(user_id, tier, self._aggregate(user_id), self._cohorts(user_id, cohorts))

            now = utcnow()
            subscription = Subscription(
                user_id=user_id,
                plan_id=plan.id,
                plan_name=plan.name,
                plan_type=plan.plan_type.value,
                plan_price=plan.price,
                plan_duration_months=plan.duration_months,
                tier_id=tier.id,
                status=SubscriptionStatus.ACTIVE.value,
                started_at=now,
                expires_at=now + relativedelta(months=plan.duration_months),
                renewal_count=0
            )
            db.session.add(subscription)
            db.session.flush()

            pending.append(self._status_event(subscription, None, TierChangeCause.SUBSCRIPTION_CREATED.value, now))
            self._record_tier_change(
                subscription, None, tier,
                TierChangeDirection.ASSIGNED, TierChangeCause.SUBSCRIPTION_CREATED,
                pending, now, created_by=user_id
            )
            subscription_id = subscription.id

        return self._reload(subscription_id).to_dict()

    # ==================== User Tier Changes ====================

    def _change_tier(self, user_id: str, new_tier_id, upward: bool, cohorts=None) -> Dict[str, Any]:
        user_id = validate_user_id(user_id)
        target = self._active_tier(new_tier_id)

        with self._locked(user_id) as pending:
            subscription = self._require_active(user_id)
            current = self._tier_of(subscription)

            if target.id == current.id:
                direction = TierChangeDirection.UNCHANGED
            elif upward:
                if target.rank <= current.rank:
                    raise InvalidTierChangeError(
                        f'Cannot upgrade from {current.name} to {target.name}: target tier is not higher'
                    )
                require_eligible(user_id, target, self._aggregate(user_id), self._cohorts(user_id, cohorts))
                direction = TierChangeDirection.UPGRADE
            else:
                if target.rank >= current.rank:
                    raise InvalidTierChangeError(
                        f'Cannot downgrade from {current.name} to {target.name}: target tier is not lower'
                    )
                direction = TierChangeDirection.DOWNGRADE

            if direction != TierChangeDirection.UNCHANGED:
                self._record_tier_change(
                    subscription, current, target, direction,
                    TierChangeCause.USER_REQUESTED, pending, utcnow(), created_by=user_id
                )
            subscription_id = subscription.id

        return {
            'success': True,
            'direction': direction.value,
            'subscription': self._reload(subscription_id).to_dict()
        }

    def upgrade(self, user_id: str, new_tier_id, cohorts=None) -> Dict[str, Any]:
        """
        Move an ACTIVE subscription to a higher tier the user qualifies for.

        Raises:
            NoActiveSubscriptionError: no ACTIVE subscription
            InvalidTierChangeError: target is not above the current tier
            TierEligibilityError: target thresholds not met
        """
        return self._change_tier(user_id, new_tier_id, upward=True, cohorts=cohorts)

    def downgrade(self, user_id: str, new_tier_id) -> Dict[str, Any]:
        """
        Move an ACTIVE subscription to a lower tier. Always allowed.

        Raises:
            NoActiveSubscriptionError: no ACTIVE subscription
            InvalidTierChangeError: target is not below the current tier
        """
        return self._change_tier(user_id, new_tier_id, upward=False)

    # ==================== System Tier Changes ====================

    def preview_tier_evaluation(self, user_id: str, cohorts=None) -> Optional[TierDecision]:
        """Evaluate without locking or writing. None when not ACTIVE."""
        subscription = self._live_subscription(user_id)
        if subscription is None or subscription.status != SubscriptionStatus.ACTIVE.value:
            return None
        return evaluate(
            self._aggregate(user_id),
            self._cohorts(user_id, cohorts),
            self.catalog.snapshot().active_tiers(),
            self._tier_of(subscription)
        )

    def apply_tier_evaluation(
        self,
        user_id: str,
        cohorts=None,
        allow_downgrade: bool = True,
        cause: TierChangeCause = TierChangeCause.SYSTEM_REEVALUATION
    ) -> Optional[TierDecision]:
        """
        Re-evaluate the user's tier and apply the result.

        Returns None when the user has no ACTIVE subscription. With
        ``allow_downgrade=False`` a downward decision is reported as UNCHANGED
        and nothing is written.

        Raises:
            BusyError: user's lock not available in time
        """
        with self._locked(user_id) as pending:
            subscription = self._live_subscription(user_id, for_update=True)
            if subscription is None or subscription.status != SubscriptionStatus.ACTIVE.value:
                return None

            current = self._tier_of(subscription)
            decision = evaluate(
                self._aggregate(user_id),
                self._cohorts(user_id, cohorts),
                self.catalog.snapshot().active_tiers(),
                current
            )

            if decision.direction == TierChangeDirection.DOWNGRADE and not allow_downgrade:
                return TierDecision(current.id, current.name, TierChangeDirection.UNCHANGED, current.id)

            if decision.changed:
                self._record_tier_change(
                    subscription, current, self.catalog.get_tier(decision.new_tier_id),
                    decision.direction, cause, pending, utcnow()
                )

        return decision

    def assign_tier(
        self,
        user_id: str,
        tier_id,
        assigned_by: str,
        reason: str = None,
        cohorts=None
    ) -> Dict[str, Any]:
        """
        Administrative tier override on a live subscription.

        Eligibility is still enforced; the history records who made the change
        and why.
        """
        user_id = validate_user_id(user_id)
        target = self._active_tier(tier_id)
        if not assigned_by or not str(assigned_by).strip():
            raise ValidationError('assigned_by is required', 'assigned_by')

        with self._locked(user_id) as pending:
            subscription = self._live_subscription(user_id, for_update=True)
            if subscription is None:
                raise NoActiveSubscriptionError(user_id)
            current = self._tier_of(subscription)

            direction = TierChangeDirection.UNCHANGED
            if target.id != current.id:
                require_eligible(user_id, target, self._aggregate(user_id), self._cohorts(user_id, cohorts))
                direction = (TierChangeDirection.UPGRADE if target.rank > current.rank
                             else TierChangeDirection.DOWNGRADE)
                self._record_tier_change(
                    subscription, current, target, direction,
                    TierChangeCause.ADMIN_OVERRIDE, pending, utcnow(),
                    reason=reason, created_by=str(assigned_by).strip()
                )
            subscription_id = subscription.id

        return {
            'success': True,
            'direction': direction.value,
            'subscription': self._reload(subscription_id).to_dict()
        }

    # ==================== Renewal ====================

    def renew(self, user_id: str) -> Dict[str, Any]:
        """
        Renew a live subscription for another plan duration from now.

        Allowed from PENDING_RENEWAL, or from ACTIVE once inside the renewal
        window (or past expiry but not yet swept). The tier is kept as is.

        Raises:
            NoActiveSubscriptionError: nothing live to renew
            RenewalNotAllowedError: ACTIVE and not yet inside the window
        """
        user_id = validate_user_id(user_id)

        with self._locked(user_id) as pending:
            subscription = self._live_subscription(user_id, for_update=True)
            if subscription is None:
                raise NoActiveSubscriptionError(user_id)

            now = utcnow()
            window_opens = subscription.expires_at - timedelta(days=self.settings.renewal_window_days)
            if subscription.status == SubscriptionStatus.ACTIVE.value and now < window_opens:
                raise RenewalNotAllowedError(user_id, subscription.expires_at)

            previous_status = subscription.status
            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.expires_at = now + relativedelta(months=subscription.plan_duration_months)
            subscription.renewed_at = now
            subscription.renewal_count = (subscription.renewal_count or 0) + 1
            pending.append(self._status_event(subscription, previous_status, CAUSE_RENEWED, now))
            subscription_id = subscription.id

        return self._reload(subscription_id).to_dict()

    def mark_pending_renewal(self, subscription_id) -> bool:
        """
        Flag an ACTIVE subscription whose renewal window has opened.

        Returns True when the status moved to PENDING_RENEWAL.
        """
        user_id = self._get_by_id(subscription_id).user_id

        with self._locked(user_id) as pending:
            subscription = self._reload(subscription_id, for_update=True)
            now = utcnow()
            window_opens = subscription.expires_at - timedelta(days=self.settings.renewal_window_days)
            if (subscription.status != SubscriptionStatus.ACTIVE.value
                    or now < window_opens or now > subscription.expires_at):
                return False

            subscription.status = SubscriptionStatus.PENDING_RENEWAL.value
            pending.append(self._status_event(
                subscription, SubscriptionStatus.ACTIVE.value, CAUSE_RENEWAL_DUE, now
            ))

        return True

    # ==================== Termination ====================

    def cancel(self, user_id: str, reason: str = None) -> Dict[str, Any]:
        """
        Cancel the user's live subscription immediately.

        Raises:
            ValidationError: reason longer than CANCELLATION_REASON_MAX_LENGTH
            NoActiveSubscriptionError: nothing live to cancel
        """
        user_id = validate_user_id(user_id)
        if reason is not None:
            reason = str(reason).strip() or None
        limit = self.settings.cancellation_reason_max_length
        if reason and len(reason) > limit:
            raise ValidationError(f'Cancellation reason cannot exceed {limit} characters', 'reason')

        with self._locked(user_id) as pending:
            subscription = self._live_subscription(user_id, for_update=True)
            if subscription is None:
                raise NoActiveSubscriptionError(user_id)

            now = utcnow()
            previous_status = subscription.status
            subscription.status = SubscriptionStatus.CANCELLED.value
            subscription.cancelled_at = now
            subscription.cancellation_reason = reason
            pending.append(self._status_event(subscription, previous_status, CAUSE_CANCELLED, now))
            subscription_id = subscription.id

        return self._reload(subscription_id).to_dict()

    def expire(self, subscription_id) -> bool:
        """
        Expire a live subscription that is past its expiry time.

        Safe to call repeatedly and concurrently: only the first call after
        expiry transitions, later ones return False.

        Raises:
            SubscriptionNotFoundError: unknown subscription id
        """
        user_id = self._get_by_id(subscription_id).user_id

        with self._locked(user_id) as pending:
            subscription = self._reload(subscription_id, for_update=True)
            now = utcnow()
            if not subscription.is_live or now <= subscription.expires_at:
                return False

            previous_status = subscription.status
            subscription.status = SubscriptionStatus.EXPIRED.value
            subscription.expired_at = now
            pending.append(self._status_event(subscription, previous_status, CAUSE_EXPIRED, now))

        return True

    # ==================== Queries ====================

    def get_subscription_status(self, user_id: str) -> Dict[str, Any]:
        """
        Current membership state of a user.

        ``status`` is NONE when the user never subscribed. The tier is only
        reported while the subscription is live.
        """
        user_id = validate_user_id(user_id)
        subscription = self._latest_subscription(user_id)
        if subscription is None:
            return {
                'user_id': user_id,
                'status': 'NONE',
                'subscription_id': None,
                'plan': None,
                'tier': None,
                'expires_at': None
            }
        return subscription.to_dict()

    def get_tier_history(self, user_id: str) -> Dict[str, Any]:
        """Tier history of the user's latest subscription, oldest first."""
        user_id = validate_user_id(user_id)
        subscription = self._latest_subscription(user_id)
        if subscription is None:
            return {'user_id': user_id, 'subscription_id': None, 'history': []}
        return {
            'user_id': user_id,
            'subscription_id': subscription.id,
            'history': [entry.to_dict() for entry in subscription.tier_changes]
        }
