"""
Scheduled Tasks Service for FirstClub.

Handles automated background jobs:
- Expiring subscriptions past their expiry time
- Flagging subscriptions whose renewal window has opened
- Batch tier re-evaluation of ACTIVE subscriptions
- Trimming activity buckets outside the retention window

These tasks can be triggered by:
1. The in-process APScheduler (firstclub.utils.scheduler)
2. Flask CLI commands (for cron jobs)
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import timedelta
from typing import Any, Dict, List, Optional

from flask import current_app

from ..extensions import db
from ..models.subscription import Subscription, SubscriptionStatus, LIVE_STATUSES
from ..utils.clock import utcnow
from ..utils.exceptions import BusyError, MembershipError
from .activity_service import ActivityService
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


def _new_results(**extra) -> Dict[str, Any]:
    results = {
        'processed': 0,
        'changed': 0,
        'skipped': 0,
        'errors': [],
    }
    results.update(extra)
    return results


class ScheduledTasksService:
    """
    Service for running scheduled/background tasks.
    """

    def __init__(self, settings=None):
        self.app = current_app._get_current_object()
        self.settings = settings or self.app.extensions['membership_settings']

    # ==================== EXPIRY ====================

    def expire_due_subscriptions(self) -> Dict[str, Any]:
        """
        Expire every live subscription whose expiry time has passed.

        Users whose lock is busy are skipped and picked up next cycle.
        """
        now = utcnow()
        due = db.session.query(Subscription.id, Subscription.user_id).filter(
            Subscription.status.in_(LIVE_STATUSES),
            Subscription.expires_at < now
        ).order_by(Subscription.id).all()

        results = _new_results(run_date=now.isoformat())
        service = SubscriptionService(settings=self.settings)

        for subscription_id, user_id in due:
            results['processed'] += 1
            try:
                if service.expire(subscription_id):
                    results['changed'] += 1
                else:
                    results['skipped'] += 1
            except BusyError:
                logger.warning(f'Expiry skipped for busy user {user_id}')
                results['skipped'] += 1
            except MembershipError as e:
                logger.error(f'Expiry failed for subscription {subscription_id}: {e.message}')
                results['errors'].append({'subscription_id': subscription_id, 'error': e.message})

        logger.info(f'Expiry sweep: {results["changed"]} expired, {results["skipped"]} skipped')
        return results

    # ==================== RENEWAL REMINDERS ====================

    def flag_pending_renewals(self) -> Dict[str, Any]:
        """Move ACTIVE subscriptions inside the renewal window to PENDING_RENEWAL."""
        now = utcnow()
        window_end = now + timedelta(days=self.settings.renewal_window_days)
        due = db.session.query(Subscription.id, Subscription.user_id).filter(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.expires_at >= now,
            Subscription.expires_at <= window_end
        ).order_by(Subscription.id).all()

        results = _new_results(run_date=now.isoformat())
        service = SubscriptionService(settings=self.settings)

        for subscription_id, user_id in due:
            results['processed'] += 1
            try:
                if service.mark_pending_renewal(subscription_id):
                    results['changed'] += 1
                else:
                    results['skipped'] += 1
            except BusyError:
                logger.warning(f'Renewal flag skipped for busy user {user_id}')
                results['skipped'] += 1
            except MembershipError as e:
                logger.error(f'Renewal flag failed for subscription {subscription_id}: {e.message}')
                results['errors'].append({'subscription_id': subscription_id, 'error': e.message})

        logger.info(f'Renewal sweep: {results["changed"]} flagged for renewal')
        return results

    # ==================== TIER EVALUATION ====================

    def _evaluate_user(self, user_id: str) -> Dict[str, Any]:
        """
        Worker body: evaluate one user in its own app context and session.

        Busy users are retried with exponential backoff before giving up.
        """
        with self.app.app_context():
            try:
                service = SubscriptionService(settings=self.settings)
                attempts = self.settings.busy_retry_attempts
                delay = self.settings.busy_retry_backoff_seconds

                for attempt in range(attempts + 1):
                    try:
                        decision = service.apply_tier_evaluation(user_id)
                        break
                    except BusyError:
                        if attempt == attempts:
                            logger.warning(f'Tier evaluation skipped for busy user {user_id}')
                            return {'user_id': user_id, 'outcome': 'skipped'}
                        time.sleep(delay * (2 ** attempt))

                if decision is None:
                    return {'user_id': user_id, 'outcome': 'skipped'}
                if decision.changed:
                    return {'user_id': user_id, 'outcome': 'changed', 'decision': decision.to_dict()}
                return {'user_id': user_id, 'outcome': 'unchanged'}

            except MembershipError as e:
                logger.error(f'Tier evaluation failed for user {user_id}: {e.message}')
                return {'user_id': user_id, 'outcome': 'error', 'error': e.message}
            finally:
                db.session.remove()

    def _active_user_page(self, after_id: int, limit: int) -> List[tuple]:
        return db.session.query(Subscription.id, Subscription.user_id).filter(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.id > after_id
        ).order_by(Subscription.id).limit(limit).all()

    def evaluate_tiers(self, batch_size: Optional[int] = None) -> Dict[str, Any]:
        """
        Re-evaluate the tier of every ACTIVE subscription.

        Subscriptions are walked in id order, one page at a time. Each page is
        evaluated on a pool of MAX_CONCURRENT_TIER_EVALUATIONS workers, so the
        sweep never holds more user locks than that at once.

        Args:
            batch_size: Page size (defaults to TIER_EVALUATION_BATCH_SIZE)

        Returns:
            Summary with processed / changed / unchanged / skipped counts
        """
        page_size = batch_size or self.settings.tier_evaluation_batch_size
        if page_size <= 0:
            raise ValueError('batch_size must be positive')

        started = time.monotonic()
        results = _new_results(unchanged=0, changes=[], run_date=utcnow().isoformat())
        last_id = 0

        with ThreadPoolExecutor(max_workers=self.settings.max_concurrent_tier_evaluations) as pool:
            while True:
                page = self._active_user_page(last_id, page_size)
                if not page:
                    break
                last_id = page[-1][0]

                futures = [pool.submit(self._evaluate_user, user_id) for _, user_id in page]
                for future in as_completed(futures):
                    outcome = future.result()
                    results['processed'] += 1
                    if outcome['outcome'] == 'changed':
                        results['changed'] += 1
                        results['changes'].append({'user_id': outcome['user_id'], **outcome['decision']})
                    elif outcome['outcome'] == 'unchanged':
                        results['unchanged'] += 1
                    elif outcome['outcome'] == 'skipped':
                        results['skipped'] += 1
                    else:
                        results['errors'].append({'user_id': outcome['user_id'], 'error': outcome['error']})

                if len(page) < page_size:
                    break

        results['duration_seconds'] = round(time.monotonic() - started, 3)
        logger.info(
            f'Tier evaluation: {results["processed"]} evaluated, {results["changed"]} changed, '
            f'{results["skipped"]} skipped, {len(results["errors"])} errors'
        )
        return results

    # ==================== RETENTION ====================

    def trim_activity(self, dry_run: bool = False) -> Dict[str, Any]:
        """Delete activity buckets older than the retention window."""
        return ActivityService(self.settings).trim_expired_buckets(dry_run=dry_run)
