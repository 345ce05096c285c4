"""
Tests for the subscription lifecycle manager.

Tests cover:
- Subscribe with plan snapshot and tier eligibility
- User upgrade / downgrade rules
- System re-evaluation and administrative override
- Renewal window, cancellation and expiry
- Status and history queries
- Event publication
"""
import dataclasses
from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest


class TestSubscribe:
    """Starting a subscription."""

    def test_subscribe_snapshots_plan_and_assigns_baseline(self, app, plans):
        from firstclub.services.subscription_service import SubscriptionService

        with app.app_context():
            subscription = SubscriptionService().subscribe('user-1', plans['QUARTERLY'])

            assert subscription['status'] == 'ACTIVE'
            assert subscription['plan']['plan_type'] == 'QUARTERLY'
            assert subscription['plan']['price'] == 27.99
            assert subscription['plan']['duration_months'] == 3
            assert subscription['tier']['level'] == 'SILVER'
            assert subscription['started_at'] == '2025-03-15T12:00:00'
            assert subscription['expires_at'] == '2025-06-15T12:00:00'

    def test_scenario_a_gold_requires_activity(self, app, plans, tiers):
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import TierEligibilityError

        with app.app_context():
            service = SubscriptionService()

            with pytest.raises(TierEligibilityError) as exc:
                service.subscribe('user-1', plans['MONTHLY'], tier_id=tiers['GOLD'])
            assert {u['requirement'] for u in exc.value.unmet} == {
                'min_orders_required', 'min_order_value_monthly'
            }
            assert service.get_subscription_status('user-1')['status'] == 'NONE'

            subscription = service.subscribe('user-1', plans['MONTHLY'], tier_id=tiers['SILVER'])
            assert subscription['status'] == 'ACTIVE'
            assert subscription['tier']['level'] == 'SILVER'

    def test_subscribe_to_eligible_higher_tier(self, app, plans, tiers, record_orders):
        from firstclub.services.subscription_service import SubscriptionService

        record_orders('user-1', 5, value='20')

        with app.app_context():
            subscription = SubscriptionService().subscribe('user-1', plans['YEARLY'], tier_id=tiers['GOLD'])

            assert subscription['tier']['level'] == 'GOLD'
            assert subscription['expires_at'] == '2026-03-15T12:00:00'

    def test_scenario_c_second_subscribe_is_rejected(self, app, plans, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import ActiveSubscriptionExistsError

        with app.app_context():
            with pytest.raises(ActiveSubscriptionExistsError):
                SubscriptionService().subscribe(subscribed_user, plans['YEARLY'])

    def test_resubscribe_after_cancel(self, app, plans, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService

        with app.app_context():
            service = SubscriptionService()
            service.cancel(subscribed_user)
            subscription = service.subscribe(subscribed_user, plans['YEARLY'])

            assert subscription['status'] == 'ACTIVE'
            assert service.get_subscription_status(subscribed_user)['plan']['plan_type'] == 'YEARLY'

    def test_unknown_and_inactive_plan(self, app, plans):
        from firstclub.extensions import db
        from firstclub.models.catalog import MembershipPlan
        from firstclub.services.catalog_service import get_catalog
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import PlanNotFoundError

        with app.app_context():
            service = SubscriptionService()
            with pytest.raises(PlanNotFoundError):
                service.subscribe('user-1', 9999)

            db.session.get(MembershipPlan, plans['MONTHLY']).is_active = False
            db.session.commit()
            get_catalog().reload()

            with pytest.raises(PlanNotFoundError):
                service.subscribe('user-1', plans['MONTHLY'])

    def test_invalid_user_id(self, app, plans):
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import ValidationError

        with app.app_context():
            with pytest.raises(ValidationError) as exc:
                SubscriptionService().subscribe('x' * 51, plans['MONTHLY'])

            assert exc.value.code == 'INVALID_USER_ID'


class TestUserTierChanges:
    """Upgrade and downgrade requested by the user."""

    def test_upgrade_requires_eligibility(self, app, tiers, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import TierEligibilityError

        with app.app_context():
            with pytest.raises(TierEligibilityError):
                SubscriptionService().upgrade(subscribed_user, tiers['PLATINUM'])

    def test_upgrade_and_downgrade_record_history(self, app, tiers, subscribed_user, record_orders):
        from firstclub.services.subscription_service import SubscriptionService

        app.extensions['membership_settings'] = dataclasses.replace(
            app.extensions['membership_settings'], enable_eager_tier_upgrades=False
        )
        record_orders(subscribed_user, 15, value='40')

        with app.app_context():
            service = SubscriptionService()
            result = service.upgrade(subscribed_user, tiers['PLATINUM'])
            assert result['direction'] == 'UPGRADE'
            assert result['subscription']['tier']['level'] == 'PLATINUM'

            result = service.downgrade(subscribed_user, tiers['GOLD'])
            assert result['direction'] == 'DOWNGRADE'

            history = service.get_tier_history(subscribed_user)['history']
            assert [(h['sequence'], h['direction'], h['cause']) for h in history] == [
                (1, 'ASSIGNED', 'subscription created'),
                (2, 'UPGRADE', 'user requested'),
                (3, 'DOWNGRADE', 'user requested'),
            ]
            assert history[2]['previous_tier_name'] == 'Platinum Membership'
            assert history[2]['new_tier_name'] == 'Gold Membership'

    def test_same_tier_is_unchanged(self, app, tiers, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService

        with app.app_context():
            service = SubscriptionService()
            assert service.upgrade(subscribed_user, tiers['SILVER'])['direction'] == 'UNCHANGED'
            assert service.downgrade(subscribed_user, tiers['SILVER'])['direction'] == 'UNCHANGED'
            assert len(service.get_tier_history(subscribed_user)['history']) == 1

    def test_wrong_direction_is_invalid(self, app, tiers, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import InvalidTierChangeError

        with app.app_context():
            with pytest.raises(InvalidTierChangeError):
                SubscriptionService().downgrade(subscribed_user, tiers['GOLD'])

    def test_tier_change_requires_active_subscription(self, app, tiers, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import NoActiveSubscriptionError

        with app.app_context():
            service = SubscriptionService()
            with pytest.raises(NoActiveSubscriptionError):
                service.upgrade('user-999', tiers['GOLD'])

            service.cancel(subscribed_user)
            with pytest.raises(NoActiveSubscriptionError):
                service.downgrade(subscribed_user, tiers['SILVER'])


class TestSystemTierChanges:
    """Re-evaluation and administrative override."""

    def test_evaluation_downgrades_after_quiet_month(self, app, clock, subscribed_user, record_orders):
        from firstclub.services.subscription_service import SubscriptionService

        record_orders(subscribed_user, 6, value='25')
        clock.advance(days=17)  # April 1st: new month, no spend yet

        with app.app_context():
            service = SubscriptionService()
            assert service.get_subscription_status(subscribed_user)['tier']['level'] == 'GOLD'

            held = service.apply_tier_evaluation(subscribed_user, allow_downgrade=False)
            assert held.direction.value == 'UNCHANGED'

            decision = service.apply_tier_evaluation(subscribed_user)
            assert decision.direction.value == 'DOWNGRADE'
            assert decision.new_tier_name == 'Silver Membership'

            history = service.get_tier_history(subscribed_user)['history']
            assert history[-1]['cause'] == 'system re-evaluation'
            assert history[-1]['created_by'] == 'system'

    def test_evaluation_without_subscription_returns_none(self, app):
        from firstclub.services.subscription_service import SubscriptionService

        with app.app_context():
            assert SubscriptionService().apply_tier_evaluation('user-404') is None
            assert SubscriptionService().preview_tier_evaluation('user-404') is None

    def test_scenario_b_activity_promotes_to_gold(self, app, subscribed_user, record_orders):
        from firstclub.services.subscription_service import SubscriptionService

        record_orders(subscribed_user, 6, value='25')

        with app.app_context():
            service = SubscriptionService()
            assert service.get_subscription_status(subscribed_user)['tier']['level'] == 'GOLD'

            history = service.get_tier_history(subscribed_user)['history']
            upgrades = [h for h in history if h['direction'] == 'UPGRADE']
            assert len(upgrades) == 1
            assert upgrades[0]['cause'] == 'activity threshold crossed'

    def test_admin_assign_enforces_eligibility(self, app, tiers, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import TierEligibilityError, ValidationError

        with app.app_context():
            service = SubscriptionService()
            with pytest.raises(TierEligibilityError):
                service.assign_tier(subscribed_user, tiers['PLATINUM'], assigned_by='staff@firstclub.test')
            with pytest.raises(ValidationError):
                service.assign_tier(subscribed_user, tiers['SILVER'], assigned_by=' ')

            assert len(service.get_tier_history(subscribed_user)['history']) == 1

    def test_admin_assign_to_cohort_tier(self, app, tiers, subscribed_user):
        from firstclub.extensions import db
        from firstclub.models.catalog import MembershipTier
        from firstclub.services.catalog_service import get_catalog
        from firstclub.services.cohort_service import set_user_cohorts
        from firstclub.services.subscription_service import SubscriptionService

        with app.app_context():
            db.session.add(MembershipTier(
                name='Partner Gold', level='GOLD', min_orders_required=0,
                min_order_value_monthly=Decimal('0'), discount_percentage=Decimal('8'),
                eligible_cohorts=['PARTNER']
            ))
            db.session.commit()
            snapshot = get_catalog().reload()
            partner_id = next(t.id for t in snapshot.tiers.values() if t.name == 'Partner Gold')
            set_user_cohorts(subscribed_user, ['partner'])

            result = SubscriptionService().assign_tier(
                subscribed_user, partner_id, assigned_by='staff@firstclub.test', reason='Partner program'
            )

            assert result['direction'] == 'UPGRADE'
            entry = SubscriptionService().get_tier_history(subscribed_user)['history'][-1]
            assert entry['cause'] == 'administrative override'
            assert entry['created_by'] == 'staff@firstclub.test'
            assert entry['reason'] == 'Partner program'


class TestRenewal:
    """Renewal window and re-anchoring."""

    def test_renew_too_early(self, app, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import RenewalNotAllowedError

        with app.app_context():
            with pytest.raises(RenewalNotAllowedError):
                SubscriptionService().renew(subscribed_user)

    def test_renew_inside_window_reanchors_at_now(self, app, clock, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService

        clock.advance(days=25)  # April 9th, expiry April 15th

        with app.app_context():
            subscription = SubscriptionService().renew(subscribed_user)

            assert subscription['status'] == 'ACTIVE'
            assert subscription['renewal_count'] == 1
            assert subscription['renewed_at'] == '2025-04-09T12:00:00'
            assert subscription['expires_at'] == '2025-05-09T12:00:00'

    def test_renew_from_pending_renewal(self, app, clock, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService

        clock.advance(days=25)

        with app.app_context():
            service = SubscriptionService()
            subscription_id = service.get_subscription_status(subscribed_user)['subscription_id']
            assert service.mark_pending_renewal(subscription_id) is True
            assert service.mark_pending_renewal(subscription_id) is False
            assert service.get_subscription_status(subscribed_user)['status'] == 'PENDING_RENEWAL'

            subscription = service.renew(subscribed_user)
            assert subscription['status'] == 'ACTIVE'

    def test_mark_pending_renewal_outside_window(self, app, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService

        with app.app_context():
            service = SubscriptionService()
            subscription_id = service.get_subscription_status(subscribed_user)['subscription_id']

            assert service.mark_pending_renewal(subscription_id) is False

    def test_renew_keeps_tier(self, app, clock, subscribed_user, record_orders):
        from firstclub.services.subscription_service import SubscriptionService

        record_orders(subscribed_user, 6, value='25')
        clock.advance(days=28)

        with app.app_context():
            subscription = SubscriptionService().renew(subscribed_user)

            assert subscription['tier']['level'] == 'GOLD'


class TestTermination:
    """Cancellation and expiry."""

    def test_scenario_d_cancel_then_renew(self, app, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import NoActiveSubscriptionError

        with app.app_context():
            service = SubscriptionService()
            subscription = service.cancel(subscribed_user, reason='  Moving abroad ')

            assert subscription['status'] == 'CANCELLED'
            assert subscription['cancellation_reason'] == 'Moving abroad'
            assert subscription['cancelled_at'] == '2025-03-15T12:00:00'
            assert subscription['tier'] is None

            with pytest.raises(NoActiveSubscriptionError):
                service.renew(subscribed_user)
            with pytest.raises(NoActiveSubscriptionError):
                service.cancel(subscribed_user)

    def test_cancel_reason_too_long(self, app, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import ValidationError

        with app.app_context():
            service = SubscriptionService()
            with pytest.raises(ValidationError):
                service.cancel(subscribed_user, reason='x' * 501)

            assert service.get_subscription_status(subscribed_user)['status'] == 'ACTIVE'

    def test_expire_only_after_expiry(self, app, clock, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService

        with app.app_context():
            service = SubscriptionService()
            subscription_id = service.get_subscription_status(subscribed_user)['subscription_id']

            assert service.expire(subscription_id) is False

            clock.set(datetime(2025, 4, 15, 12, 0, 1))
            assert service.expire(subscription_id) is True
            assert service.expire(subscription_id) is False

            status = service.get_subscription_status(subscribed_user)
            assert status['status'] == 'EXPIRED'
            assert status['expired_at'] == '2025-04-15T12:00:01'
            assert status['tier'] is None

    def test_expire_unknown_subscription(self, app):
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import SubscriptionNotFoundError

        with app.app_context():
            with pytest.raises(SubscriptionNotFoundError):
                SubscriptionService().expire(424242)

    def test_renew_after_expiry_sweep(self, app, clock, subscribed_user):
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import NoActiveSubscriptionError

        clock.advance(days=40)

        with app.app_context():
            service = SubscriptionService()
            subscription_id = service.get_subscription_status(subscribed_user)['subscription_id']
            service.expire(subscription_id)

            with pytest.raises(NoActiveSubscriptionError):
                service.renew(subscribed_user)


class TestQueries:
    """Status and history reads."""

    def test_status_for_unknown_user(self, app):
        from firstclub.services.subscription_service import SubscriptionService

        with app.app_context():
            status = SubscriptionService().get_subscription_status('user-404')

            assert status['status'] == 'NONE'
            assert status['tier'] is None
            assert status['plan'] is None

    def test_history_for_unknown_user(self, app):
        from firstclub.services.subscription_service import SubscriptionService

        with app.app_context():
            assert SubscriptionService().get_tier_history('user-404')['history'] == []


class TestEvents:
    """Events published after commit."""

    def test_subscribe_publishes_lifecycle_and_tier_events(self, app, plans):
        from firstclub.services.events import LIFECYCLE, TIER
        from firstclub.services.subscription_service import SubscriptionService

        lifecycle_handler = MagicMock()
        tier_handler = MagicMock()
        bus = app.extensions['membership_events']
        bus.subscribe(LIFECYCLE, lifecycle_handler)
        bus.subscribe(TIER, tier_handler)

        with app.app_context():
            SubscriptionService().subscribe('user-1', plans['MONTHLY'])

        event = lifecycle_handler.call_args[0][0]
        assert event.from_value is None
        assert event.to_value == 'ACTIVE'
        assert tier_handler.call_args[0][0].to_value == 'Silver Membership'
        assert tier_handler.call_args[0][0].cause == 'subscription created'

    def test_failed_operation_publishes_nothing(self, app, tiers, subscribed_user):
        from firstclub.services.events import TIER
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import TierEligibilityError

        handler = MagicMock()
        app.extensions['membership_events'].subscribe(TIER, handler)

        with app.app_context():
            with pytest.raises(TierEligibilityError):
                SubscriptionService().upgrade(subscribed_user, tiers['GOLD'])

        handler.assert_not_called()

    def test_handler_failure_does_not_undo_change(self, app, subscribed_user):
        from firstclub.services.events import LIFECYCLE
        from firstclub.services.subscription_service import SubscriptionService

        app.extensions['membership_events'].subscribe(LIFECYCLE, MagicMock(side_effect=RuntimeError('down')))

        with app.app_context():
            service = SubscriptionService()
            service.cancel(subscribed_user)

            assert service.get_subscription_status(subscribed_user)['status'] == 'CANCELLED'


class TestStorageFailures:
    """A failed commit leaves the subscription as it was."""

    def test_commit_failure_during_upgrade_changes_nothing(self, app, tiers, subscribed_user, record_orders):
        from sqlalchemy.exc import OperationalError

        from firstclub.extensions import db
        from firstclub.services.events import LIFECYCLE, TIER
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import InternalError

        app.extensions['membership_settings'] = dataclasses.replace(
            app.extensions['membership_settings'], enable_eager_tier_upgrades=False
        )
        record_orders(subscribed_user, 5, value='30')
        handler = MagicMock()
        bus = app.extensions['membership_events']
        bus.subscribe(TIER, handler)
        bus.subscribe(LIFECYCLE, handler)

        failure = OperationalError('COMMIT', {}, Exception('disk I/O error'))

        with app.app_context():
            with patch.object(db.session, 'commit', side_effect=failure):
                with pytest.raises(InternalError) as exc:
                    SubscriptionService().upgrade(subscribed_user, tiers['GOLD'])

            assert exc.value.code == 'INTERNAL_ERROR'
            assert 'disk' not in exc.value.message

            service = SubscriptionService()
            assert service.get_subscription_status(subscribed_user)['tier']['level'] == 'SILVER'
            assert len(service.get_tier_history(subscribed_user)['history']) == 1

        handler.assert_not_called()

    def test_commit_failure_during_expire_keeps_subscription_live(self, app, clock, subscribed_user):
        from sqlalchemy.exc import OperationalError

        from firstclub.extensions import db
        from firstclub.services.subscription_service import SubscriptionService
        from firstclub.utils.exceptions import InternalError

        with app.app_context():
            subscription_id = SubscriptionService().get_subscription_status(subscribed_user)['subscription_id']
        clock.advance(days=32)

        with app.app_context():
            failure = OperationalError('COMMIT', {}, Exception('database is locked'))
            with patch.object(db.session, 'commit', side_effect=failure):
                with pytest.raises(InternalError):
                    SubscriptionService().expire(subscription_id)

            # Nothing applied, so the next sweep can still expire it
            service = SubscriptionService()
            assert service.get_subscription_status(subscribed_user)['status'] == 'ACTIVE'
            assert service.expire(subscription_id) is True
