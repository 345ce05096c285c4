"""
Tests for the tier evaluator.

Tests cover:
- Inclusive thresholds on both order count and monthly spend
- Highest-eligible selection and tie-breaks
- Cohort-restricted tiers
- Baseline fallback and missing configuration
- Direction comparison and determinism
"""
from datetime import date
from decimal import Decimal

import pytest

from firstclub.models.catalog import TierLevel
from firstclub.models.subscription import TierChangeDirection
from firstclub.services.catalog_service import TierSnapshot
from firstclub.services.tier_evaluator import (
    ActivityAggregate,
    baseline_tier,
    compare,
    evaluate,
    is_eligible,
    require_eligible,
    select_tier,
    unmet_requirements,
)
from firstclub.utils.exceptions import ConfigurationError, TierEligibilityError


SILVER = TierSnapshot(1, 'Silver', TierLevel.SILVER, 0, Decimal('0'), Decimal('5'))
GOLD = TierSnapshot(2, 'Gold', TierLevel.GOLD, 5, Decimal('100'), Decimal('10'), free_delivery=True)
PLATINUM = TierSnapshot(3, 'Platinum', TierLevel.PLATINUM, 15, Decimal('500'), Decimal('15'))
DEFAULT_TIERS = [SILVER, GOLD, PLATINUM]


def aggregate(orders=0, spend='0'):
    return ActivityAggregate(
        user_id='user-1',
        evaluation_month=date(2025, 3, 1),
        window_months=12,
        orders_in_window=orders,
        monthly_spend=Decimal(spend),
    )


class TestEligibility:
    """Threshold checks for a single tier."""

    def test_thresholds_are_inclusive(self):
        assert is_eligible(GOLD, aggregate(5, '100.00'))

    def test_one_order_below_is_not_eligible(self):
        assert not is_eligible(GOLD, aggregate(4, '100.00'))

    def test_one_cent_below_is_not_eligible(self):
        assert not is_eligible(GOLD, aggregate(5, '99.99'))

    def test_unmet_requirements_lists_each_failure(self):
        unmet = unmet_requirements(PLATINUM, aggregate(3, '50'))

        assert [u['requirement'] for u in unmet] == ['min_orders_required', 'min_order_value_monthly']
        assert unmet[0] == {'requirement': 'min_orders_required', 'required': 15, 'actual': 3}
        assert unmet[1]['required'] == 500.0
        assert unmet[1]['actual'] == 50.0

    def test_cohort_restricted_tier_requires_membership(self):
        vip = TierSnapshot(4, 'VIP Gold', TierLevel.GOLD, 0, Decimal('0'), Decimal('12'),
                           eligible_cohorts=frozenset({'VIP'}))

        assert not is_eligible(vip, aggregate(), cohorts=['PREMIUM'])
        assert is_eligible(vip, aggregate(), cohorts=['vip'])
        assert unmet_requirements(vip, aggregate())[0]['requirement'] == 'eligible_cohorts'

    def test_require_eligible_raises_with_unmet(self):
        with pytest.raises(TierEligibilityError) as exc:
            require_eligible('user-1', GOLD, aggregate(0, '0'))

        assert exc.value.tier_name == 'Gold'
        assert len(exc.value.unmet) == 2
        assert exc.value.to_dict()['code'] == 'TIER_NOT_ELIGIBLE'


class TestSelection:
    """Choosing the best tier among candidates."""

    def test_no_activity_selects_baseline(self):
        assert select_tier(aggregate(), None, DEFAULT_TIERS) == SILVER

    def test_highest_eligible_level_wins(self):
        assert select_tier(aggregate(6, '150'), None, DEFAULT_TIERS) == GOLD
        assert select_tier(aggregate(15, '500'), None, DEFAULT_TIERS) == PLATINUM

    def test_orders_without_spend_stay_on_baseline(self):
        assert select_tier(aggregate(20, '10'), None, DEFAULT_TIERS) == SILVER

    def test_same_level_prefers_higher_discount(self):
        gold_plus = TierSnapshot(9, 'Gold Plus', TierLevel.GOLD, 5, Decimal('100'), Decimal('11'))

        assert select_tier(aggregate(6, '150'), None, DEFAULT_TIERS + [gold_plus]) == gold_plus

    def test_same_level_and_discount_prefers_lowest_id(self):
        twin = TierSnapshot(8, 'Gold Twin', TierLevel.GOLD, 5, Decimal('100'), Decimal('10'))

        assert select_tier(aggregate(6, '150'), None, [twin, GOLD, SILVER]) == GOLD

    def test_inactive_tiers_are_ignored(self):
        retired = TierSnapshot(7, 'Retired Platinum', TierLevel.PLATINUM, 0, Decimal('0'),
                               Decimal('20'), is_active=False)

        assert select_tier(aggregate(6, '150'), None, DEFAULT_TIERS + [retired]) == GOLD

    def test_no_active_tiers_is_configuration_error(self):
        inactive = TierSnapshot(1, 'Silver', TierLevel.SILVER, is_active=False)

        with pytest.raises(ConfigurationError):
            baseline_tier([inactive])
        with pytest.raises(ConfigurationError):
            select_tier(aggregate(), None, [])


class TestEvaluate:
    """Decisions relative to the current tier."""

    def test_compare_directions(self):
        assert compare(GOLD, None) == TierChangeDirection.UPGRADE
        assert compare(GOLD, SILVER) == TierChangeDirection.UPGRADE
        assert compare(SILVER, PLATINUM) == TierChangeDirection.DOWNGRADE
        assert compare(GOLD, GOLD) == TierChangeDirection.UNCHANGED

    def test_equal_rank_keeps_current_tier(self):
        twin = TierSnapshot(8, 'Gold Twin', TierLevel.GOLD, 5, Decimal('100'), Decimal('10'))

        decision = evaluate(aggregate(6, '150'), None, [twin, GOLD, SILVER], current_tier=twin)

        assert decision.direction == TierChangeDirection.UNCHANGED
        assert decision.new_tier_id == twin.id
        assert not decision.changed

    def test_upgrade_decision(self):
        decision = evaluate(aggregate(6, '150'), None, DEFAULT_TIERS, current_tier=SILVER)

        assert decision.direction == TierChangeDirection.UPGRADE
        assert decision.new_tier_id == GOLD.id
        assert decision.current_tier_id == SILVER.id
        assert decision.to_dict()['direction'] == 'UPGRADE'

    def test_downgrade_decision(self):
        decision = evaluate(aggregate(2, '20'), None, DEFAULT_TIERS, current_tier=PLATINUM)

        assert decision.direction == TierChangeDirection.DOWNGRADE
        assert decision.new_tier_name == 'Silver'

    def test_evaluation_is_deterministic(self):
        first = evaluate(aggregate(7, '300'), ['VIP'], DEFAULT_TIERS, current_tier=SILVER)
        second = evaluate(aggregate(7, '300'), ['VIP'], list(reversed(DEFAULT_TIERS)), current_tier=SILVER)

        assert first == second
