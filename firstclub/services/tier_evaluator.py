"""
Tier Evaluator.

Pure decision functions: given a user's activity aggregate, their cohorts and
the candidate tiers, work out which tier the user qualifies for.

Selection rules:
1. Only active tiers are candidates.
2. A tier is eligible when orders_in_window >= min_orders_required AND
   monthly_spend >= min_order_value_monthly AND (the tier has no cohort
   restriction OR the user is in one of its cohorts). Thresholds are inclusive.
3. The eligible tier with the highest level wins; equal levels go to the
   higher discount, then the lowest id.
4. With nothing eligible, the lowest-level active tier (the baseline) is used.

Nothing here touches the database or the clock, so the same inputs always
give the same decision.
"""
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from ..models.subscription import TierChangeDirection
from ..utils.exceptions import ConfigurationError, TierEligibilityError
from .catalog_service import TierSnapshot


@dataclass(frozen=True)
class ActivityAggregate:
    """Rolling activity summary used as evaluation input."""
    user_id: str
    evaluation_month: date
    window_months: int
    orders_in_window: int = 0
    monthly_spend: Decimal = Decimal('0')
    reviews_in_window: int = 0
    referrals_in_window: int = 0

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'evaluation_month': self.evaluation_month.strftime('%Y-%m'),
            'window_months': self.window_months,
            'orders_in_window': self.orders_in_window,
            'monthly_spend': float(self.monthly_spend),
            'reviews_in_window': self.reviews_in_window,
            'referrals_in_window': self.referrals_in_window
        }


@dataclass(frozen=True)
class TierDecision:
    """Outcome of an evaluation relative to the user's current tier."""
    new_tier_id: int
    new_tier_name: str
    direction: TierChangeDirection
    current_tier_id: Optional[int] = None

    @property
    def changed(self) -> bool:
        return self.direction != TierChangeDirection.UNCHANGED

    def to_dict(self):
        return {
            'new_tier_id': self.new_tier_id,
            'new_tier_name': self.new_tier_name,
            'direction': self.direction.value,
            'current_tier_id': self.current_tier_id
        }


def _normalize_cohorts(cohorts: Optional[Iterable[str]]) -> frozenset:
    return frozenset(c.upper() for c in (cohorts or ()) if c)


def _preference_key(tier: TierSnapshot):
    # max() picks highest level, then highest discount, then lowest id
    return (tier.level.ordinal, tier.discount_percentage, -tier.id)


def unmet_requirements(
    tier: TierSnapshot,
    aggregate: ActivityAggregate,
    cohorts: Optional[Iterable[str]] = None
) -> List[Dict[str, Any]]:
    """List every threshold of ``tier`` the aggregate does not meet."""
    unmet = []
    if aggregate.orders_in_window < tier.min_orders_required:
        unmet.append({
            'requirement': 'min_orders_required',
            'required': tier.min_orders_required,
            'actual': aggregate.orders_in_window
        })
    if aggregate.monthly_spend < tier.min_order_value_monthly:
        unmet.append({
            'requirement': 'min_order_value_monthly',
            'required': float(tier.min_order_value_monthly),
            'actual': float(aggregate.monthly_spend)
        })
    if tier.eligible_cohorts and not (tier.eligible_cohorts & _normalize_cohorts(cohorts)):
        unmet.append({
            'requirement': 'eligible_cohorts',
            'required': sorted(tier.eligible_cohorts),
            'actual': sorted(_normalize_cohorts(cohorts))
        })
    return unmet


def is_eligible(
    tier: TierSnapshot,
    aggregate: ActivityAggregate,
    cohorts: Optional[Iterable[str]] = None
) -> bool:
    """True when the aggregate and cohorts satisfy every requirement of ``tier``."""
    return not unmet_requirements(tier, aggregate, cohorts)


def baseline_tier(candidate_tiers: Iterable[TierSnapshot]) -> TierSnapshot:
    """
    Lowest-level active tier.

    Raises:
        ConfigurationError: if there are no active tiers at all
    """
    active = [t for t in candidate_tiers if t.is_active]
    if not active:
        raise ConfigurationError('No active membership tiers are configured')
    lowest = min(t.level.ordinal for t in active)
    return max((t for t in active if t.level.ordinal == lowest), key=_preference_key)


def select_tier(
    aggregate: ActivityAggregate,
    cohorts: Optional[Iterable[str]],
    candidate_tiers: Iterable[TierSnapshot]
) -> TierSnapshot:
    """Best tier the user qualifies for, or the baseline when none."""
    active = [t for t in candidate_tiers if t.is_active]
    eligible = [t for t in active if is_eligible(t, aggregate, cohorts)]
    if eligible:
        return max(eligible, key=_preference_key)
    return baseline_tier(active)


def compare(new_tier: TierSnapshot, current_tier: Optional[TierSnapshot]) -> TierChangeDirection:
    """Direction of moving from ``current_tier`` to ``new_tier``."""
    if current_tier is None:
        return TierChangeDirection.UPGRADE
    if new_tier.id == current_tier.id or new_tier.rank == current_tier.rank:
        return TierChangeDirection.UNCHANGED
    if new_tier.rank > current_tier.rank:
        return TierChangeDirection.UPGRADE
    return TierChangeDirection.DOWNGRADE


def evaluate(
    aggregate: ActivityAggregate,
    cohorts: Optional[Iterable[str]],
    candidate_tiers: Iterable[TierSnapshot],
    current_tier: Optional[TierSnapshot] = None
) -> TierDecision:
    """
    Decide the tier for a user. Never raises for eligibility reasons.

    When the selected tier ranks the same as ``current_tier`` the decision is
    UNCHANGED and keeps the current tier.
    """
    selected = select_tier(aggregate, cohorts, candidate_tiers)
    direction = compare(selected, current_tier)
    if direction == TierChangeDirection.UNCHANGED:
        selected = current_tier
    return TierDecision(
        new_tier_id=selected.id,
        new_tier_name=selected.name,
        direction=direction,
        current_tier_id=current_tier.id if current_tier else None,
    )


def require_eligible(
    user_id: str,
    tier: TierSnapshot,
    aggregate: ActivityAggregate,
    cohorts: Optional[Iterable[str]] = None
) -> None:
    """
    Explicit tier request path.

    Raises:
        TierEligibilityError: with the unmet requirements, when the user does
            not qualify for ``tier``
    """
    unmet = unmet_requirements(tier, aggregate, cohorts)
    if unmet:
        raise TierEligibilityError(user_id, tier.name, unmet)
