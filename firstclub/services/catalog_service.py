"""
Catalog Service.

Serves plans and tiers from an immutable, versioned in-memory snapshot.

Readers grab the current ``CatalogSnapshot`` once and work against it; a
reload builds a complete new snapshot from the database and swaps the
reference under a lock, so no reader ever sees a half-updated catalog.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from flask import current_app

from ..models.catalog import MembershipPlan, MembershipTier, PlanType, TierLevel, BENEFIT_FLAGS
from ..utils.exceptions import (
    PlanNotFoundError,
    TierNotFoundError,
    ValidationError,
    ConfigurationError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanSnapshot:
    """Read-only view of a MembershipPlan."""
    id: int
    name: str
    plan_type: PlanType
    duration_months: int
    price: Decimal
    is_active: bool
    description: Optional[str] = None

    @classmethod
    def from_model(cls, plan: MembershipPlan) -> 'PlanSnapshot':
        plan_type = PlanType(plan.plan_type)
        if plan.duration_months != plan_type.months:
            raise ConfigurationError(
                f'Plan {plan.name} has duration {plan.duration_months} months '
                f'but {plan_type.value} plans last {plan_type.months}'
            )
        if plan.price is None or Decimal(plan.price) <= 0:
            raise ConfigurationError(f'Plan {plan.name} must have a positive price')
        return cls(
            id=plan.id,
            name=plan.name,
            plan_type=plan_type,
            duration_months=plan.duration_months,
            price=Decimal(plan.price),
            is_active=bool(plan.is_active),
            description=plan.description,
        )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'plan_type': self.plan_type.value,
            'duration_months': self.duration_months,
            'price': float(self.price),
            'is_active': self.is_active,
            'description': self.description
        }


@dataclass(frozen=True)
class TierSnapshot:
    """Read-only view of a MembershipTier."""
    id: int
    name: str
    level: TierLevel
    min_orders_required: int = 0
    min_order_value_monthly: Decimal = Decimal('0')
    discount_percentage: Decimal = Decimal('0')
    free_delivery: bool = False
    priority_support: bool = False
    exclusive_deals: bool = False
    early_access: bool = False
    eligible_cohorts: FrozenSet[str] = field(default_factory=frozenset)
    is_active: bool = True
    description: Optional[str] = None

    @classmethod
    def from_model(cls, tier: MembershipTier) -> 'TierSnapshot':
        return cls(
            id=tier.id,
            name=tier.name,
            level=TierLevel(tier.level),
            min_orders_required=tier.min_orders_required or 0,
            min_order_value_monthly=Decimal(tier.min_order_value_monthly or 0),
            discount_percentage=Decimal(tier.discount_percentage or 0),
            free_delivery=bool(tier.free_delivery),
            priority_support=bool(tier.priority_support),
            exclusive_deals=bool(tier.exclusive_deals),
            early_access=bool(tier.early_access),
            eligible_cohorts=frozenset(c.upper() for c in (tier.eligible_cohorts or [])),
            is_active=bool(tier.is_active),
            description=tier.description,
        )

    @property
    def rank(self) -> Tuple[int, Decimal]:
        """Ordering key: level first, discount breaks ties."""
        return (self.level.ordinal, self.discount_percentage)

    def has_benefit(self, benefit: str) -> bool:
        return bool(getattr(self, benefit))

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'level': self.level.value,
            'min_orders_required': self.min_orders_required,
            'min_order_value_monthly': float(self.min_order_value_monthly),
            'discount_percentage': float(self.discount_percentage),
            'benefits': {flag: getattr(self, flag) for flag in BENEFIT_FLAGS},
            'eligible_cohorts': sorted(self.eligible_cohorts),
            'is_active': self.is_active,
            'description': self.description
        }


@dataclass(frozen=True)
class CatalogSnapshot:
    """Consistent view of all plans and tiers at one version."""
    version: int
    loaded_at: datetime
    plans: Dict[int, PlanSnapshot]
    tiers: Dict[int, TierSnapshot]

    def active_tiers(self) -> List[TierSnapshot]:
        return [t for t in self.tiers.values() if t.is_active]


def _parse_enum(enum_cls, value, field_name: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        allowed = ', '.join(m.value for m in enum_cls)
        raise ValidationError(f'Unknown {field_name} "{value}" (expected one of: {allowed})', field_name)


def _parse_decimal(value, field_name: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        raise ValidationError(f'{field_name} must be a number', field_name)


class CatalogService:
    """
    Owner of the catalog snapshot.

    One instance per app, stored in ``app.extensions['membership_catalog']``.
    """

    def __init__(self):
        self._snapshot: Optional[CatalogSnapshot] = None
        self._version = 0
        self._lock = threading.Lock()

    # ==================== Snapshot Management ====================

    def snapshot(self) -> CatalogSnapshot:
        """Return the current snapshot, loading it on first use."""
        snap = self._snapshot
        if snap is None:
            snap = self.reload()
        return snap

    def reload(self) -> CatalogSnapshot:
        """
        Rebuild the snapshot from the database and swap it in.

        The read happens under the lock so a higher version never carries
        older rows than a lower one.
        """
        with self._lock:
            plans = {p.id: PlanSnapshot.from_model(p) for p in MembershipPlan.query.all()}
            tiers = {t.id: TierSnapshot.from_model(t) for t in MembershipTier.query.all()}
            self._version += 1
            snap = CatalogSnapshot(
                version=self._version,
                loaded_at=datetime.utcnow(),
                plans=plans,
                tiers=tiers,
            )
            self._snapshot = snap

        logger.info(f'Catalog snapshot v{snap.version} loaded: {len(plans)} plans, {len(tiers)} tiers')
        return snap

    @property
    def version(self) -> Optional[int]:
        """Version of the loaded snapshot, None before the first load."""
        snap = self._snapshot
        return snap.version if snap else None

    def invalidate(self) -> None:
        """Drop the snapshot; the next read reloads it."""
        with self._lock:
            self._snapshot = None

    # ==================== Plans ====================

    def get_plan(self, plan_id: int) -> PlanSnapshot:
        plan = self.snapshot().plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def list_plans(
        self,
        plan_type=None,
        min_price=None,
        max_price=None,
        min_duration: int = None,
        max_duration: int = None,
        include_inactive: bool = False
    ) -> List[PlanSnapshot]:
        """
        List plans matching every given filter, ordered by duration then price.

        Raises:
            ValidationError: if a filter value cannot be parsed
        """
        plan_type = _parse_enum(PlanType, plan_type, 'plan_type')
        min_price = _parse_decimal(min_price, 'min_price')
        max_price = _parse_decimal(max_price, 'max_price')

        results = []
        for plan in self.snapshot().plans.values():
            if not include_inactive and not plan.is_active:
                continue
            if plan_type and plan.plan_type != plan_type:
                continue
            if min_price is not None and plan.price < min_price:
                continue
            if max_price is not None and plan.price > max_price:
                continue
            if min_duration is not None and plan.duration_months < min_duration:
                continue
            if max_duration is not None and plan.duration_months > max_duration:
                continue
            results.append(plan)

        return sorted(results, key=lambda p: (p.duration_months, p.price, p.id))

    # ==================== Tiers ====================

    def get_tier(self, tier_id: int) -> TierSnapshot:
        tier = self.snapshot().tiers.get(tier_id)
        if tier is None:
            raise TierNotFoundError(tier_id)
        return tier

    def list_tiers(
        self,
        level=None,
        min_discount=None,
        benefits: Iterable[str] = None,
        include_inactive: bool = False
    ) -> List[TierSnapshot]:
        """
        List tiers matching every given filter, lowest level first.

        ``benefits`` names flags that must all be set (free_delivery,
        priority_support, exclusive_deals, early_access).
        """
        level = _parse_enum(TierLevel, level, 'level')
        min_discount = _parse_decimal(min_discount, 'min_discount')
        required = [b.strip().lower() for b in (benefits or []) if b and b.strip()]
        for benefit in required:
            if benefit not in BENEFIT_FLAGS:
                raise ValidationError(
                    f'Unknown benefit "{benefit}" (expected one of: {", ".join(BENEFIT_FLAGS)})',
                    'benefits'
                )

        results = []
        for tier in self.snapshot().tiers.values():
            if not include_inactive and not tier.is_active:
                continue
            if level and tier.level != level:
                continue
            if min_discount is not None and tier.discount_percentage < min_discount:
                continue
            if not all(tier.has_benefit(b) for b in required):
                continue
            results.append(tier)

        return sorted(results, key=lambda t: (t.level.ordinal, t.discount_percentage, t.id))

    def baseline_tier(self) -> TierSnapshot:
        """Lowest-level active tier; every subscriber qualifies for it."""
        from .tier_evaluator import baseline_tier
        return baseline_tier(self.snapshot().active_tiers())


def get_catalog() -> CatalogService:
    """Return the catalog service installed on the current app."""
    return current_app.extensions['membership_catalog']
