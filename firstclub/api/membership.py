"""
Membership API endpoints.

Provides REST endpoints for:
- Plan and tier catalog browsing
- Subscribe / upgrade / downgrade / renew / cancel
- Subscription status and tier history
- Activity ingestion (single and batch)
- Staff tier override

The caller's user id comes from the X-User-Id header, set by the identity
layer in front of this service (or ``user_id`` in the JSON body). Business
errors raised by the services are rendered by the app-level error handler.
"""
import logging

from flask import Blueprint, request, jsonify

from ..services.activity_service import ActivityService
from ..services.catalog_service import get_catalog
from ..services.subscription_service import SubscriptionService
from ..utils.errors import bad_request, ErrorCode
from ..utils.validators import validate_user_id

logger = logging.getLogger(__name__)

membership_bp = Blueprint('membership', __name__, url_prefix='/api/memberships')


def get_user_id(data: dict = None) -> str:
    """Resolve the acting user from the X-User-Id header or request body."""
    user_id = request.headers.get('X-User-Id')
    if not user_id and data:
        user_id = data.get('user_id')
    return validate_user_id(user_id)


def get_staff_user() -> str:
    """Get current staff identity for audit purposes."""
    return request.headers.get('X-Staff-Email', 'api:unknown')


def _flag(name: str) -> bool:
    return request.args.get(name, '').lower() in ('1', 'true', 'yes')


# ==================== Catalog ====================

@membership_bp.route('/plans', methods=['GET'])
def list_plans():
    """
    List membership plans.

    Query params: plan_type, min_price, max_price, min_duration,
    max_duration, include_inactive
    """
    plans = get_catalog().list_plans(
        plan_type=request.args.get('plan_type'),
        min_price=request.args.get('min_price'),
        max_price=request.args.get('max_price'),
        min_duration=request.args.get('min_duration', type=int),
        max_duration=request.args.get('max_duration', type=int),
        include_inactive=_flag('include_inactive')
    )
    return jsonify({'plans': [p.to_dict() for p in plans]})


@membership_bp.route('/plans/<int:plan_id>', methods=['GET'])
def get_plan(plan_id):
    return jsonify(get_catalog().get_plan(plan_id).to_dict())


@membership_bp.route('/tiers', methods=['GET'])
def list_tiers():
    """
    List membership tiers, lowest level first.

    Query params: level, min_discount, benefits (comma separated),
    include_inactive
    """
    benefits = request.args.get('benefits')
    tiers = get_catalog().list_tiers(
        level=request.args.get('level'),
        min_discount=request.args.get('min_discount'),
        benefits=benefits.split(',') if benefits else None,
        include_inactive=_flag('include_inactive')
    )
    return jsonify({'tiers': [t.to_dict() for t in tiers]})


@membership_bp.route('/tiers/<int:tier_id>', methods=['GET'])
def get_tier(tier_id):
    return jsonify(get_catalog().get_tier(tier_id).to_dict())


# ==================== Subscription Lifecycle ====================

@membership_bp.route('/subscribe', methods=['POST'])
def subscribe():
    """
    Start a subscription.

    Request body:
    {
        "plan_id": 1,
        "tier_id": 2,          # optional, defaults to the entry tier
        "cohorts": ["VIP"]     # optional override of stored cohorts
    }
    """
    data = request.get_json(silent=True) or {}
    user_id = get_user_id(data)
    if data.get('plan_id') is None:
        return bad_request('plan_id is required', ErrorCode.MISSING_FIELD)

    subscription = SubscriptionService().subscribe(
        user_id,
        data['plan_id'],
        tier_id=data.get('tier_id'),
        cohorts=data.get('cohorts')
    )
    return jsonify({'success': True, 'subscription': subscription}), 201


@membership_bp.route('/subscription', methods=['GET'])
def get_own_subscription():
    """Subscription status of the calling user."""
    return jsonify(SubscriptionService().get_subscription_status(get_user_id()))


@membership_bp.route('/subscription/<user_id>', methods=['GET'])
def get_subscription(user_id):
    return jsonify(SubscriptionService().get_subscription_status(user_id))


@membership_bp.route('/subscription/<user_id>/history', methods=['GET'])
def get_tier_history(user_id):
    """Tier history of the user's latest subscription."""
    return jsonify(SubscriptionService().get_tier_history(user_id))


def _change_tier(direction: str):
    data = request.get_json(silent=True) or {}
    user_id = get_user_id(data)
    if data.get('tier_id') is None:
        return bad_request('tier_id is required', ErrorCode.MISSING_FIELD)

    service = SubscriptionService()
    if direction == 'upgrade':
        result = service.upgrade(user_id, data['tier_id'], cohorts=data.get('cohorts'))
    else:
        result = service.downgrade(user_id, data['tier_id'])
    return jsonify(result)


@membership_bp.route('/upgrade', methods=['POST'])
def upgrade():
    """
    Upgrade to a higher tier.

    Request body: {"tier_id": 3}
    """
    return _change_tier('upgrade')


@membership_bp.route('/downgrade', methods=['POST'])
def downgrade():
    """
    Downgrade to a lower tier.

    Request body: {"tier_id": 1}
    """
    return _change_tier('downgrade')


@membership_bp.route('/renew', methods=['POST'])
def renew():
    data = request.get_json(silent=True) or {}
    subscription = SubscriptionService().renew(get_user_id(data))
    return jsonify({'success': True, 'subscription': subscription})


@membership_bp.route('/cancel', methods=['POST'])
def cancel():
    """
    Cancel the live subscription.

    Request body: {"reason": "Too expensive"}  # optional
    """
    data = request.get_json(silent=True) or {}
    subscription = SubscriptionService().cancel(get_user_id(data), reason=data.get('reason'))
    return jsonify({'success': True, 'subscription': subscription})


# ==================== Staff ====================

@membership_bp.route('/admin/assign-tier', methods=['POST'])
def assign_tier():
    """
    Staff tier override.

    Request body:
    {
        "user_id": "user-123",
        "tier_id": 3,
        "reason": "Loyalty escalation"
    }
    """
    data = request.get_json(silent=True) or {}
    if data.get('tier_id') is None:
        return bad_request('tier_id is required', ErrorCode.MISSING_FIELD)

    result = SubscriptionService().assign_tier(
        validate_user_id(data.get('user_id')),
        data['tier_id'],
        assigned_by=get_staff_user(),
        reason=data.get('reason')
    )
    return jsonify(result)


@membership_bp.route('/admin/scheduler', methods=['GET'])
def scheduler_status():
    """Next run time of each background job (empty when the scheduler is off)."""
    from ..utils.scheduler import get_next_run_times

    jobs = get_next_run_times()
    return jsonify({'running': bool(jobs), 'jobs': jobs})


# ==================== Activity ====================

@membership_bp.route('/activity', methods=['POST'])
def record_activity():
    """
    Record one activity event.

    Request body:
    {
        "activity_type": "ORDER",
        "value": 49.99,
        "occurred_at": "2025-01-15T10:00:00Z"   # optional
    }
    """
    data = request.get_json(silent=True) or {}
    if not data.get('activity_type'):
        return bad_request('activity_type is required', ErrorCode.MISSING_FIELD)

    result = ActivityService().record_activity(
        get_user_id(data),
        data['activity_type'],
        value=data.get('value'),
        occurred_at=data.get('occurred_at'),
        cohorts=data.get('cohorts')
    )
    return jsonify(result), 201


@membership_bp.route('/activity/batch', methods=['POST'])
def record_activity_batch():
    """
    Record a batch of activity events for any users.

    Request body: {"events": [{"user_id": "...", "activity_type": "ORDER", ...}]}
    """
    data = request.get_json(silent=True) or {}
    if 'events' not in data:
        return bad_request('events is required', ErrorCode.MISSING_FIELD)

    result = ActivityService().record_activities(data['events'])
    return jsonify(result), 201


@membership_bp.route('/activity/<user_id>/aggregate', methods=['GET'])
def get_activity_aggregate(user_id):
    aggregate = ActivityService().get_aggregate(validate_user_id(user_id))
    return jsonify(aggregate.to_dict())
