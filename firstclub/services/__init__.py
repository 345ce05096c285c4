"""
Business logic services for the FirstClub membership service.
"""
from .catalog_service import CatalogService
from .activity_service import ActivityService
from .subscription_service import SubscriptionService
from .scheduled_tasks import ScheduledTasksService
from .events import EventBus, SubscriptionEvent

__all__ = [
    'CatalogService',
    'ActivityService',
    'SubscriptionService',
    'ScheduledTasksService',
    'EventBus',
    'SubscriptionEvent',
]
