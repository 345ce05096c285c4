"""
Background scheduler for automated membership tasks.

Handles:
- Subscription expiry (every EXPIRY_SWEEP_INTERVAL_MINUTES)
- Renewal window flags (hourly)
- Tier re-evaluation (every TIER_EVALUATION_INTERVAL_HOURS)
- Activity retention trim (daily at 3 AM UTC)
"""
import atexit
import logging
import os

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler = None
_flask_app = None  # Store Flask app reference for context


def scheduler_enabled(app) -> bool:
    """Runs in production or when ENABLE_SCHEDULER=true; never under tests."""
    if app.config.get('TESTING'):
        return False
    return os.getenv('FLASK_ENV') == 'production' or os.getenv('ENABLE_SCHEDULER') == 'true'


def init_scheduler(app):
    """
    Initialize the background scheduler.

    Only the main gunicorn process should run the scheduler.
    """
    global _scheduler, _flask_app

    _flask_app = app

    if not scheduler_enabled(app):
        logger.info('[Scheduler] Disabled (set FLASK_ENV=production or ENABLE_SCHEDULER=true)')
        return None

    # Prevent multiple scheduler instances (important for gunicorn workers)
    if os.getenv('SCHEDULER_RUNNING') == 'true':
        logger.info('[Scheduler] Already running in another process')
        return None

    settings = app.extensions['membership_settings']

    _scheduler = BackgroundScheduler(
        timezone='UTC',
        job_defaults={
            'coalesce': True,  # Combine missed runs
            'max_instances': 1,  # Prevent concurrent runs
            'misfire_grace_time': 600
        }
    )

    _scheduler.add_job(
        run_expiry_sweep,
        trigger=IntervalTrigger(minutes=settings.expiry_sweep_interval_minutes),
        id='expiry_sweep',
        name='Expire subscriptions past their expiry time',
        replace_existing=True
    )

    _scheduler.add_job(
        run_renewal_flags,
        trigger=IntervalTrigger(hours=1),
        id='renewal_flags',
        name='Flag subscriptions entering the renewal window',
        replace_existing=True
    )

    _scheduler.add_job(
        run_tier_evaluation,
        trigger=IntervalTrigger(hours=settings.tier_evaluation_interval_hours),
        id='tier_evaluation',
        name='Re-evaluate tiers of active subscriptions',
        replace_existing=True
    )

    _scheduler.add_job(
        run_activity_trim,
        trigger=CronTrigger(hour=3, minute=0),
        id='activity_trim',
        name='Trim activity outside the retention window',
        replace_existing=True
    )

    _scheduler.start()
    os.environ['SCHEDULER_RUNNING'] = 'true'
    atexit.register(shutdown_scheduler)

    logger.info(
        f'[Scheduler] Started with 4 jobs: expiry every {settings.expiry_sweep_interval_minutes}m, '
        f'renewal flags hourly, tier evaluation every {settings.tier_evaluation_interval_hours}h, '
        f'activity trim daily at 3:00 UTC'
    )
    return _scheduler


def shutdown_scheduler():
    """Gracefully shutdown the scheduler."""
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info('[Scheduler] Shutdown complete')


def _run_task(label: str, method_name: str):
    """Run one ScheduledTasksService method inside the app context."""
    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return None

    logger.info(f'[Scheduler] Starting {label}...')

    with _flask_app.app_context():
        try:
            from ..services.scheduled_tasks import ScheduledTasksService

            results = getattr(ScheduledTasksService(), method_name)()
            logger.info(f'[Scheduler] {label} complete: {results}')
            return results
        except Exception as e:
            logger.exception(f'[Scheduler] {label} failed: {e}')
            return None


def run_expiry_sweep():
    return _run_task('Expiry sweep', 'expire_due_subscriptions')


def run_renewal_flags():
    return _run_task('Renewal flags', 'flag_pending_renewals')


def run_tier_evaluation():
    return _run_task('Tier evaluation', 'evaluate_tiers')


def run_activity_trim():
    return _run_task('Activity trim', 'trim_activity')


def get_next_run_times() -> dict:
    """Get the next scheduled run times for all jobs."""
    if not _scheduler:
        return {}

    jobs = {}
    for job in _scheduler.get_jobs():
        next_run = job.next_run_time
        jobs[job.id] = {
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None
        }

    return jobs
