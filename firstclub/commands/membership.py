"""
CLI Commands for membership maintenance.

These commands can be run manually or via cron jobs when the in-process
scheduler is disabled:

# Expire subscriptions (every 15 minutes)
*/15 * * * * cd /app && flask membership expire-subscriptions

# Flag subscriptions entering the renewal window (hourly)
0 * * * * cd /app && flask membership flag-renewals

# Tier re-evaluation (every 6 hours)
0 */6 * * * cd /app && flask membership evaluate-tiers

# Activity retention (daily at 3 AM)
0 3 * * * cd /app && flask membership trim-activity
"""
import click
from flask import current_app
from flask.cli import with_appcontext

from ..models.catalog import seed_default_catalog
from ..services.scheduled_tasks import ScheduledTasksService


@click.group('membership')
def membership_cli():
    """Membership maintenance commands."""
    pass


def _echo_errors(errors, key):
    if errors:
        click.echo(f"  Errors: {len(errors)}")
        for error in errors[:5]:
            click.echo(f"    - {key} {error[key]}: {error['error']}")


@membership_cli.command('seed-catalog')
@with_appcontext
def seed_catalog():
    """Insert the default plans and tiers if they are missing."""
    created = seed_default_catalog()
    snapshot = current_app.extensions['membership_catalog'].reload()

    click.echo(f"Plans created: {created['plans']}")
    click.echo(f"Tiers created: {created['tiers']}")
    click.echo(f"Catalog snapshot v{snapshot.version}: {len(snapshot.plans)} plans, {len(snapshot.tiers)} tiers")


@membership_cli.command('expire-subscriptions')
@with_appcontext
def expire_subscriptions():
    """Expire live subscriptions past their expiry time."""
    result = ScheduledTasksService().expire_due_subscriptions()

    click.echo(f"Processed: {result['processed']} subscriptions")
    click.echo(f"Expired: {result['changed']}")
    click.echo(f"Skipped: {result['skipped']} (busy or already handled)")
    _echo_errors(result['errors'], 'subscription_id')


@membership_cli.command('flag-renewals')
@with_appcontext
def flag_renewals():
    """Move subscriptions inside the renewal window to PENDING_RENEWAL."""
    result = ScheduledTasksService().flag_pending_renewals()

    click.echo(f"Processed: {result['processed']} subscriptions")
    click.echo(f"Flagged: {result['changed']}")
    _echo_errors(result['errors'], 'subscription_id')


@membership_cli.command('evaluate-tiers')
@click.option('--batch-size', type=int, help='Subscriptions per page (default TIER_EVALUATION_BATCH_SIZE)')
@with_appcontext
def evaluate_tiers(batch_size):
    """Re-evaluate the tier of every ACTIVE subscription."""
    result = ScheduledTasksService().evaluate_tiers(batch_size=batch_size)

    click.echo(f"Evaluated: {result['processed']} users in {result['duration_seconds']}s")
    click.echo(f"Changed: {result['changed']}")
    click.echo(f"Unchanged: {result['unchanged']}")
    click.echo(f"Skipped: {result['skipped']} (busy or no longer active)")
    for change in result['changes'][:10]:
        click.echo(f"  - {change['user_id']}: {change['direction']} -> {change['new_tier_name']}")
    _echo_errors(result['errors'], 'user_id')


@membership_cli.command('trim-activity')
@click.option('--dry-run', is_flag=True, help='Count buckets without deleting them')
@with_appcontext
def trim_activity(dry_run):
    """Delete activity buckets older than the retention window."""
    result = ScheduledTasksService().trim_activity(dry_run=dry_run)

    prefix = '[DRY RUN] ' if dry_run else ''
    click.echo(f"{prefix}Buckets older than {result['cutoff']}: {result['deleted']}")


def init_app(app):
    """Register CLI commands with the Flask app."""
    app.cli.add_command(membership_cli)
