"""
CLI Commands for FirstClub.

Usage:
    flask membership seed-catalog           # Insert default plans and tiers
    flask membership expire-subscriptions   # Expire subscriptions past expiry
    flask membership flag-renewals          # Flag subscriptions due for renewal
    flask membership evaluate-tiers         # Batch tier re-evaluation
    flask membership trim-activity          # Activity retention trim
"""
from .membership import init_app as init_membership_commands


def init_app(app):
    """Register all CLI commands with the Flask app."""
    init_membership_commands(app)
