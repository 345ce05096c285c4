"""
Shared pytest fixtures for the FirstClub membership service.

The app runs against a temporary SQLite file rather than ``:memory:`` so
worker threads in concurrency and scheduler tests each get their own
connection to the same database.
"""
import threading
from datetime import datetime, timedelta

import pytest


class FrozenClock:
    """Controllable clock for expiry and window tests."""

    def __init__(self, now: datetime):
        self._now = now
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, now: datetime) -> None:
        with self._lock:
            self._now = now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now


FROZEN_NOW = datetime(2025, 3, 15, 12, 0, 0)


@pytest.fixture
def app(tmp_path):
    """Create application for testing with a seeded catalog."""
    from firstclub import create_app
    from firstclub.extensions import db
    from firstclub.models.catalog import seed_default_catalog

    app = create_app('testing', config_overrides={
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'firstclub_test.db'}",
    })
    app.extensions['membership_clock'] = FrozenClock(FROZEN_NOW)

    with app.app_context():
        db.create_all()
        seed_default_catalog()
        app.extensions['membership_catalog'].reload()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def clock(app):
    return app.extensions['membership_clock']


@pytest.fixture
def plans(app):
    """Plan ids keyed by plan type."""
    catalog = app.extensions['membership_catalog']
    with app.app_context():
        return {p.plan_type.value: p.id for p in catalog.list_plans()}


@pytest.fixture
def tiers(app):
    """Tier ids keyed by level."""
    catalog = app.extensions['membership_catalog']
    with app.app_context():
        return {t.level.value: t.id for t in catalog.list_tiers()}


@pytest.fixture
def record_orders(app):
    """Record ``count`` ORDER events of ``value`` each for a user."""
    def _record(user_id, count, value='25.00'):
        from firstclub.services.activity_service import ActivityService

        with app.app_context():
            service = ActivityService()
            for _ in range(count):
                service.record_activity(user_id, 'ORDER', value=value)
    return _record


@pytest.fixture
def subscribed_user(app, plans):
    """A user with an ACTIVE monthly subscription on the baseline tier."""
    from firstclub.services.subscription_service import SubscriptionService

    with app.app_context():
        SubscriptionService().subscribe('user-100', plans['MONTHLY'])
    return 'user-100'


def run_concurrently(app, fn, count):
    """
    Run ``fn(index)`` on ``count`` threads, each in its own app context.

    Returns a list of (result, exception) tuples in thread index order.
    """
    barrier = threading.Barrier(count)
    outcomes = [None] * count

    def worker(index):
        with app.app_context():
            barrier.wait()
            try:
                outcomes[index] = (fn(index), None)
            except Exception as e:
                outcomes[index] = (None, e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return outcomes


@pytest.fixture
def concurrently(app):
    """Fixture form of ``run_concurrently`` bound to the test app."""
    def _run(fn, count):
        return run_concurrently(app, fn, count)
    return _run
