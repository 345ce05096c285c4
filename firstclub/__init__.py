"""
FirstClub Membership Service
Flask application factory
"""
import os
import logging
from flask import Flask
from flask_cors import CORS

from .extensions import db, migrate
from .config import get_config, validate_config, MembershipSettings
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def create_app(config_name: str = None, config_overrides: dict = None) -> Flask:
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration environment (development, production, testing)
        config_overrides: Extra config values applied after the config class

    Returns:
        Configured Flask application
    """
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    # Setup logging before anything else
    setup_logging()
    validate_config(config_name)

    app = Flask(__name__)
    app.config.from_object(get_config(config_name))
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    CORS(
        app,
        origins=app.config.get('CORS_ORIGINS', []),
        allow_headers=['Content-Type', 'Authorization', 'X-User-Id', 'X-Staff-Email']
    )

    # Membership runtime: settings, clock, catalog, locks, events
    init_membership(app)

    # Register blueprints
    register_blueprints(app)

    # Register CLI commands
    from .commands import init_app as init_commands
    init_commands(app)

    # Background scheduler for expiry, renewal flags, tier sweeps (production only)
    from .utils.scheduler import init_scheduler
    init_scheduler(app)

    # Register error handlers
    register_error_handlers(app)

    # Health check endpoint
    @app.route('/health')
    def health_check():
        return {
            'status': 'healthy',
            'service': 'firstclub',
            'catalog_version': app.extensions['membership_catalog'].version
        }

    logger.info(f'FirstClub app created ({config_name})')
    return app


def init_membership(app: Flask) -> None:
    """Install the shared membership collaborators on ``app.extensions``."""
    from .services.catalog_service import CatalogService
    from .services.events import EventBus
    from .utils.clock import SystemClock
    from .utils.locks import UserLockRegistry

    settings = MembershipSettings.from_config(app.config)
    app.extensions['membership_settings'] = settings
    app.extensions['membership_clock'] = SystemClock()
    app.extensions['membership_catalog'] = CatalogService()
    app.extensions['membership_locks'] = UserLockRegistry(timeout=settings.lock_timeout_seconds)
    app.extensions['membership_events'] = EventBus()


def register_blueprints(app: Flask) -> None:
    """Register all API blueprints."""
    from .api.membership import membership_bp

    app.register_blueprint(membership_bp)


def register_error_handlers(app: Flask) -> None:
    """Register error handlers."""
    from .utils.exceptions import MembershipError
    from .utils.errors import membership_error_response, error_response, internal_error, ErrorCode

    @app.errorhandler(MembershipError)
    def handle_membership_error(error):
        return membership_error_response(error)

    @app.errorhandler(400)
    def bad_request(error):
        return error_response('Bad request', ErrorCode.INVALID_REQUEST, 400, log_error=False)

    @app.errorhandler(404)
    def not_found(error):
        return error_response('Not found', ErrorCode.NOT_FOUND, 404, log_error=False)

    @app.errorhandler(500)
    def handle_internal_error(error):
        db.session.rollback()
        return internal_error(details={'error': str(error)})
