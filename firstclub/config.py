"""
Configuration management for the FirstClub membership service.
"""
import os
from dataclasses import dataclass, fields
from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, default))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


class BaseConfig:
    """Base configuration."""
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    CORS_ORIGINS = [o for o in os.getenv('CORS_ORIGINS', 'http://localhost:5173').split(',') if o]

    # Activity aggregation
    ACTIVITY_RETENTION_MONTHS = _env_int('ACTIVITY_RETENTION_MONTHS', 24)
    ORDER_COUNT_WINDOW_MONTHS = _env_int('ORDER_COUNT_WINDOW_MONTHS', 12)
    MAX_ACTIVITY_BATCH_SIZE = _env_int('MAX_ACTIVITY_BATCH_SIZE', 100)
    ACTIVITY_FUTURE_SKEW_SECONDS = _env_int('ACTIVITY_FUTURE_SKEW_SECONDS', 300)
    ENABLE_EAGER_TIER_UPGRADES = _env_bool('ENABLE_EAGER_TIER_UPGRADES', True)

    # Tier evaluation sweep
    TIER_EVALUATION_INTERVAL_HOURS = _env_int('TIER_EVALUATION_INTERVAL_HOURS', 6)
    TIER_EVALUATION_BATCH_SIZE = _env_int('TIER_EVALUATION_BATCH_SIZE', 100)
    MAX_CONCURRENT_TIER_EVALUATIONS = _env_int('MAX_CONCURRENT_TIER_EVALUATIONS', 10)

    # Per-user locking
    LOCK_TIMEOUT_SECONDS = _env_float('LOCK_TIMEOUT_SECONDS', 5.0)
    BUSY_RETRY_ATTEMPTS = _env_int('BUSY_RETRY_ATTEMPTS', 3)
    BUSY_RETRY_BACKOFF_SECONDS = _env_float('BUSY_RETRY_BACKOFF_SECONDS', 0.1)

    # Subscription lifecycle
    RENEWAL_WINDOW_DAYS = _env_int('RENEWAL_WINDOW_DAYS', 7)
    EXPIRY_SWEEP_INTERVAL_MINUTES = _env_int('EXPIRY_SWEEP_INTERVAL_MINUTES', 15)
    CANCELLATION_REASON_MAX_LENGTH = _env_int('CANCELLATION_REASON_MAX_LENGTH', 500)


class DevelopmentConfig(BaseConfig):
    """Development configuration."""
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'sqlite:///firstclub_dev.db'  # SQLite fallback for local dev
    )


class ProductionConfig(BaseConfig):
    """Production configuration."""
    DEBUG = False

    _db_url = os.getenv('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        # SQLAlchemy requires postgresql:// not postgres://
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_DATABASE_URI = _db_url

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 5,
        'pool_recycle': 300,
        'pool_pre_ping': True,  # Verify connections before using
    }

    _secret_key = os.getenv('SECRET_KEY', '')

    @classmethod
    def validate_secret_key(cls) -> str:
        """
        Validate SECRET_KEY in production environment.

        Raises:
            RuntimeError: If SECRET_KEY is missing, empty, or too short
        """
        if not cls._secret_key:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY environment variable is not set!\n"
                "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )

        if len(cls._secret_key) < 32:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY is too short (minimum 32 characters required)!"
            )

        return cls._secret_key

    SECRET_KEY = _secret_key  # Will be validated at app startup


class TestingConfig(BaseConfig):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOCK_TIMEOUT_SECONDS = 2.0
    BUSY_RETRY_BACKOFF_SECONDS = 0.01


config_map = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}


def get_config(config_name: str = 'development'):
    """Get configuration class by name."""
    return config_map.get(config_name, DevelopmentConfig)


def validate_config(config_name: str = 'development') -> None:
    """
    Validate configuration before app startup.

    Raises:
        RuntimeError: If validation fails in production
    """
    if config_name == 'production':
        ProductionConfig.validate_secret_key()


@dataclass(frozen=True)
class MembershipSettings:
    """
    Membership tunables, frozen once at startup.

    Services read this object (via ``app.extensions['membership_settings']``)
    instead of the config classes so tests can supply their own values.
    """
    activity_retention_months: int = 24
    order_count_window_months: int = 12
    max_activity_batch_size: int = 100
    activity_future_skew_seconds: int = 300
    enable_eager_tier_upgrades: bool = True
    tier_evaluation_interval_hours: int = 6
    tier_evaluation_batch_size: int = 100
    max_concurrent_tier_evaluations: int = 10
    lock_timeout_seconds: float = 5.0
    busy_retry_attempts: int = 3
    busy_retry_backoff_seconds: float = 0.1
    renewal_window_days: int = 7
    expiry_sweep_interval_minutes: int = 15
    cancellation_reason_max_length: int = 500

    def __post_init__(self):
        for name in (
            'activity_retention_months',
            'order_count_window_months',
            'max_activity_batch_size',
            'tier_evaluation_interval_hours',
            'tier_evaluation_batch_size',
            'max_concurrent_tier_evaluations',
            'expiry_sweep_interval_minutes',
            'cancellation_reason_max_length',
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f'{name.upper()} must be a positive integer')
        if self.order_count_window_months > self.activity_retention_months:
            raise ValueError('ORDER_COUNT_WINDOW_MONTHS cannot exceed ACTIVITY_RETENTION_MONTHS')
        if self.lock_timeout_seconds <= 0:
            raise ValueError('LOCK_TIMEOUT_SECONDS must be positive')
        if self.busy_retry_attempts < 0 or self.renewal_window_days < 0:
            raise ValueError('BUSY_RETRY_ATTEMPTS and RENEWAL_WINDOW_DAYS cannot be negative')

    @classmethod
    def from_config(cls, config) -> 'MembershipSettings':
        """Build settings from a Flask config mapping (upper-case keys)."""
        values = {}
        for f in fields(cls):
            key = f.name.upper()
            if key in config:
                values[f.name] = config[key]
        return cls(**values)
