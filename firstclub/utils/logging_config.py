"""
Logging setup for the membership service.

Call ``setup_logging()`` once before the app is created; modules then use
``logging.getLogger(__name__)``.
"""
import logging
import os
import sys

LOG_FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'

_configured = False


def setup_logging(level: str = None) -> None:
    """Configure the root logger with a single stdout handler."""
    global _configured
    if _configured:
        return

    level_name = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))

    # APScheduler logs every job execution at INFO
    logging.getLogger('apscheduler').setLevel(logging.WARNING)

    _configured = True

