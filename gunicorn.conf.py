"""
Gunicorn configuration for the FirstClub membership service.
"""
import os

bind = f"0.0.0.0:{os.getenv('PORT', '8080')}"

# Per-user locks are process-local. Across workers (and the scheduler in the
# master) subscription writes are serialised by row locks and the version
# column on subscriptions
workers = int(os.getenv('GUNICORN_WORKERS', '2'))
threads = int(os.getenv('GUNICORN_THREADS', '4'))
worker_class = 'gthread'
timeout = 120
keepalive = 5

# Logging
accesslog = '-'  # stdout
errorlog = '-'   # stderr
loglevel = os.getenv('LOG_LEVEL', 'info')
capture_output = True

proc_name = 'firstclub'

# Preload so the scheduler starts once in the master
preload_app = True

graceful_timeout = 30


def on_starting(server):
    server.log.info("[Gunicorn] Starting FirstClub server...")


def on_exit(server):
    server.log.info("[Gunicorn] FirstClub server shutting down...")
