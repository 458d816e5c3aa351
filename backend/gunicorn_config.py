"""
Gunicorn Configuration for Production Deployment

Sized for a small container: the privacy API is low-traffic and I/O bound,
so a couple of async workers are plenty.
"""

import os

# Each async worker holds its own SQLAlchemy pool
workers = int(os.getenv("WEB_CONCURRENCY", "2"))

worker_class = "uvicorn.workers.UvicornWorker"

# The deletion sweep endpoint can run for a while on a large backlog
timeout = 300
keepalive = 5
graceful_timeout = 30

preload_app = False

# Recycle workers periodically
max_requests = 1000
max_requests_jitter = 50

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info")
# No client address or user agent in access logs; the audit trail records them
access_log_format = '%(t)s "%(r)s" %(s)s %(b)s %(D)sμs'

bind = f"0.0.0.0:{os.getenv('PORT', '8000')}"

proc_name = "travel-planner-privacy-api"

daemon = False
pidfile = None
umask = 0
user = None
group = None
tmp_upload_dir = None


def on_starting(server):
    """Called just before the master process is initialized"""
    server.log.info("Starting Travel Planner Privacy API...")
    server.log.info(f"Workers: {workers}, Timeout: {timeout}s")


def when_ready(server):
    """Called just after the server is started"""
    server.log.info("Server is ready. Spawning workers...")


def worker_abort(worker):
    """Called when worker receives SIGABRT after a timeout"""
    worker.log.info("Worker timed out, aborting...")
