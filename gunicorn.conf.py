"""
Gunicorn settings for running the PDF service with several worker processes.

Every worker is a UvicornWorker serving ``pdf_service.pdf_controller:app`` and
owns its own BrowserManager, so each one launches a separate Chromium on its
first PDF request.

Environment Variables:
    WORKERS: Number of worker processes (default: 1)
    WORKER_TIMEOUT: Seconds before a silent worker is killed (default: 120, keep above REQUEST_TIMEOUT)
    GRACEFUL_TIMEOUT: Seconds a worker gets to finish in-flight renders on shutdown (default: 30)
    KEEP_ALIVE: Keep-alive timeout in seconds (default: 5)
    PORT: Service port (default: 9080)
    LOG_LEVEL: Log level (default: INFO)
    METRICS_SERVER_ENABLED: Forced to "false" when WORKERS > 1 unless set explicitly
"""

import os
from typing import Any

bind = f"0.0.0.0:{os.getenv('PORT', '9080')}"

workers = int(os.getenv("WORKERS", "1"))
worker_class = "uvicorn.workers.UvicornWorker"

# One METRICS_PORT cannot be bound by several workers
if workers > 1:
    os.environ.setdefault("METRICS_SERVER_ENABLED", "false")

timeout = int(os.getenv("WORKER_TIMEOUT", "120"))
graceful_timeout = int(os.getenv("GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("KEEP_ALIVE", "5"))

loglevel = os.getenv("LOG_LEVEL", "INFO").lower()
accesslog = "-"
errorlog = "-"
# %(D)s is the request duration in microseconds
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

proc_name = "pdf-service"

# Browsers must not be shared across forks
preload_app = False


def on_starting(server: Any) -> None:
    server.log.info("Starting pdf-service master with %d worker(s)", workers)
    if workers > 1 and os.environ.get("METRICS_SERVER_ENABLED", "").lower() == "false":
        server.log.info("Dedicated metrics server disabled for multi-worker mode")


def when_ready(server: Any) -> None:
    server.log.info("pdf-service listening on %s", bind)


def post_fork(server: Any, worker: Any) -> None:
    server.log.info("Worker %s forked (PID: %s)", worker.age, worker.pid)


def worker_int(worker: Any) -> None:
    worker.log.info("Worker %s interrupted, closing its browser", worker.pid)


def worker_abort(worker: Any) -> None:
    """Called on SIGABRT, usually after WORKER_TIMEOUT elapsed during a render."""
    worker.log.warning("Worker %s aborted after exceeding %ds", worker.pid, timeout)


def worker_exit(server: Any, worker: Any) -> None:
    server.log.info("Worker %s exited", worker.pid)


def on_exit(server: Any) -> None:
    server.log.info("pdf-service master exiting")
