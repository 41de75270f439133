import argparse
import logging
import os
import subprocess
import sys
from datetime import datetime
from pathlib import Path

import uvicorn

from pdf_service import pdf_controller

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_LOG_DIR = "/opt/pdf-service/logs"
# Loggers that set their own level and would otherwise ignore LOG_LEVEL
THIRD_PARTY_LOGGERS = ("playwright", "uvicorn", "uvicorn.error", "asyncio")


def _resolve_log_level(name: str) -> int:
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def setup_logging() -> Path:
    """
    Send log records to the console and to a new file per service start.

    LOG_LEVEL selects the level (INFO when unset or unknown) and LOG_DIR the
    directory of ``pdf-service_<timestamp>.log``. Handlers installed by a
    previous call are closed first, so calling this twice does not duplicate
    output.

    Returns:
        Path: The log file written by this process.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        handler.close()
        root_logger.removeHandler(handler)

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = _resolve_log_level(level_name)

    log_dir = Path(os.getenv("LOG_DIR", DEFAULT_LOG_DIR))
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"pdf-service_{datetime.now():%Y-%m-%d_%H-%M-%S}.log"

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in (logging.FileHandler(log_file, encoding="utf-8"), logging.StreamHandler()):
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for logger_name in THIRD_PARTY_LOGGERS:
        logging.getLogger(logger_name).setLevel(level)

    root_logger.info("Logging initialized with level: %s", level_name)
    root_logger.info("Log file: %s", log_file)
    return log_file


def start_server_single_worker(port: int) -> None:
    uvicorn.run(app=pdf_controller.app, host="", port=port)


def start_server_multi_worker(port: int, workers: int) -> None:
    """
    Hand the process over to gunicorn with ``workers`` uvicorn workers.

    gunicorn.conf.py reads PORT and WORKERS, so both are exported before it
    starts. Exits with gunicorn's return code.
    """
    os.environ["PORT"] = str(port)
    os.environ["WORKERS"] = str(workers)
    logging.info("Starting gunicorn with %d workers on port %d", workers, port)
    result = subprocess.run(["gunicorn", "pdf_service.pdf_controller:app", "--config", "gunicorn.conf.py"], check=False)  # noqa: S603
    sys.exit(result.returncode)


def main() -> None:
    """Parse arguments, set up logging and serve. PORT and WORKERS override the command line."""
    parser = argparse.ArgumentParser(description="Render URLs and HTML documents to PDF over HTTP")
    parser.add_argument("--port", default=9080, type=int, help="Service port")
    parser.add_argument("--workers", default=1, type=int, help="Number of worker processes")
    args = parser.parse_args()

    port = int(os.environ.get("PORT", args.port))
    workers = int(os.environ.get("WORKERS", args.workers))

    setup_logging()
    logging.info("PDF generator service listening port: %d", port)

    if workers > 1:
        start_server_multi_worker(port, workers)
    else:
        start_server_single_worker(port)


if __name__ == "__main__":
    main()
