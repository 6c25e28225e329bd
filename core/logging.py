"""Centralized logging setup."""

import logging
import os
import sys
from contextvars import ContextVar
from logging.handlers import WatchedFileHandler
from typing import Optional


request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIdFilter(logging.Filter):
    """Stamp every record with the id of the request being served (or '-')."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True


def _handler_exists(
    logger: logging.Logger, handler_type: type, *, filename: Optional[str] = None
) -> bool:
    for handler in logger.handlers:
        if isinstance(handler, handler_type):
            if filename is None:
                return True
            if getattr(handler, "baseFilename", None) == filename:
                return True
    return False


def configure_logging(*, environment: str, log_level: str) -> int:
    level = getattr(logging, (log_level or "INFO").upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    formatter = logging.Formatter(
        "[%(asctime)s.%(msecs)03d] [%(levelname)-5s] [%(name)-20s] [%(request_id)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    request_filter = RequestIdFilter()

    if not _handler_exists(root, logging.StreamHandler):
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(request_filter)
        root.addHandler(handler)

    app_log_path = os.getenv("APP_LOG_PATH", "").strip()
    if app_log_path:
        try:
            log_dir = os.path.dirname(app_log_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            if not _handler_exists(root, WatchedFileHandler, filename=app_log_path):
                file_handler = WatchedFileHandler(app_log_path)
                file_handler.setLevel(level)
                file_handler.setFormatter(formatter)
                file_handler.addFilter(request_filter)
                root.addHandler(file_handler)
        except OSError as exc:
            root.warning(
                "Failed to configure APP_LOG_PATH logging for %s: %s",
                app_log_path,
                exc,
            )

    # Third-party chatter
    for name in ("urllib3", "httpx", "httpcore", "botocore", "boto3", "stripe"):
        logging.getLogger(name).setLevel(logging.WARNING)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True
        uv_logger.setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    if environment != "production":
        logging.getLogger("db.slow_query").setLevel(logging.DEBUG)

    return level
