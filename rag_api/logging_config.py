"""
Logging for the evidence RAG service and the index builder.

One stdout handler on the root logger, every line tagged with the id of the
request being served (rid=- outside a request). Pipeline stages log a single
"event | key=value | ..." line each.

Usage:
    from rag_api.logging_config import get_logger
    logger = get_logger(__name__)
    logger.info(f"search | variants={n} | hits={len(hits)}")
"""
import logging
import sys
import uuid
from contextvars import ContextVar

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | rid=%(request_id)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries that log every HTTP call at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "openai", "qdrant_client", "urllib3")

# Set by the request-id middleware for the duration of a request
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    """Adds record.request_id so the format string can use it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        return True


def setup_logging(level: str = "INFO") -> None:
    """
    Install the stdout handler on the root logger.

    Safe to call more than once: the handler installed by a previous call is
    replaced, handlers added by others (e.g. a test runner) are left alone.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
    """
    log_level = getattr(logging, str(level).upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(log_level)
    for h in [h for h in root.handlers if getattr(h, "_rag_api", False)]:
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler._rag_api = True
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(RequestIdFilter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def new_request_id() -> str:
    return uuid.uuid4().hex[:12]
