"""
Logging Configuration

Root handler setup plus a query context: while a query is being
orchestrated or scored, every record logged from that task (and from
the tasks and threads it spawns) carries its id in the `query_id` field.
"""
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(query_id)s | %(message)s"

_current_query: ContextVar[str] = ContextVar("current_query", default="-")


class QueryContextFilter(logging.Filter):
    """Stamp each record with the query id of the current context, or '-'."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.query_id = _current_query.get()
        return True


@contextmanager
def query_context(query_id: str) -> Iterator[None]:
    token = _current_query.set(query_id)
    try:
        yield
    finally:
        _current_query.reset(token)


def current_query_id() -> str:
    return _current_query.get()


def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler.addFilter(QueryContextFilter())
    handler.setLevel(log_level)
    root_logger.addHandler(handler)

    # Provider SDKs and drivers log every request at INFO
    for name in ("httpx", "httpcore", "openai", "redis", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
