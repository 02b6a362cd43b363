# logger.py
import logging
import sys
import uuid
from contextvars import ContextVar

REQUEST_ID: ContextVar[str] = ContextVar("request_id", default="-")

FORMAT = "%(asctime)s %(levelname)-8s %(name)s request_id=%(request_id)s %(message)s"


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = REQUEST_ID.get()
        return True


def new_request_id(header_value: str | None = None) -> str:
    rid = header_value or uuid.uuid4().hex
    REQUEST_ID.set(rid)
    return rid


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach one stdout handler to the ``lms`` logger tree. Safe to call twice."""
    logger = logging.getLogger("lms")
    if getattr(logger, "_configured", False):
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler.addFilter(RequestIdFilter())

    logger.setLevel(str(level).upper())
    logger.addHandler(handler)
    logger.propagate = False
    logger._configured = True
    return logger
