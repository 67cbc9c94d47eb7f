"""
Logging configuration for SipGrounds.

Every record carries the id of the request it was emitted from, taken from
an incoming X-Request-ID header or generated per request.
"""
import logging
import os
import sys
import uuid

from flask import Flask, g, has_request_context, request

LOG_FORMAT = '%(asctime)s [%(levelname)s] [%(request_id)s] %(name)s: %(message)s'

REQUEST_ID_HEADER = 'X-Request-ID'


class RequestIdFilter(logging.Filter):
    """Attach the current request id (or '-') to each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        request_id = '-'
        if has_request_context():
            request_id = getattr(g, 'request_id', None) or '-'
        record.request_id = request_id
        return True


def setup_logging(level: str = None) -> None:
    """
    Configure root logging once per process.

    Args:
        level: Log level name; defaults to the LOG_LEVEL env var or INFO
    """
    level_name = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    # Avoid stacking handlers when create_app runs repeatedly (tests)
    for handler in root.handlers:
        if getattr(handler, '_sipgrounds', False):
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestIdFilter())
    handler._sipgrounds = True
    root.addHandler(handler)

    # Quiet noisy libraries
    logging.getLogger('stripe').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Module logger helper."""
    return logging.getLogger(name)


def init_request_id_tracking(app: Flask) -> None:
    """Assign a request id before each request and echo it on the response."""

    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]

    @app.after_request
    def echo_request_id(response):
        request_id = getattr(g, 'request_id', None)
        if request_id:
            response.headers[REQUEST_ID_HEADER] = request_id
        return response
