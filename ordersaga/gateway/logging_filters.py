"""Logging filters and JSON logger set-up.

``RequestContextFilter`` injects the correlation ids held by the gateway
middleware's context variables into log records, so every log line of a
request can be joined without touching individual log statements.
``get_logger`` builds the JSON logger each app uses.
"""

import logging
from logging import Filter, LogRecord

from pythonjsonlogger import jsonlogger

from .middleware import ORDER_ID_CTX, REQUEST_ID_CTX, USER_ID_CTX

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(service)s %(request_id)s %(user_id)s %(order_id)s"


class RequestContextFilter(Filter):
    """Attach ``request_id``, ``user_id``, ``order_id`` and ``service`` to records.

    Missing values are rendered as a hyphen ("-") so formatters can always
    reference them. A record that already carries ``order_id`` (passed via
    ``extra``) keeps its own value.
    """

    def __init__(self, service: str = "-"):
        super().__init__()
        self.service = service

    def filter(self, record: LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get()
        record.user_id = USER_ID_CTX.get()
        if not getattr(record, "order_id", None):
            record.order_id = ORDER_ID_CTX.get()
        if not hasattr(record, "service"):
            record.service = self.service
        return True


def get_logger(name: str, service: str = "-", level: str = "INFO") -> logging.Logger:
    """Return a JSON logger for ``name``, configuring it on first use.

    Args:
        name: Logger name (e.g. ``ordersaga.orders``).
        service: Service name stamped on every record.
        level: Logging level name.

    Returns:
        logging.Logger: The configured logger.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
        h.addFilter(RequestContextFilter(service))
        logger.addHandler(h)
        logger.setLevel(level)
    return logger
