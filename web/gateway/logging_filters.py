"""Logging filter that adds request context to log records.

Attach ``RequestIdFilter`` to a handler and formatters can reference
``%(request_id)s`` and ``%(cart_scope)s`` without every log call passing
them in ``extra``.
"""

from logging import Filter, LogRecord

from .middleware import CART_SCOPE_CTX, REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Populate ``request_id`` and ``cart_scope`` on every record.

    Values come from the context variables set by the gateway middleware.
    Outside a request both default to a hyphen ("-"). A value already passed
    through ``extra`` is left alone.
    """

    def filter(self, record: LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = REQUEST_ID_CTX.get()
        if not hasattr(record, "cart_scope"):
            record.cart_scope = CART_SCOPE_CTX.get()
        return True
