"""Logging filter that stamps records with the current request context.

Wired into the ``LOGGING`` dictConfig so the JSON formatter can always
reference ``%(request_id)s`` and ``%(user_id)s``, including for records
emitted outside a request (management commands, background pollers), where
both fall back to a hyphen.
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX, USER_ID_CTX


class RequestContextFilter(Filter):
    def filter(self, record: LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = REQUEST_ID_CTX.get()
        if not hasattr(record, "user_id"):
            record.user_id = USER_ID_CTX.get()
        return True
