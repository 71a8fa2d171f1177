"""Middleware that binds per-request context for logs and downstream calls.

Every request gets a request identifier, reused from the ``X-Request-ID``
header when the edge proxy already assigned one, otherwise generated here.
The identity provider in front of this service forwards the authenticated
user in ``X-User-Id``; it is captured as-is (this service does not issue or
verify identities).

Both values are stored on the request object and in context variables so
logging filters and HTTP adapters can read them without threading the
request through every call.
"""

import uuid
import contextvars

from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
USER_ID_CTX = contextvars.ContextVar("user_id", default="-")


class RequestContextMiddleware(MiddlewareMixin):
    """Set request id and caller id for the duration of a request.

    Attributes:
        REQUEST_ID_HEADER (str): Incoming request-id header (``request.META`` casing).
        USER_ID_HEADER (str): Incoming identity header (``request.META`` casing).
        RESPONSE_HEADER (str): Header echoing the request id on responses.
    """

    REQUEST_ID_HEADER = "HTTP_X_REQUEST_ID"
    USER_ID_HEADER = "HTTP_X_USER_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.REQUEST_ID_HEADER) or str(uuid.uuid4())
        uid = request.META.get(self.USER_ID_HEADER) or None
        request.request_id = rid
        request.user_id = uid
        REQUEST_ID_CTX.set(rid)
        USER_ID_CTX.set(uid or "-")

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    """Reject oversized API bodies before they reach a view."""

    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        clen = request.META.get("CONTENT_LENGTH")
        limit = getattr(settings, "API_MAX_BYTES", 1024 * 1024)
        if clen and clen.isdigit() and int(clen) > limit:
            return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
        return None
