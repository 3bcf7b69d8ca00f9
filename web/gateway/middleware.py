"""Middleware that assigns per-request identifiers for the storefront.

Two identifiers are resolved for every request:

- A request id (UUID) read from the incoming ``X-Request-Id`` header or
  generated server-side. It is echoed back as ``X-Request-ID`` and
  propagated to downstream services by the checkout HTTP clients.
- A cart scope, the opaque id of the cart owner. It comes from the cart
  cookie when present; otherwise a new one is generated and the cookie is
  set on the response. The cart storage key is derived from it.

Both values are stored on the request object and in context variables so
code running downstream (HTTP clients, log filters) can read them without
passing them explicitly.
"""

import contextvars
import secrets
import uuid

from django.conf import settings
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
CART_SCOPE_CTX = contextvars.ContextVar("cart_scope", default="-")


class RequestIdMiddleware(MiddlewareMixin):
    """Set and return a per-request identifier.

    Attributes:
        HEADER (str): Incoming header name in ``request.META`` casing.
        RESPONSE_HEADER (str): Header added to outgoing responses.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        """Reuse the client-supplied id or generate a UUIDv4."""
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        response[self.RESPONSE_HEADER] = getattr(request, "request_id", REQUEST_ID_CTX.get())
        return response


class CartScopeMiddleware(MiddlewareMixin):
    """Resolve the cart owner from the cart cookie.

    A missing or malformed cookie yields a fresh ``cart_<hex>`` scope, which
    is written back on the response so the browser keeps the same cart
    across reloads.
    """

    PREFIX = "cart_"

    def _cookie_name(self) -> str:
        return getattr(settings, "CART_COOKIE_NAME", "cart_id")

    def process_request(self, request):
        scope = request.COOKIES.get(self._cookie_name(), "")
        request.cart_scope_is_new = False
        if not (scope.startswith(self.PREFIX) and scope[len(self.PREFIX):].isalnum()):
            scope = self.PREFIX + secrets.token_hex(8)
            request.cart_scope_is_new = True
        request.cart_scope = scope
        CART_SCOPE_CTX.set(scope)

    def process_response(self, request, response):
        if getattr(request, "cart_scope_is_new", False):
            response.set_cookie(
                self._cookie_name(),
                request.cart_scope,
                max_age=getattr(settings, "CART_COOKIE_MAX_AGE", 60 * 60 * 24 * 30),
                httponly=True,
                samesite="Lax",
            )
        return response
