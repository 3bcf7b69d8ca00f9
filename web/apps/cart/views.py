"""HTTP views for the cart.

Views are thin: they validate the payload with Pydantic, resolve the cart
for the caller's scope (set by ``gateway.middleware.CartScopeMiddleware``),
delegate to the ``Cart`` aggregate and return the resulting state.

Misuse that the aggregate treats as a no-op (unknown product, negative
quantity) still answers 200 with the unchanged cart and ``changed: false``;
only malformed payloads answer 400.
"""

from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from .adapters import CollectingNotifier
from .providers import get_cart
from .schemas import ProductIn, QuantityIn


def _cart_body(cart, changed: bool, notifier: CollectingNotifier | None = None) -> dict:
    body = {
        **cart.state.to_dict(),
        "item_count": cart.state.item_count,
        "locked": cart.is_locked,
        "changed": changed,
    }
    if notifier is not None:
        body["notices"] = notifier.as_notices()
    return body


def _validation_error(e: ValidationError) -> Response:
    return Response(
        {"detail": "VALIDATION_ERROR", "errors": e.errors(include_url=False, include_context=False)},
        status=status.HTTP_400_BAD_REQUEST,
    )


class CartThrottleMixin:
    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        self.throttle_scope = "cart_read" if self.request.method == "GET" else "cart_write"
        return [throttle() for throttle in self.throttle_classes]


class CartView(CartThrottleMixin, APIView):
    """Read or clear the caller's cart."""

    def get(self, request):
        cart = get_cart(request.cart_scope)
        return Response(_cart_body(cart, changed=False))

    def delete(self, request):
        cart = get_cart(request.cart_scope)
        changed = cart.clear_cart()
        return Response(_cart_body(cart, changed=changed))


class CartItemsView(CartThrottleMixin, APIView):
    """Add one unit of a product to the cart."""

    def post(self, request):
        try:
            product = ProductIn.model_validate(request.data)
        except ValidationError as e:
            return _validation_error(e)

        notifier = CollectingNotifier()
        cart = get_cart(request.cart_scope, notifier=notifier)
        changed = cart.add_item(product)
        code = status.HTTP_201_CREATED if changed else status.HTTP_200_OK
        return Response(_cart_body(cart, changed=changed, notifier=notifier), status=code)


class CartItemDetailView(CartThrottleMixin, APIView):
    """Change the quantity of, or remove, a single cart line."""

    def patch(self, request, product_id: int):
        try:
            dto = QuantityIn.model_validate(request.data)
        except ValidationError as e:
            return _validation_error(e)

        cart = get_cart(request.cart_scope)
        changed = cart.update_quantity(product_id, dto.quantity)
        return Response(_cart_body(cart, changed=changed))

    def delete(self, request, product_id: int):
        cart = get_cart(request.cart_scope)
        changed = cart.remove_item(product_id)
        return Response(_cart_body(cart, changed=changed))
