"""Factory helpers for building a cart bound to its storage.

``get_cart`` returns a ``Cart`` for a scope, backed by the Django cache
unless ``settings.USE_CACHE_CART_STORAGE`` is false, in which case a shared
in-memory store is used (handy for local scripts).
"""

from django.conf import settings

from .adapters import InMemoryCartStorage
from .domain import Cart, CartNotifier
from .storage import CacheCartStorage

_memory_storage = InMemoryCartStorage()


def get_cart_storage():
    if getattr(settings, "USE_CACHE_CART_STORAGE", True):
        return CacheCartStorage()
    return _memory_storage


def get_cart(scope: str, notifier: CartNotifier | None = None) -> Cart:
    """Return the cart for ``scope``, rehydrated from storage."""
    return Cart(scope=scope, storage=get_cart_storage(), notifier=notifier)
