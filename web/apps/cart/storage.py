"""Cache-backed cart storage.

Carts are stored as JSON-compatible dicts in the Django cache under
``"<CART_STORAGE_KEY>:<scope>"``. Writes follow a versioned
last-write-wins policy: every save bumps the stored version, and a writer
holding an older version than the one in the cache still wins but is logged
as a stale write, so two tabs editing the same cart leave a trace.
"""

import logging

from django.conf import settings
from django.core.cache import caches
from pydantic import ValidationError

from .domain import CartState, StoredCart
from .schemas import StoredCartIn

logger = logging.getLogger("cart")


def storage_key(scope: str) -> str:
    return f"{getattr(settings, 'CART_STORAGE_KEY', 'storefront_cart')}:{scope}"


def serialize(state: CartState, version: int, locked: bool = False) -> dict:
    return {"version": version, "locked": locked, **state.to_dict()}


def deserialize(raw) -> StoredCart:
    """Turn a raw cached value into a ``StoredCart``.

    Anything that does not validate (wrong shape, bad prices, zero
    quantities, duplicate products) is discarded in favour of an empty cart.
    """
    if raw is None:
        return StoredCart()
    try:
        parsed = StoredCartIn.model_validate(raw)
    except (ValidationError, ValueError, TypeError):
        logger.warning("cart.storage.malformed", exc_info=True)
        return StoredCart()
    state = parsed.to_state()
    if state.total != parsed.total:
        logger.warning(
            "cart.storage.total_mismatch",
            extra={"stored_total": str(parsed.total), "computed_total": str(state.total)},
        )
    return StoredCart(state=state, version=parsed.version, locked=parsed.locked)


class CacheCartStorage:
    """``CartStorage`` implementation on top of a Django cache alias."""

    def __init__(self, alias: str = "default", timeout: int | None = None):
        self.alias = alias
        self.timeout = timeout or getattr(settings, "CART_STORAGE_TIMEOUT", 60 * 60 * 24 * 30)

    @property
    def cache(self):
        return caches[self.alias]

    def load(self, scope: str) -> StoredCart:
        try:
            raw = self.cache.get(storage_key(scope))
        except Exception:
            logger.warning("cart.storage.load_failed", exc_info=True, extra={"scope": scope})
            return StoredCart()
        return deserialize(raw)

    def save(self, scope: str, state: CartState, expected_version: int, locked: bool = False) -> int:
        key = storage_key(scope)
        current = self.cache.get(key)
        stored_version = current.get("version", 0) if isinstance(current, dict) else 0
        if not isinstance(stored_version, int):
            stored_version = 0
        if stored_version > expected_version:
            logger.warning(
                "cart.storage.stale_write",
                extra={"scope": scope, "expected": expected_version, "stored": stored_version},
            )
        new_version = max(stored_version, expected_version) + 1
        self.cache.set(key, serialize(state, new_version, locked), self.timeout)
        return new_version
