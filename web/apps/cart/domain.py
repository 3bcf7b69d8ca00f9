"""Domain model, ports and aggregate for the shopping cart.

The cart is an owned aggregate: one ``Cart`` instance per cart owner, built
from a storage port and a notifier port, and mutated only through its four
public operations. Every mutation builds a new immutable ``CartState`` and
swaps it in, so the total invariant holds at every observable point:

    total == sum(line.unit_price * line.quantity for line in lines)

Ordinary misuse (unknown product, negative quantity, unparseable price,
mutating a locked cart) is a logged no-op, never an exception.
"""

import logging
from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Protocol, Tuple

logger = logging.getLogger("cart")

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def normalize_price(value: Any) -> Decimal:
    """Normalize an upstream price to a two-place ``Decimal``.

    Callers pass prices as numbers or text depending on where the product
    came from, so this is the single place where that is reconciled.

    Args:
        value: ``Decimal``, ``int``, ``float`` or numeric text.

    Returns:
        Decimal: The price rounded half-up to cents.

    Raises:
        ValueError: ``INVALID_PRICE`` for booleans, non-numeric text,
            non-finite or negative values.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError("INVALID_PRICE")
    try:
        if isinstance(value, float):
            price = Decimal(repr(value))
        else:
            price = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError("INVALID_PRICE")
    if not price.is_finite() or price < 0:
        raise ValueError("INVALID_PRICE")
    return price.quantize(CENTS, rounding=ROUND_HALF_UP)


# ---- Value objects ----
@dataclass(frozen=True)
class CartLine:
    """A single product line in the cart.

    Attributes:
        product_id: Catalogue identifier of the product.
        name: Product name at the time it was added.
        unit_price: Normalized unit price.
        quantity: Units in the cart, always >= 1 while the line exists.
    """

    product_id: int
    name: str
    unit_price: Decimal
    quantity: int

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class CartState:
    """Immutable snapshot of the cart contents."""

    lines: Tuple[CartLine, ...] = ()
    total: Decimal = ZERO

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    def find(self, product_id: int) -> CartLine | None:
        return next((line for line in self.lines if line.product_id == product_id), None)

    def to_dict(self) -> dict:
        return {
            "lines": [
                {
                    "product_id": line.product_id,
                    "name": line.name,
                    "unit_price": str(line.unit_price),
                    "quantity": line.quantity,
                }
                for line in self.lines
            ],
            "total": str(self.total),
        }


EMPTY_CART = CartState()


def compute_total(lines: Tuple[CartLine, ...]) -> Decimal:
    return sum((line.subtotal for line in lines), ZERO)


@dataclass(frozen=True)
class StoredCart:
    """What a storage backend returns on load: the state, its version and
    whether a checkout holds the cart locked."""

    state: CartState = EMPTY_CART
    version: int = 0
    locked: bool = False


# ---- Ports ----
class CartStorage(Protocol):
    """Port for the durable key-value store holding a serialized cart."""

    def load(self, scope: str) -> StoredCart:
        """Return the stored cart for ``scope``, or an empty one.

        Implementations must never raise for malformed data.
        """
        raise NotImplementedError()

    def save(self, scope: str, state: CartState, expected_version: int, locked: bool = False) -> int:
        """Persist ``state`` with its lock flag and return the new version number."""
        raise NotImplementedError()


class CartNotifier(Protocol):
    """Port for best-effort user notifications."""

    def notify(self, title: str, description: str) -> None:
        raise NotImplementedError()


# ---- Aggregate ----
class Cart:
    """Shopping cart aggregate for a single owner.

    Args:
        scope: Identifier of the cart owner; part of the storage key.
        storage: ``CartStorage`` used to rehydrate and persist the cart.
        notifier: Optional ``CartNotifier`` for "Added to cart" messages.
    """

    def __init__(self, scope: str, storage: CartStorage, notifier: CartNotifier | None = None):
        self.scope = scope
        self.storage = storage
        self.notifier = notifier
        stored = storage.load(scope)
        self._state = stored.state
        self._version = stored.version
        self._locked = stored.locked

    # -- read side --
    @property
    def state(self) -> CartState:
        return self._state

    @property
    def lines(self) -> Tuple[CartLine, ...]:
        return self._state.lines

    @property
    def total(self) -> Decimal:
        return self._state.total

    @property
    def version(self) -> int:
        return self._version

    @property
    def is_locked(self) -> bool:
        return self._locked

    def snapshot(self) -> CartState:
        return self._state

    # -- checkout lock --
    def lock(self) -> None:
        """Reject item mutations until ``unlock`` (checkout in progress).

        The lock is stored with the cart, so every ``Cart`` rehydrated for
        this scope rejects mutations too. If another writer saved the cart
        since this instance loaded it, the newer contents are adopted first.
        """
        stored = self.storage.load(self.scope)
        if stored.version > self._version:
            self._state = stored.state
            self._version = stored.version
        self._locked = True
        self._commit(self._state)

    def unlock(self) -> None:
        self._locked = False
        self._commit(self._state)

    # -- mutations --
    def add_item(self, product: Any) -> bool:
        """Add one unit of ``product``.

        Args:
            product: Object or mapping exposing ``id``, ``name`` and ``price``.

        Returns:
            bool: True if the cart changed.
        """
        if self._rejected_while_locked("add_item"):
            return False
        try:
            product_id = int(_read(product, "id"))
            name = str(_read(product, "name"))
            price = normalize_price(_read(product, "price"))
            if product_id <= 0 or not name.strip():
                raise ValueError("INVALID_PRODUCT")
        except (KeyError, TypeError, ValueError):
            logger.warning("cart.add_item.invalid_product", extra={"product": repr(product)})
            return False

        existing = self._state.find(product_id)
        if existing:
            lines = tuple(
                replace(line, quantity=line.quantity + 1) if line.product_id == product_id else line
                for line in self._state.lines
            )
            # the stored unit price wins over a re-added product's price
            price = existing.unit_price
        else:
            lines = self._state.lines + (CartLine(product_id, name, price, 1),)

        self._commit(CartState(lines=lines, total=self._state.total + price))
        self._notify("Added to cart", f"{name} has been added to your cart.")
        return True

    def remove_item(self, product_id: int) -> bool:
        """Delete the line for ``product_id``; no-op if absent."""
        if self._rejected_while_locked("remove_item"):
            return False
        line = self._state.find(product_id)
        if line is None:
            return False
        lines = tuple(other for other in self._state.lines if other.product_id != product_id)
        self._commit(CartState(lines=lines, total=self._state.total - line.subtotal))
        return True

    def update_quantity(self, product_id: int, quantity: int) -> bool:
        """Set the quantity of a line.

        Negative quantities and unknown products are no-ops; zero removes
        the line.
        """
        if quantity < 0:
            return False
        if quantity == 0:
            return self.remove_item(product_id)
        if self._rejected_while_locked("update_quantity"):
            return False
        line = self._state.find(product_id)
        if line is None or line.quantity == quantity:
            return False
        lines = tuple(
            replace(other, quantity=quantity) if other.product_id == product_id else other
            for other in self._state.lines
        )
        delta = line.unit_price * (quantity - line.quantity)
        self._commit(CartState(lines=lines, total=self._state.total + delta))
        return True

    def clear_cart(self) -> bool:
        """Empty the cart unconditionally."""
        self._commit(EMPTY_CART)
        return True

    # -- internals --
    def _rejected_while_locked(self, operation: str) -> bool:
        if not self._locked and self.storage.load(self.scope).locked:
            # locked by a checkout after this instance was loaded
            self._locked = True
        if self._locked:
            logger.info("cart.locked", extra={"operation": operation, "scope": self.scope})
        return self._locked

    def _commit(self, new_state: CartState) -> None:
        self._state = new_state
        try:
            self._version = self.storage.save(self.scope, new_state, self._version, locked=self._locked)
        except Exception:
            logger.warning("cart.storage.save_failed", exc_info=True, extra={"scope": self.scope})

    def _notify(self, title: str, description: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(title, description)
        except Exception:
            logger.warning("cart.notify_failed", exc_info=True, extra={"scope": self.scope})


def _read(product: Any, key: str) -> Any:
    if isinstance(product, dict):
        return product[key]
    try:
        return getattr(product, key)
    except AttributeError:
        raise KeyError(key)
