"""Pydantic schemas for the cart.

``ProductIn`` and ``QuantityIn`` validate API payloads. ``StoredCartIn``
validates what comes back out of cart storage before it is trusted.
"""

from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from .domain import CartLine, CartState, compute_total, normalize_price


class ProductIn(BaseModel):
    """Product being added to the cart.

    Attributes:
        id: Catalogue product id (positive integer).
        name: Display name, 1-200 characters.
        price: Unit price as a number or numeric text, normalized to cents.
    """

    id: int = Field(gt=0)
    name: str = Field(min_length=1, max_length=200)
    price: Decimal

    @field_validator("price", mode="before")
    @classmethod
    def validate_price(cls, v) -> Decimal:
        return normalize_price(v)


class QuantityIn(BaseModel):
    """New quantity for a cart line. Negative values are accepted and ignored
    by the aggregate rather than rejected here."""

    quantity: int


class StoredLineIn(BaseModel):
    product_id: int
    name: str
    unit_price: Decimal
    quantity: int = Field(ge=1)

    @field_validator("unit_price", mode="before")
    @classmethod
    def validate_unit_price(cls, v) -> Decimal:
        return normalize_price(v)


class StoredCartIn(BaseModel):
    """Serialized cart as written by ``CacheCartStorage``."""

    version: int = Field(default=0, ge=0)
    locked: bool = False
    lines: list[StoredLineIn]
    total: Decimal

    @field_validator("lines")
    @classmethod
    def validate_unique_products(cls, v: list[StoredLineIn]) -> list[StoredLineIn]:
        ids = [line.product_id for line in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Duplicate product lines")
        return v

    def to_state(self) -> CartState:
        """Build a ``CartState``; the total is always derived from the lines."""
        lines = tuple(
            CartLine(line.product_id, line.name, line.unit_price, line.quantity) for line in self.lines
        )
        return CartState(lines=lines, total=compute_total(lines))
