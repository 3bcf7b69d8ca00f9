"""Pydantic schemas for checkout.

``BillingIdentityIn`` and ``ShippingAddressIn`` validate customer input
before it reaches the orchestrator. ``ShippingRateIn`` validates the rate
quotes returned by the shipping service.
"""

from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from .domain import BILLING_EMAIL_RE, BILLING_NAME_RE, BillingIdentity, ShippingAddress, ShippingSelection


class BillingIdentityIn(BaseModel):
    """Billing name and email.

    Attributes:
        name: 2-50 characters, letters and spaces only.
        email: 5-50 characters, ``local@domain.tld``.
    """

    name: str
    email: str = Field(min_length=5, max_length=50)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v2 = v.strip()
        if not BILLING_NAME_RE.match(v2):
            raise ValueError("Name must be 2-50 letters and spaces")
        return v2

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v2 = v.strip()
        if not BILLING_EMAIL_RE.match(v2):
            raise ValueError("Invalid email address")
        return v2

    def to_domain(self) -> BillingIdentity:
        return BillingIdentity(name=self.name, email=self.email)


class ShippingAddressIn(BaseModel):
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    address1: str = Field(min_length=1, max_length=200)
    address2: str = Field(default="", max_length=200)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=2, max_length=50)
    postal_code: str = Field(min_length=3, max_length=12)
    country: str = Field(default="US", min_length=2, max_length=2)
    phone: str = Field(default="", max_length=30)

    @field_validator("country")
    @classmethod
    def upper_country(cls, v: str) -> str:
        return v.upper()

    def to_domain(self) -> ShippingAddress:
        return ShippingAddress(**self.model_dump())


class ShippingRateIn(BaseModel):
    """A single quote from the shipping service."""

    carrier: str = Field(min_length=1)
    service: str = Field(min_length=1)
    rate: Decimal = Field(ge=0)
    estimated_days: int = Field(ge=0)

    def to_domain(self) -> ShippingSelection:
        return ShippingSelection(
            carrier=self.carrier,
            service=self.service,
            rate=self.rate.quantize(Decimal("0.01")),
            estimated_days=self.estimated_days,
        )
