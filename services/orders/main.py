"""Orders service API built with FastAPI.

This module records the orders placed by the storefront checkout once a
payment has been captured. Validation is performed with Pydantic models,
while persistence is delegated to the SQLAlchemy-backed repository in
``repo``.

Order creation honours an ``Idempotency-Key`` header: the first request
creates the order (201), a replay with the same key and payload returns the
stored order (200, ``Idempotent-Replay: true``) and a replay with a
different payload is rejected (409).
"""

import logging
import time
import uuid
from decimal import Decimal
from typing import Annotated, Literal, Optional

from fastapi import FastAPI, Header, HTTPException, Request, Response
from pydantic import BaseModel, Field, constr, model_validator
from pythonjsonlogger import jsonlogger
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError

from repo import IdempotencyKey, Order, OrdersRepo, canonical_hash, engine, get_session

app = FastAPI(title="Orders Service")

Currency = constr(pattern=r"^[A-Z]{3}$")
Money = Annotated[Decimal, Field(ge=0, max_digits=12, decimal_places=2)]
PaymentMethodName = Literal["stripe", "square", "safekey", "apple_pay", "google_pay", "crypto"]


@app.on_event("startup")
def _startup_db():
    # wait briefly until the DB accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)


logger = logging.getLogger("orders")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


class OrderItemIn(BaseModel):
    product_id: int = Field(gt=0)
    name: str = Field(min_length=1, max_length=200)
    unit_price: Money
    quantity: int = Field(ge=1)


class AddressIn(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    address1: str = Field(min_length=1)
    address2: str = ""
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    postal_code: str = Field(min_length=1)
    country: str = Field(min_length=2, max_length=2)
    phone: str = ""


class ShippingRateIn(BaseModel):
    carrier: str
    service: str
    rate: Money
    estimated_days: int = Field(ge=0)


class BillingIn(BaseModel):
    name: str = Field(min_length=2, max_length=50)
    email: str = Field(min_length=5, max_length=50)


class PaymentDetailsIn(BaseModel):
    """Provider data of the captured payment; extra provider fields are kept."""

    model_config = {"extra": "allow"}

    provider_reference: str = Field(min_length=1)


class CreateOrderRequest(BaseModel):
    """Request body for order creation.

    ``total`` must equal the sum of the item lines plus the shipping rate.
    """

    items: list[OrderItemIn] = Field(min_length=1)
    total: Money
    subtotal: Optional[Money] = None
    currency: Currency = "USD"
    shipping_address: AddressIn
    shipping_rate: Optional[ShippingRateIn] = None
    billing: Optional[BillingIn] = None
    payment_method: PaymentMethodName
    payment_details: PaymentDetailsIn

    @model_validator(mode="after")
    def check_total(self):
        items_total = sum((i.unit_price * i.quantity for i in self.items), Decimal("0"))
        shipping = self.shipping_rate.rate if self.shipping_rate else Decimal("0")
        if self.subtotal is not None and self.subtotal != items_total:
            raise ValueError("SUBTOTAL_MISMATCH")
        if self.total != items_total + shipping:
            raise ValueError("TOTAL_MISMATCH")
        return self


def _create(req: CreateOrderRequest, session) -> Order:
    return OrdersRepo().create_order(
        session,
        body=req.model_dump(mode="json"),
        total_cents=int(req.total * 100),
        currency=req.currency,
        payment_method=req.payment_method,
        payment_reference=req.payment_details.provider_reference,
    )


@app.get("/health")
def health():
    """Liveness/health probe endpoint."""
    return {"ok": True}


@app.post("/orders", status_code=201)
def create_order(
    req: CreateOrderRequest,
    response: Response,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Record an order for a captured payment.

    Raises:
        HTTPException: 409 ``IDEMPOTENCY_CONFLICT`` when the key is reused
            with a different payload; 500 when the idempotency record cannot
            be read back.
    """
    payload_hash = canonical_hash(req.model_dump(mode="json"))

    # Without key: orders are created normally
    if not idempotency_key:
        with get_session() as s:
            order = _create(req, s)
            s.commit()
            logger.info("order created", extra={"order_id": order.id, "payment_method": req.payment_method})
            return order.to_dict()

    with get_session() as s:
        # Optimistic reservation attempt
        try:
            s.add(IdempotencyKey(key=idempotency_key, request_hash=payload_hash))
            s.commit()
        except IntegrityError:
            s.rollback()
            rec = s.execute(
                select(IdempotencyKey).where(IdempotencyKey.key == idempotency_key).with_for_update()
            ).scalars().first()
            if not rec:
                raise HTTPException(status_code=500, detail="IDEMPOTENCY_LOOKUP_ERROR")
            if rec.request_hash != payload_hash:
                raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
            if rec.order_id:
                order = s.get(Order, rec.order_id)
                response.status_code = 200
                response.headers["Idempotent-Replay"] = "true"
                logger.info("order replayed", extra={"order_id": rec.order_id})
                return order.to_dict()
            # reserved but no order yet: create it now

        order = _create(req, s)
        rec = s.get(IdempotencyKey, idempotency_key)
        rec.order_id = order.id
        s.add(rec)
        s.commit()
        logger.info("order created", extra={"order_id": order.id, "payment_method": req.payment_method})
        return order.to_dict()


@app.get("/orders/{order_id}")
def get_order(order_id: int):
    order = OrdersRepo().get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return order


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
