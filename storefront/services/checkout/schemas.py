"""API request/response schemas for checkout endpoints.

Wire names are camelCase to match the storefront client. The names used by the
first checkout page (`shippoRateId`, `customerInfo`, ...) are still accepted.
"""

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CustomerInfo(BaseModel):
    """Buyer contact and destination address, plus the grand total they were shown."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: str = Field(min_length=1)
    address: str = Field(min_length=1, validation_alias=AliasChoices("address", "street1"))
    address2: str | None = Field(default=None, validation_alias=AliasChoices("address2", "street2"))
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    zip: str = Field(min_length=1, validation_alias=AliasChoices("zip", "zipCode", "postalCode"))
    country: str = Field(min_length=2, max_length=3)
    total_price: float = Field(ge=0, validation_alias=AliasChoices("totalPrice", "total_price"))


class LineItemIn(BaseModel):
    """Cart line as the client sent it. Quantity and price are normalised later."""

    model_config = ConfigDict(populate_by_name=True)

    product_id: str | int | None = Field(default=None, validation_alias=AliasChoices("productId", "id", "_id"))
    name: str | None = None
    title: str | None = None
    quantity: Any = None
    price: Any = None


class ShippingSelection(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    description: str = Field(min_length=1)
    cost: float = Field(ge=0)


class OrderRequest(BaseModel):
    """Payload accepted by `POST /orders`."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    rate_id: str = Field(min_length=1, validation_alias=AliasChoices("rateId", "shippoRateId", "rate_id"))
    order_id: str = Field(min_length=1, max_length=128, validation_alias=AliasChoices("orderId", "order_id"))
    customer: CustomerInfo = Field(validation_alias=AliasChoices("customer", "customerInfo"))
    items: list[LineItemIn] = Field(min_length=1)
    shipping: ShippingSelection = Field(validation_alias=AliasChoices("shipping", "shippingDetails"))
    payment_reference: str = Field(
        min_length=1,
        validation_alias=AliasChoices("paymentReference", "stripePaymentIntentId", "payment_reference"),
    )


class OrderConfirmation(CamelModel):
    """Success body of `POST /orders`."""

    order_id: str
    tracking_number: str
    label_url: str | None = None


class ErrorBody(CamelModel):
    error: str
    internal_error: bool | None = None
    details: Any = None
    order_id: str | None = None
    payment_intent_id: str | None = None


class ShippingAddressIn(BaseModel):
    street1: str
    street2: str | None = None
    city: str
    state: str | None = None
    zip: str
    country: str


class PaymentIntentRequest(CamelModel):
    amount: int = Field(gt=50, description="Amount in minor currency units")
    currency: str = Field(default="usd", min_length=3, max_length=3)
    customer_name: str | None = None
    customer_email: str | None = None
    shipping_address: ShippingAddressIn | None = None


class PaymentIntentResponse(CamelModel):
    client_secret: str


class RatesRequest(CamelModel):
    address_from: dict[str, Any]
    address_to: dict[str, Any]
    parcels: list[dict[str, Any]] = Field(min_length=1)


class RateOut(BaseModel):
    id: str
    provider: str
    servicelevel_name: str
    description: str
    amount: float
    currency: str | None = None
    estimated_days: int | None = None


class RatesResponse(BaseModel):
    rates: list[RateOut]


class TrackShipmentRequest(CamelModel):
    tracking_number: str = Field(min_length=1)
    carrier: str | None = None


class TrackingEventOut(BaseModel):
    date: str
    location: str
    status: str


class TrackingResponse(BaseModel):
    status: str
    history: list[TrackingEventOut]
    eta: str | None = None


class PlacementStatusResponse(CamelModel):
    order_id: str
    state: str
    payment_reference: str
    tracking_number: str | None = None
    label_url: str | None = None
    document_id: str | None = None
    updated_at: datetime | None = None


class ReconciliationItem(CamelModel):
    order_id: str
    state: str
    payment_reference: str
    label_transaction_id: str | None = None
    tracking_number: str | None = None
    failure_details: Any = None
    persist_attempts: int = 0
    updated_at: datetime | None = None


class ReconciliationReport(CamelModel):
    count: int
    items: list[ReconciliationItem]
