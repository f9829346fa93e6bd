"""Normalisation of client-supplied order data into the persisted order document."""

import math
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from storefront.integrations.payments import PaymentVerificationResult
from storefront.integrations.shipping import ShippingLabelResult
from storefront.services.checkout.schemas import LineItemIn, OrderRequest


ORDER_DOCUMENT_TYPE = "order"
ORDER_BY_CLIENT_ID_QUERY = '*[_type == "order" && clientOrderId == $orderId][0]{_id}'


class OrderStatus(str, Enum):
    """Fulfilment lifecycle stored on the order document."""

    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


def _coerce_quantity(value: Any) -> int:
    try:
        quantity = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 1
    return max(1, quantity)


def _coerce_price(value: Any) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(price) or math.isinf(price) or price < 0:
        return 0.0
    return price


def normalize_items(items: list[LineItemIn]) -> list[dict]:
    """Coerce cart lines into storable rows: quantity >= 1, price >= 0, always a name."""

    rows = []
    for index, item in enumerate(items):
        product_id = "" if item.product_id is None else str(item.product_id)
        name = (item.name or item.title or "").strip()
        if not name:
            name = f"Product {product_id}" if product_id else "Unnamed product"
        rows.append(
            {
                "_key": f"item-{index}",
                "productId": product_id,
                "name": name,
                "quantity": _coerce_quantity(item.quantity),
                "price": _coerce_price(item.price),
            }
        )
    return rows


def items_subtotal(rows: list[dict]) -> float:
    return round(sum(row["quantity"] * row["price"] for row in rows), 2)


def document_id_for(order_id: str) -> str:
    """Deterministic content-store id, so a replayed create can never fork the order."""

    return "order-" + re.sub(r"[^A-Za-z0-9_-]", "-", order_id)


def build_order_document(
    request: OrderRequest,
    label: ShippingLabelResult,
    payment: PaymentVerificationResult | None = None,
) -> dict:
    customer = request.customer
    rows = normalize_items(request.items)
    document = {
        "_id": document_id_for(request.order_id),
        "_type": ORDER_DOCUMENT_TYPE,
        "clientOrderId": request.order_id,
        "customerName": customer.name,
        "customerEmail": customer.email,
        "customerPhone": customer.phone,
        "items": rows,
        "subtotal": items_subtotal(rows),
        "shippingCost": request.shipping.cost,
        "shippingMethod": request.shipping.description,
        "totalAmount": customer.total_price,
        "status": OrderStatus.PROCESSING.value,
        "trackingNumber": label.tracking_number,
        "shippingAddress": {
            "street": customer.address,
            "street2": customer.address2,
            "city": customer.city,
            "state": customer.state,
            "zipCode": customer.zip,
            "country": customer.country.upper(),
        },
        "carrier": label.carrier,
        "stripePaymentIntentId": request.payment_reference,
        "shippoTransactionId": label.transaction_id,
        "shippoLabelUrl": label.label_url,
        "createdAt": datetime.now(timezone.utc).isoformat(),
    }
    if payment is not None and payment.currency:
        document["currency"] = payment.currency
    return document
