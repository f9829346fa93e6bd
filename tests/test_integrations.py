"""Adapter tests for the Stripe, Shippo and Sanity clients over mocked HTTP."""

import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest

from storefront.common.errors import (
    ConfigurationError,
    PaymentGatewayUnavailableError,
    PersistenceError,
    ShippingProviderError,
    ValidationError,
)
from storefront.integrations.content_store import SanityContentStore
from storefront.integrations.payments import PaymentStatus, StripeGateway
from storefront.integrations.shipping import LabelStatus, ShippoClient


def stripe(handler, secret_key="sk_test_123"):
    return StripeGateway(secret_key=secret_key, api_base="https://stripe.test", transport=httpx.MockTransport(handler))


def shippo(handler, mode="test"):
    return ShippoClient(
        api_key="shippo_test_key",
        api_base="https://shippo.test",
        mode=mode,
        transport=httpx.MockTransport(handler),
    )


def sanity(handler, read_token="read-tok", write_token="write-tok"):
    return SanityContentStore(
        project_id="proj1",
        dataset="production",
        api_version="2025-01-01",
        read_token=read_token,
        write_token=write_token,
        transport=httpx.MockTransport(handler),
    )


# -- Stripe ------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("succeeded", PaymentStatus.SUCCEEDED),
        ("requires_action", PaymentStatus.REQUIRES_ACTION),
        ("processing", PaymentStatus.PROCESSING),
        ("requires_payment_method", PaymentStatus.FAILED),
        ("canceled", PaymentStatus.FAILED),
        ("something_new", PaymentStatus.UNKNOWN),
    ],
)
def test_stripe_status_mapping(raw, expected):
    def handler(request):
        return httpx.Response(200, json={"id": "pi_1", "status": raw, "amount": 6500, "currency": "usd"})

    result = asyncio.run(stripe(handler).retrieve_payment_status("pi_1"))

    assert result.status is expected
    assert result.raw_status == raw


def test_stripe_reads_received_amount_in_major_units():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        return httpx.Response(
            200,
            json={"id": "pi_1", "status": "succeeded", "amount": 7000, "amount_received": 6500, "currency": "usd"},
        )

    result = asyncio.run(stripe(handler).retrieve_payment_status("pi_1"))

    assert result.succeeded
    assert result.amount == 65.0
    assert result.currency == "USD"
    assert seen["path"] == "/v1/payment_intents/pi_1"
    assert seen["auth"].startswith("Basic ")


def test_stripe_zero_decimal_currency():
    def handler(request):
        return httpx.Response(200, json={"id": "pi_1", "status": "succeeded", "amount": 1200, "currency": "jpy"})

    assert asyncio.run(stripe(handler).retrieve_payment_status("pi_1")).amount == 1200.0


def test_stripe_unknown_intent_is_not_succeeded():
    def handler(request):
        return httpx.Response(404, json={"error": {"message": "No such payment_intent"}})

    result = asyncio.run(stripe(handler).retrieve_payment_status("pi_missing"))

    assert result.status is PaymentStatus.UNKNOWN
    assert not result.succeeded


@pytest.mark.parametrize("status_code", [401, 500, 503])
def test_stripe_gateway_errors_are_unavailable(status_code):
    def handler(request):
        return httpx.Response(status_code, json={"error": {"message": "nope"}})

    with pytest.raises(PaymentGatewayUnavailableError) as excinfo:
        asyncio.run(stripe(handler).retrieve_payment_status("pi_1"))
    assert excinfo.value.details == "nope"


def test_stripe_network_error_is_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PaymentGatewayUnavailableError):
        asyncio.run(stripe(handler).retrieve_payment_status("pi_1"))


@pytest.mark.parametrize("content", [b"<html>bad gateway</html>", b"[]"], ids=["not-json", "not-an-object"])
def test_stripe_unreadable_body_is_unavailable(content):
    def handler(request):
        return httpx.Response(200, content=content)

    with pytest.raises(PaymentGatewayUnavailableError):
        asyncio.run(stripe(handler).retrieve_payment_status("pi_1"))


def test_stripe_missing_key_is_configuration_error():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(ConfigurationError):
        asyncio.run(stripe(handler, secret_key="").retrieve_payment_status("pi_1"))


def test_stripe_create_payment_intent_sends_form_and_idempotency_key():
    seen = {}

    def handler(request):
        seen["form"] = parse_qs(request.content.decode())
        seen["idempotency_key"] = request.headers.get("idempotency-key")
        return httpx.Response(200, json={"id": "pi_9", "client_secret": "pi_9_secret", "status": "requires_payment_method"})

    intent = asyncio.run(
        stripe(handler).create_payment_intent(
            6500,
            "USD",
            customer_name="Ada Lovelace",
            customer_email="ada@example.com",
            shipping_address={"street1": "1 Analytical Way", "city": "Austin", "zip": "78701", "country": "US"},
            idempotency_key="cart-42",
        )
    )

    assert intent.client_secret == "pi_9_secret"
    form = seen["form"]
    assert form["amount"] == ["6500"]
    assert form["currency"] == ["usd"]
    assert form["automatic_payment_methods[enabled]"] == ["true"]
    assert form["description"] == ["Order for Ada Lovelace"]
    assert form["shipping[address][postal_code]"] == ["78701"]
    assert "shipping[address][line2]" not in form
    assert seen["idempotency_key"] == "cart-42"


# -- Shippo ------------------------------------------------------------------


def test_shippo_purchase_label_maps_transaction():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            201,
            json={
                "object_id": "txn_1",
                "status": "SUCCESS",
                "tracking_number": "1Z999",
                "label_url": "https://labels.example.com/l.pdf",
                "rate": {"provider": "UPS"},
            },
        )

    label = asyncio.run(shippo(handler).purchase_label("rate_abc", metadata="Order ECOMM_1"))

    assert label.is_complete
    assert label.transaction_id == "txn_1"
    assert label.carrier == "UPS"
    assert seen["auth"] == "ShippoToken shippo_test_key"
    assert seen["body"] == {"rate": "rate_abc", "label_file_type": "PDF_4x6", "async": False, "metadata": "Order ECOMM_1"}


def test_shippo_success_without_tracking_is_incomplete():
    def handler(request):
        return httpx.Response(201, json={"object_id": "txn_1", "status": "SUCCESS", "label_url": "https://l/1.pdf"})

    label = asyncio.run(shippo(handler).purchase_label("rate_abc"))

    assert label.status is LabelStatus.SUCCESS
    assert not label.is_complete


def test_shippo_error_status_keeps_messages():
    def handler(request):
        return httpx.Response(201, json={"object_id": "txn_1", "status": "ERROR", "messages": [{"text": "expired"}]})

    label = asyncio.run(shippo(handler).purchase_label("rate_abc"))

    assert label.status is LabelStatus.ERROR
    assert label.messages == [{"text": "expired"}]


def test_shippo_http_error_carries_body():
    def handler(request):
        return httpx.Response(400, json={"rate": ["Rate not found"]})

    with pytest.raises(ShippingProviderError) as excinfo:
        asyncio.run(shippo(handler).purchase_label("rate_bad"))
    assert excinfo.value.details == {"rate": ["Rate not found"]}


def test_shippo_rates_skip_malformed_entries():
    def handler(request):
        return httpx.Response(
            201,
            json={
                "rates": [
                    {
                        "object_id": "rate_1",
                        "amount": "9.50",
                        "currency": "USD",
                        "provider": "USPS",
                        "servicelevel": {"name": "Priority"},
                        "estimated_days": 2,
                    },
                    {"object_id": "rate_2", "amount": 9.5, "provider": "USPS", "servicelevel": {"name": "Ground"}},
                    {"object_id": "rate_3", "amount": "7.00", "provider": "UPS", "servicelevel": {}},
                ]
            },
        )

    rates = asyncio.run(shippo(handler).get_rates({"zip": "1"}, {"zip": "2"}, [{"weight": "1"}]))

    assert [(rate.id, rate.description, rate.amount) for rate in rates] == [("rate_1", "USPS Priority", 9.5)]


def test_shippo_rates_missing_list_is_error():
    def handler(request):
        return httpx.Response(201, json={"object_id": "shp_1"})

    with pytest.raises(ShippingProviderError, match="Failed to get rates"):
        asyncio.run(shippo(handler).get_rates({}, {}, [{}]))


def test_shippo_tracking_in_test_mode_uses_shippo_carrier():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        return httpx.Response(
            200,
            json={
                "tracking_status": {"status": "TRANSIT", "status_details": "in_transit"},
                "tracking_history": [
                    {"status_date": "2026-10-18", "location": {"city": "Austin", "state": "TX"}, "status": "TRANSIT"},
                    {"location": None},
                ],
                "eta": "2026-10-21",
            },
        )

    details = asyncio.run(shippo(handler).track_shipment("ups", "SHIPPO_TRANSIT"))

    assert seen["path"] == "/tracks/shippo/SHIPPO_TRANSIT/"
    assert details.status == "IN TRANSIT"
    assert [(e.date, e.location, e.status) for e in details.history] == [
        ("2026-10-18", "Austin, TX", "TRANSIT"),
        ("Date N/A", "N/A", "Status N/A"),
    ]
    assert details.eta == "2026-10-21"


def test_shippo_live_tracking_requires_carrier():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(ValidationError):
        asyncio.run(shippo(handler, mode="live").track_shipment(None, "1Z999"))


# -- Sanity ------------------------------------------------------------------


def test_sanity_fetch_encodes_params_and_wraps_single_result():
    seen = {}

    def handler(request):
        seen["url"] = request.url
        seen["auth"] = request.headers["authorization"]
        return httpx.Response(200, json={"result": {"_id": "order-1"}})

    docs = asyncio.run(sanity(handler).fetch("*[clientOrderId == $orderId][0]", {"orderId": "ECOMM_1"}))

    assert docs == [{"_id": "order-1"}]
    assert seen["url"].host == "proj1.api.sanity.io"
    assert seen["url"].path == "/v2025-01-01/data/query/production"
    assert seen["url"].params["$orderId"] == '"ECOMM_1"'
    assert seen["auth"] == "Bearer read-tok"


def test_sanity_fetch_falls_back_to_write_token_and_handles_null():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["authorization"]
        return httpx.Response(200, json={"result": None})

    docs = asyncio.run(sanity(handler, read_token="").fetch("*[0]"))

    assert docs == []
    assert seen["auth"] == "Bearer write-tok"


def test_sanity_create_posts_mutation():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["return_ids"] = request.url.params["returnIds"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"results": [{"id": "order-ECOMM_1", "operation": "create"}]})

    document = {"_id": "order-ECOMM_1", "_type": "order"}
    document_id = asyncio.run(sanity(handler).create(document))

    assert document_id == "order-ECOMM_1"
    assert seen["path"] == "/v2025-01-01/data/mutate/production"
    assert seen["return_ids"] == "true"
    assert seen["body"] == {"mutations": [{"create": document}]}


def test_sanity_http_error_is_persistence_error():
    def handler(request):
        return httpx.Response(500, json={"error": "boom"})

    with pytest.raises(PersistenceError):
        asyncio.run(sanity(handler).create({"_id": "order-1"}))


def test_sanity_create_requires_write_token():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(ConfigurationError):
        asyncio.run(sanity(handler, write_token="").create({"_id": "order-1"}))
