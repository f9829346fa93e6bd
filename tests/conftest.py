"""Shared fixtures: in-memory placement ledger, stub collaborators, HTTP client."""

import os

# Settings are read at import time, so the environment has to be in place first.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TRACING_ENABLED"] = "false"
os.environ["OUTBOX_PUBLISHER_ENABLED"] = "false"
os.environ["PERSISTENCE_RETRY_ENABLED"] = "false"
os.environ["RETRY_BASE_DELAY_SECONDS"] = "0"
os.environ["ADMIN_API_KEY"] = "test-admin-key"

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from storefront.common.db import Base, make_engine, make_session_factory
from storefront.common.errors import ConfigurationError
from storefront.integrations.content_store import ContentStore
from storefront.integrations.payments import (
    PaymentGateway,
    PaymentIntent,
    PaymentStatus,
    PaymentVerificationResult,
)
from storefront.integrations.shipping import (
    LabelStatus,
    Rate,
    ShippingLabelResult,
    ShippingProvider,
    TrackingDetails,
    TrackingEvent,
)
from storefront.services.checkout import models  # noqa: F401
from storefront.services.checkout.service import OrderPlacementService


COMPLETE_LABEL = ShippingLabelResult(
    status=LabelStatus.SUCCESS,
    transaction_id="txn_123",
    tracking_number="1Z999",
    label_url="https://labels.example.com/label.pdf",
    carrier="UPS",
)


class StubPaymentGateway(PaymentGateway):
    def __init__(self, status=PaymentStatus.SUCCEEDED, amount=65.0, currency="USD") -> None:
        self.status = status
        self.amount = amount
        self.currency = currency
        self.errors: list[Exception] = []
        self.calls = 0
        self.intents: list[dict] = []
        self.missing_credentials = False

    def ensure_configured(self) -> None:
        if self.missing_credentials:
            raise ConfigurationError("Internal server configuration error (payment).")

    async def retrieve_payment_status(self, reference):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return PaymentVerificationResult(
            reference=reference,
            status=self.status,
            amount=self.amount,
            currency=self.currency,
            raw_status=self.status.value,
        )

    async def create_payment_intent(self, amount_minor, currency, customer_name=None, customer_email=None,
                                    shipping_address=None, idempotency_key=None):
        self.intents.append({"amount": amount_minor, "currency": currency, "idempotency_key": idempotency_key})
        return PaymentIntent(id="pi_test", client_secret="pi_test_secret_abc", status="requires_payment_method")


class StubShippingProvider(ShippingProvider):
    def __init__(self, result=COMPLETE_LABEL) -> None:
        self.result = result
        self.error: Exception | None = None
        self.purchases: list[tuple] = []
        self.rates = [
            Rate(
                id="rate_abc",
                provider="UPS",
                servicelevel_name="Ground",
                description="UPS Ground",
                amount=10.0,
                currency="USD",
                estimated_days=3,
            )
        ]
        self.rates_error: Exception | None = None

    async def get_rates(self, address_from, address_to, parcels):
        if self.rates_error:
            raise self.rates_error
        return self.rates

    async def purchase_label(self, rate_id, metadata=None):
        self.purchases.append((rate_id, metadata))
        if self.error:
            raise self.error
        return self.result

    async def track_shipment(self, carrier, tracking_number):
        return TrackingDetails(
            status="IN TRANSIT",
            history=[TrackingEvent(date="2026-10-18T10:00:00Z", location="Austin, TX", status="Picked up")],
            eta="2026-10-21T00:00:00Z",
        )


class StubContentStore(ContentStore):
    def __init__(self) -> None:
        self.documents: dict[str, dict] = {}
        self.fail_creates = 0
        self.create_error: Exception = RuntimeError("store down")
        self.create_calls = 0
        self.fetch_calls = 0

    async def fetch(self, query, params=None):
        self.fetch_calls += 1
        document = self.documents.get((params or {}).get("orderId"))
        return [{"_id": document["_id"]}] if document else []

    async def create(self, document):
        self.create_calls += 1
        if self.fail_creates > 0:
            self.fail_creates -= 1
            raise self.create_error
        self.documents[document["clientOrderId"]] = document
        return document["_id"]


class FakeRedis:
    """Dict-backed stand-in for the few Redis commands the API uses."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.hashes: dict[str, dict] = {}

    def get(self, key):
        return self.values.get(key)

    def setex(self, key, ttl, value):
        self.values[key] = value

    def hmget(self, key, *fields):
        stored = self.hashes.get(key, {})
        return [stored.get(field) for field in fields]

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    def expire(self, key, seconds):
        return True


@pytest.fixture()
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def payments():
    return StubPaymentGateway()


@pytest.fixture()
def shipping():
    return StubShippingProvider()


@pytest.fixture()
def store():
    return StubContentStore()


@pytest.fixture()
def log_spy():
    return MagicMock()


@pytest.fixture()
def service(session_factory, payments, shipping, store, log_spy):
    return OrderPlacementService(session_factory, payments, shipping, store, logger=log_spy)


@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def client(service, fake_redis):
    from storefront.services.checkout.main import app, get_redis, get_service

    app.dependency_overrides[get_service] = lambda: service
    app.dependency_overrides[get_redis] = lambda: fake_redis
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def order_payload():
    """Builder for a well-formed order body; keyword overrides replace top-level keys."""

    def build(**overrides):
        payload = {
            "rateId": "rate_abc",
            "orderId": "ECOMM_1760000000_ab12",
            "customer": {
                "name": "Ada Lovelace",
                "email": "ada@example.com",
                "phone": "+1 512 555 0100",
                "address": "1 Analytical Way",
                "address2": "Suite 2",
                "city": "Austin",
                "state": "TX",
                "zip": "78701",
                "country": "US",
                "totalPrice": 65.0,
            },
            "items": [
                {"productId": "prod-shirt", "name": "Shirt", "quantity": 2, "price": 20.0},
                {"id": "prod-cap", "title": "Cap", "quantity": "1", "price": "15.00"},
            ],
            "shipping": {"description": "UPS Ground", "cost": 10.0},
            "paymentReference": "pi_3Nx1",
        }
        payload.update(overrides)
        return payload

    return build


def reconciliation_calls(spy: MagicMock) -> list[str]:
    """Formatted `reconciliation_required` error lines the spy received."""

    lines = []
    for call in spy.error.call_args_list:
        message, *args = call.args
        if message.startswith("reconciliation_required"):
            lines.append(message % tuple(args))
    return lines
