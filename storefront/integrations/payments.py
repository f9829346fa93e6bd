"""Payment gateway port and the Stripe REST adapter.

The saga only needs to read back the status of a payment intent the buyer
already confirmed in the browser. Creating the intent is exposed for the
checkout page that starts the flow.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from storefront.common.config import settings
from storefront.common.errors import ConfigurationError, PaymentGatewayUnavailableError
from storefront.common.logging import logger
from storefront.common.metrics import external_call_seconds


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    FAILED = "failed"
    UNKNOWN = "unknown"


STRIPE_STATUS_MAP = {
    "succeeded": PaymentStatus.SUCCEEDED,
    "requires_action": PaymentStatus.REQUIRES_ACTION,
    "requires_confirmation": PaymentStatus.REQUIRES_ACTION,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.PROCESSING,
    "requires_payment_method": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
}

# Currencies Stripe charges in whole units rather than cents.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}
)


def from_minor_units(amount: int, currency: str) -> float:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return float(amount)
    return amount / 100.0


@dataclass(frozen=True)
class PaymentVerificationResult:
    """Gateway view of one payment attempt, used only to gate the saga."""

    reference: str
    status: PaymentStatus
    amount: float | None = None
    currency: str | None = None
    raw_status: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is PaymentStatus.SUCCEEDED


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    client_secret: str
    status: str


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    def ensure_configured(self) -> None:
        """Raise `ConfigurationError` when credentials are missing."""

    @abstractmethod
    async def retrieve_payment_status(self, reference: str) -> PaymentVerificationResult:
        """Look up the current status of a payment by its gateway reference."""
        ...

    @abstractmethod
    async def create_payment_intent(
        self,
        amount_minor: int,
        currency: str,
        customer_name: str | None = None,
        customer_email: str | None = None,
        shipping_address: dict | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        """Create a payment intent the browser can confirm."""
        ...


class StripeGateway(PaymentGateway):
    """Talks to the Stripe REST API with one short-lived client per call."""

    def __init__(
        self,
        secret_key: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.api_base = (api_base or settings.stripe_api_base).rstrip("/")
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    def ensure_configured(self) -> None:
        if not self.secret_key:
            logger.error("stripe secret key is missing")
            raise ConfigurationError("Internal server configuration error (payment).")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            timeout=self.timeout,
            auth=(self.secret_key or "", ""),
            transport=self.transport,
        )

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> httpx.Response:
        self.ensure_configured()
        started = time.perf_counter()
        try:
            async with self._client() as client:
                return await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("stripe request failed operation=%s error=%s", operation, exc)
            raise PaymentGatewayUnavailableError("Failed to verify payment.", details=str(exc)) from exc
        finally:
            external_call_seconds.labels(
                service=settings.service_name, dependency="stripe", operation=operation
            ).observe(time.perf_counter() - started)

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            return resp.json().get("error", {}).get("message") or resp.text
        except ValueError:
            return resp.text

    async def retrieve_payment_status(self, reference: str) -> PaymentVerificationResult:
        resp = await self._request("retrieve_payment_intent", "GET", f"/v1/payment_intents/{reference}")
        if resp.status_code == 404:
            logger.warning("payment intent not found reference=%s", reference)
            return PaymentVerificationResult(reference=reference, status=PaymentStatus.UNKNOWN, raw_status="not_found")
        if resp.status_code >= 400:
            # Auth failures and gateway outages are ours to fix, not the buyer's.
            raise PaymentGatewayUnavailableError(
                "Failed to verify payment.",
                details=self._error_message(resp),
            )

        try:
            intent = resp.json()
        except ValueError as exc:
            logger.error("stripe returned an unreadable body reference=%s", reference)
            raise PaymentGatewayUnavailableError("Failed to verify payment.", details=str(exc)) from exc
        if not isinstance(intent, dict):
            raise PaymentGatewayUnavailableError("Failed to verify payment.", details="unexpected response shape")
        raw_status = intent.get("status") or ""
        currency = (intent.get("currency") or "").lower()
        amount = intent.get("amount_received") or intent.get("amount")
        return PaymentVerificationResult(
            reference=reference,
            status=STRIPE_STATUS_MAP.get(raw_status, PaymentStatus.UNKNOWN),
            amount=from_minor_units(amount, currency) if isinstance(amount, int) else None,
            currency=currency.upper() or None,
            raw_status=raw_status or "unknown",
        )

    async def create_payment_intent(
        self,
        amount_minor: int,
        currency: str,
        customer_name: str | None = None,
        customer_email: str | None = None,
        shipping_address: dict | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        form: dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency.lower(),
            "automatic_payment_methods[enabled]": "true",
            "description": f"Order for {customer_name or 'customer'}",
        }
        if customer_email:
            form["receipt_email"] = customer_email
        if shipping_address:
            form["shipping[name]"] = customer_name or "N/A"
            for field, stripe_field in (
                ("street1", "line1"),
                ("street2", "line2"),
                ("city", "city"),
                ("state", "state"),
                ("zip", "postal_code"),
                ("country", "country"),
            ):
                if shipping_address.get(field):
                    form[f"shipping[address][{stripe_field}]"] = shipping_address[field]

        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        resp = await self._request("create_payment_intent", "POST", "/v1/payment_intents", data=form, headers=headers)
        if resp.status_code >= 400:
            raise PaymentGatewayUnavailableError(
                "Failed to create payment intent.",
                details=self._error_message(resp),
            )
        intent = resp.json()
        return PaymentIntent(id=intent["id"], client_secret=intent["client_secret"], status=intent.get("status", ""))
