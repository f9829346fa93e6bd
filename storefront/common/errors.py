"""Checkout error taxonomy.

Every error knows the HTTP status it maps to and renders the error body the
storefront client expects. Once a payment reference is known it travels with
the error so support can always find the payment behind a stuck order.
"""

from typing import Any


class CheckoutError(Exception):
    """Base class for failures surfaced to the order placement caller."""

    status_code = 500
    internal_error = False

    def __init__(
        self,
        message: str,
        *,
        details: Any = None,
        order_id: str | None = None,
        payment_reference: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.order_id = order_id
        self.payment_reference = payment_reference

    def with_correlation(self, order_id: str, payment_reference: str | None):
        """Return the same error tagged with the order and payment it belongs to."""

        self.order_id = self.order_id or order_id
        self.payment_reference = self.payment_reference or payment_reference
        return self

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        if self.internal_error:
            body["internalError"] = True
        if self.details is not None:
            body["details"] = self.details
        if self.order_id:
            body["orderId"] = self.order_id
        if self.payment_reference:
            body["paymentIntentId"] = self.payment_reference
        return body


class ValidationError(CheckoutError):
    """Malformed or missing request fields, rejected before any external call."""

    status_code = 400


class PaymentNotConfirmedError(CheckoutError):
    """The payment exists but has not reached `succeeded`."""

    status_code = 402


class UpstreamProviderError(CheckoutError):
    """Shipping provider rejected the purchase or returned an incomplete label."""

    status_code = 502
    internal_error = True


class ConfigurationError(CheckoutError):
    """A collaborator credential is missing from the deployment."""

    status_code = 500


class PaymentGatewayUnavailableError(CheckoutError):
    """The payment gateway could not be reached or refused our credentials."""

    status_code = 500


class OrderInProgressError(CheckoutError):
    """Another request is already running the saga for this order id."""

    status_code = 409


class OrderConflictError(CheckoutError):
    """The order id was already used with a different payment reference."""

    status_code = 409


class ShippingProviderError(CheckoutError):
    """Shipping provider call failed; converted by the saga into a 502."""

    status_code = 502


class PersistenceError(CheckoutError):
    """Content store write failed. Logged for reconciliation, never returned."""
