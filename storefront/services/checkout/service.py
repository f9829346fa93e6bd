"""Order placement saga.

Runs payment verification, label purchase and order persistence in order for
one request. There is no transaction spanning the three systems, so every
step records its outcome on the placement ledger before the next one starts,
and each partial failure has a fixed policy:

- payment not succeeded: stop before any money-committing call (402);
- paid but no label: stop, flag for reconciliation, no automatic refund (502);
- paid and labeled but not stored: answer success, flag for reconciliation,
  and let the background worker replay the stored document.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from storefront.common.config import settings
from storefront.common.errors import (
    CheckoutError,
    OrderConflictError,
    OrderInProgressError,
    PaymentGatewayUnavailableError,
    PaymentNotConfirmedError,
    PersistenceError,
    ShippingProviderError,
    UpstreamProviderError,
)
from storefront.common.events import (
    ORDER_LABEL_FAILED,
    ORDER_PERSIST_FAILED,
    ORDER_PLACED,
    EventEnvelope,
    KafkaBus,
)
from storefront.common.logging import logger as default_logger
from storefront.common.logging import order_id_ctx, payment_reference_ctx, trace_id_ctx
from storefront.common.metrics import (
    duplicate_orders_replayed_total,
    order_outcomes_total,
    order_placement_seconds,
    order_requests_total,
    reconciliation_required_total,
)
from storefront.common.outbox import (
    claim_outbox_batch,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from storefront.common.retry import retry_async
from storefront.common.state_machine import (
    CONFIRMED_STATES,
    IN_FLIGHT_STATES,
    LABEL_FAILED,
    LABEL_PURCHASED,
    LABEL_PURCHASING,
    PAYMENT_FAILED,
    PAYMENT_VERIFIED,
    PAYMENT_VERIFYING,
    PERSIST_FAILED,
    PERSISTED,
    PERSISTING,
    RECONCILIATION_STATES,
    validate_transition,
)
from storefront.common.tracing import tracer
from storefront.integrations.content_store import ContentStore
from storefront.integrations.payments import PaymentGateway, PaymentVerificationResult
from storefront.integrations.shipping import ShippingLabelResult, ShippingProvider
from storefront.services.checkout.documents import ORDER_BY_CLIENT_ID_QUERY, build_order_document
from storefront.services.checkout.models import OrderPlacement, OutboxEvent, PlacementTimeline
from storefront.services.checkout.schemas import OrderConfirmation, OrderRequest


LABEL_FAILURE_MESSAGE = (
    "Your payment was successful, but there was an issue generating the shipping label. "
    "Please contact support with your Order ID for assistance."
)
PAYMENT_AMOUNT_TOLERANCE = 0.01


class StaleStateError(RuntimeError):
    """A concurrent request moved the placement first."""


class OrderPlacementService:
    """Owns the placement ledger and runs the order placement saga."""

    def __init__(
        self,
        session_factory,
        payments: PaymentGateway,
        shipping: ShippingProvider,
        store: ContentStore,
        service_name: str = "checkout",
        logger=default_logger,
    ) -> None:
        self.session_factory = session_factory
        self.payments = payments
        self.shipping = shipping
        self.store = store
        self.service_name = service_name
        self.logger = logger
        self.kafka = KafkaBus()

    # -- saga -----------------------------------------------------------

    async def place_order(self, req: OrderRequest) -> OrderConfirmation:
        """Run the saga for one order request and return the buyer's confirmation."""

        order_id_ctx.set(req.order_id)
        payment_reference_ctx.set(req.payment_reference)
        order_requests_total.labels(service=self.service_name).inc()
        with order_placement_seconds.labels(service=self.service_name).time():
            try:
                replayed = self._begin(req)
                if replayed is not None:
                    return replayed

                payment = await self._verify_payment(req)
                label, recorded = await self._purchase_label(req)
                confirmation = OrderConfirmation(
                    order_id=req.order_id,
                    tracking_number=label.tracking_number,
                    label_url=label.label_url,
                )
                await self._persist(req, label, payment, confirmation, ledger_ok=recorded)
                self._record_outcome("placed")
                return confirmation
            except CheckoutError as exc:
                self._record_outcome(type(exc).__name__)
                raise
            except Exception as exc:
                self._record_outcome("unexpected_error")
                self.logger.exception(
                    "order placement failed unexpectedly order_id=%s payment_reference=%s",
                    req.order_id,
                    req.payment_reference,
                )
                raise CheckoutError(
                    "Failed to place order due to an unexpected server error.",
                    details=str(exc),
                    order_id=req.order_id,
                    payment_reference=req.payment_reference,
                ) from exc

    def _begin(self, req: OrderRequest) -> OrderConfirmation | None:
        """Claim the order id, or answer from a previous run of the same order.

        Returns a confirmation when the order was already placed, `None` when
        this request should run the saga. Credentials are only required when
        the saga will actually run.
        """

        with self.session_factory() as db:
            placement = db.get(OrderPlacement, req.order_id)
            if placement is None:
                self._ensure_configured()
                db.add(
                    OrderPlacement(
                        order_id=req.order_id,
                        payment_reference=req.payment_reference,
                        rate_id=req.rate_id,
                        state=PAYMENT_VERIFYING,
                        state_version=0,
                    )
                )
                try:
                    db.flush()
                    db.add(
                        PlacementTimeline(
                            order_id=req.order_id,
                            from_state=None,
                            to_state=PAYMENT_VERIFYING,
                            reason="order_received",
                        )
                    )
                    db.commit()
                except IntegrityError as exc:
                    db.rollback()
                    raise self._in_progress(req) from exc
                return None

            if placement.payment_reference != req.payment_reference:
                self.logger.warning(
                    "order id reused with another payment order_id=%s stored=%s received=%s",
                    req.order_id,
                    placement.payment_reference,
                    req.payment_reference,
                )
                raise OrderConflictError(
                    "This order id was already used with a different payment.",
                    order_id=req.order_id,
                    payment_reference=req.payment_reference,
                )

            if placement.state in CONFIRMED_STATES:
                self.logger.info("duplicate order submission replayed order_id=%s", req.order_id)
                duplicate_orders_replayed_total.labels(service=self.service_name).inc()
                return OrderConfirmation.model_validate(placement.confirmation)

            if placement.state == LABEL_FAILED:
                raise self._label_failure_error(req.order_id, req.payment_reference, placement.failure_details)

            if placement.state == PAYMENT_FAILED:
                self._ensure_configured()
                try:
                    self._transition(db, placement, PAYMENT_VERIFYING, "order_resubmitted", rate_id=req.rate_id)
                except StaleStateError as exc:
                    db.rollback()
                    raise self._in_progress(req) from exc
                db.commit()
                return None

            raise self._in_progress(req)

    async def _verify_payment(self, req: OrderRequest) -> PaymentVerificationResult:
        """Gate: continue only when the gateway reports the payment as succeeded."""

        with tracer.start_as_current_span("checkout.verify_payment"):
            try:
                payment = await retry_async(
                    lambda: self.payments.retrieve_payment_status(req.payment_reference),
                    attempts=settings.payment_verify_attempts,
                    base_delay=settings.retry_base_delay_seconds,
                    retry_on=(PaymentGatewayUnavailableError,),
                    dependency="payment_gateway",
                )
            except CheckoutError as exc:
                self._payment_unverified(req, exc)
                raise exc.with_correlation(req.order_id, req.payment_reference)
            except Exception as exc:
                self.logger.exception("payment verification raised order_id=%s", req.order_id)
                error = PaymentGatewayUnavailableError("Failed to verify payment.", details=str(exc))
                self._payment_unverified(req, error)
                raise error.with_correlation(req.order_id, req.payment_reference) from exc

        if not payment.succeeded:
            shown_status = payment.raw_status or payment.status.value
            self.logger.warning(
                "payment not succeeded order_id=%s payment_reference=%s status=%s",
                req.order_id,
                req.payment_reference,
                shown_status,
            )
            self._advance(
                req.order_id,
                PAYMENT_FAILED,
                f"payment_status:{payment.status.value}",
                failure_details={"paymentStatus": shown_status},
            )
            raise PaymentNotConfirmedError(
                f"Payment not successful. Status: {shown_status}",
                details={"paymentStatus": payment.status.value},
                order_id=req.order_id,
                payment_reference=req.payment_reference,
            )

        self._advance(
            req.order_id,
            PAYMENT_VERIFIED,
            "payment_succeeded",
            charged_amount=payment.amount,
            charged_currency=payment.currency,
        )
        reported_total = req.customer.total_price
        if payment.amount is not None and abs(payment.amount - reported_total) > PAYMENT_AMOUNT_TOLERANCE:
            self.logger.warning(
                "payment_amount_mismatch order_id=%s charged=%s reported_total=%s",
                req.order_id,
                payment.amount,
                reported_total,
            )
        self.logger.info(
            "payment verified order_id=%s amount=%s currency=%s",
            req.order_id,
            payment.amount,
            payment.currency,
        )
        return payment

    def _payment_unverified(self, req: OrderRequest, exc: CheckoutError) -> None:
        # Frees the order id for a resubmission once the gateway recovers.
        self.logger.error(
            "payment verification unavailable order_id=%s payment_reference=%s error=%s",
            req.order_id,
            req.payment_reference,
            exc.details or exc.message,
        )
        self._advance(
            req.order_id,
            PAYMENT_FAILED,
            "payment_gateway_unavailable",
            failure_details={"error": exc.message, "details": exc.details},
        )

    async def _purchase_label(self, req: OrderRequest) -> tuple[ShippingLabelResult, bool]:
        """Buy the label once. A failure here leaves a captured payment behind.

        Returns the label and whether its purchase made it onto the ledger.
        """

        # Committed before the call: from here on the outcome may be a real purchase.
        self._advance(req.order_id, LABEL_PURCHASING, "label_purchase_started")
        label: ShippingLabelResult | None = None
        details = None
        with tracer.start_as_current_span("checkout.purchase_label"):
            try:
                label = await self.shipping.purchase_label(req.rate_id, metadata=f"Order {req.order_id}")
            except ShippingProviderError as exc:
                details = exc.details if exc.details is not None else exc.message
            except Exception as exc:
                self.logger.exception("label purchase raised order_id=%s", req.order_id)
                details = str(exc)

        if label is not None and label.is_complete:
            recorded = self._advance_after_label(
                req,
                LABEL_PURCHASED,
                "label_purchased",
                label_transaction_id=label.transaction_id,
                tracking_number=label.tracking_number,
                label_url=label.label_url,
                carrier=label.carrier,
            )
            self.logger.info(
                "label purchased order_id=%s tracking_number=%s", req.order_id, label.tracking_number
            )
            return label, recorded

        if label is not None:
            details = label.messages or None
        failure = {
            "status": label.status.value if label is not None else None,
            "transactionId": label.transaction_id if label is not None else None,
            "trackingNumber": label.tracking_number if label is not None else None,
            "labelUrl": label.label_url if label is not None else None,
            "details": details or "Shipping provider error.",
        }
        self._advance_after_label(
            req,
            LABEL_FAILED,
            "label_purchase_failed",
            event=(
                ORDER_LABEL_FAILED,
                {
                    "orderId": req.order_id,
                    "paymentReference": req.payment_reference,
                    "rateId": req.rate_id,
                    "failure": failure,
                },
            ),
            failure_details=failure,
            label_transaction_id=failure["transactionId"],
        )
        self._flag_reconciliation("label_purchase_failed", req.order_id, req.payment_reference, failure)
        raise self._label_failure_error(req.order_id, req.payment_reference, failure)

    async def _persist(
        self,
        req: OrderRequest,
        label: ShippingLabelResult,
        payment: PaymentVerificationResult,
        confirmation: OrderConfirmation,
        ledger_ok: bool = True,
    ) -> None:
        """Write the order document. Failures are flagged, never returned.

        Once a ledger write has failed the remaining ledger updates are
        skipped; the document is still written to the content store.
        """

        document = build_order_document(req, label, payment)
        if ledger_ok:
            ledger_ok = self._advance_after_label(
                req,
                PERSISTING,
                "persist_started",
                order_document=document,
                confirmation=confirmation.model_dump(by_alias=True, exclude_none=True),
            )

        attempts = 0

        async def write() -> str:
            nonlocal attempts
            attempts += 1
            return await self._write_document(document)

        try:
            with tracer.start_as_current_span("checkout.persist_order"):
                document_id = await retry_async(
                    write,
                    attempts=settings.persist_attempts,
                    base_delay=settings.retry_base_delay_seconds,
                    retry_on=(PersistenceError, httpx.TransportError),
                    dependency="content_store",
                )
        except Exception as exc:
            # Paid and labeled: the buyer still gets their confirmation.
            details = exc.details if isinstance(exc, CheckoutError) else None
            failure = {"error": str(exc), "details": details}
            if ledger_ok:
                self._advance_after_label(
                    req,
                    PERSIST_FAILED,
                    "persist_failed",
                    event=(
                        ORDER_PERSIST_FAILED,
                        {
                            "orderId": req.order_id,
                            "paymentReference": req.payment_reference,
                            "trackingNumber": label.tracking_number,
                            "labelTransactionId": label.transaction_id,
                            "error": str(exc),
                        },
                    ),
                    failure_details=failure,
                    persist_attempts=attempts,
                )
            self._flag_reconciliation("order_persist_failed", req.order_id, req.payment_reference, failure)
            return

        if ledger_ok:
            self._advance_after_label(
                req,
                PERSISTED,
                "order_persisted",
                event=(ORDER_PLACED, self._placed_payload(document, document_id)),
                document_id=document_id,
                persist_attempts=attempts,
            )
        self.logger.info("order persisted order_id=%s document_id=%s", req.order_id, document_id)

    async def _write_document(self, document: dict) -> str:
        """Create the order document unless one already exists for the client order id."""

        existing = await self.store.fetch(ORDER_BY_CLIENT_ID_QUERY, {"orderId": document["clientOrderId"]})
        if existing:
            self.logger.info(
                "order document already present order_id=%s document_id=%s",
                document["clientOrderId"],
                existing[0].get("_id"),
            )
            return existing[0].get("_id") or document["_id"]
        return await self.store.create(document)

    # -- ledger -----------------------------------------------------------

    def _transition(self, db, placement: OrderPlacement, new_state: str, reason: str, **values) -> None:
        """Apply one validated transition with optimistic concurrency.

        Writes are guarded by `(order_id, state, state_version)` so a stale
        concurrent request cannot overwrite a newer state.
        """

        validate_transition(placement.state, new_state)
        from_state = placement.state
        current_version = placement.state_version

        result = db.execute(
            update(OrderPlacement)
            .where(
                OrderPlacement.order_id == placement.order_id,
                OrderPlacement.state == from_state,
                OrderPlacement.state_version == current_version,
            )
            .values(
                state=new_state,
                state_version=current_version + 1,
                updated_at=datetime.now(timezone.utc),
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleStateError(
                f"concurrent update for order {placement.order_id} (expected version {current_version})"
            )

        placement.state = new_state
        placement.state_version = current_version + 1
        for name, value in values.items():
            setattr(placement, name, value)
        db.add(
            PlacementTimeline(
                order_id=placement.order_id,
                from_state=from_state,
                to_state=new_state,
                reason=reason,
            )
        )

    def _advance(
        self,
        order_id: str,
        new_state: str,
        reason: str,
        event: tuple[str, dict] | None = None,
        **values,
    ) -> OrderPlacement:
        with self.session_factory() as db:
            placement = db.get(OrderPlacement, order_id)
            self._transition(db, placement, new_state, reason, **values)
            if event is not None:
                event_type, payload = event
                db.add(self._outbox_event(order_id, event_type, payload))
            db.commit()
            return placement

    def _advance_after_label(
        self,
        req: OrderRequest,
        new_state: str,
        reason: str,
        event: tuple[str, dict] | None = None,
        **values,
    ) -> bool:
        """`_advance` for steps after a label purchase, which must not change the buyer's answer.

        A failed ledger write is flagged for reconciliation and reported as `False`.
        """

        try:
            self._advance(req.order_id, new_state, reason, event=event, **values)
        except Exception as exc:
            self.logger.exception("ledger write failed order_id=%s state=%s", req.order_id, new_state)
            self._flag_reconciliation(
                "ledger_write_failed",
                req.order_id,
                req.payment_reference,
                {"state": new_state, "error": str(exc)},
            )
            return False
        return True

    def _ensure_configured(self) -> None:
        for collaborator in (self.payments, self.shipping, self.store):
            collaborator.ensure_configured()

    @staticmethod
    def _outbox_event(order_id: str, event_type: str, payload: dict) -> OutboxEvent:
        return OutboxEvent(
            aggregate_type="order",
            aggregate_id=order_id,
            event_type=event_type,
            topic=event_type,
            payload=EventEnvelope(
                event_type=event_type,
                aggregate_id=order_id,
                trace_id=trace_id_ctx.get(),
                payload=payload,
            ).model_dump(),
        )

    @staticmethod
    def _placed_payload(document: dict, document_id: str) -> dict:
        return {
            "orderId": document["clientOrderId"],
            "documentId": document_id,
            "trackingNumber": document["trackingNumber"],
            "paymentReference": document["stripePaymentIntentId"],
            "totalAmount": document["totalAmount"],
        }

    def _flag_reconciliation(self, reason: str, order_id: str, payment_reference: str, details) -> None:
        reconciliation_required_total.labels(service=self.service_name, reason=reason).inc()
        self.logger.error(
            "reconciliation_required reason=%s order_id=%s payment_reference=%s details=%s",
            reason,
            order_id,
            payment_reference,
            details,
        )

    def _record_outcome(self, outcome: str) -> None:
        order_outcomes_total.labels(service=self.service_name, outcome=outcome).inc()

    @staticmethod
    def _label_failure_error(order_id: str, payment_reference: str, failure: dict | None) -> UpstreamProviderError:
        return UpstreamProviderError(
            LABEL_FAILURE_MESSAGE,
            details=(failure or {}).get("details") or "Shipping provider error.",
            order_id=order_id,
            payment_reference=payment_reference,
        )

    @staticmethod
    def _in_progress(req: OrderRequest) -> OrderInProgressError:
        return OrderInProgressError(
            "This order is already being processed.",
            order_id=req.order_id,
            payment_reference=req.payment_reference,
        )

    # -- support and background work ----------------------------------------

    def get_placement(self, order_id: str) -> OrderPlacement | None:
        with self.session_factory() as db:
            return db.get(OrderPlacement, order_id)

    def reconciliation_report(self, limit: int = 100, stale_after_seconds: int = 300) -> list[OrderPlacement]:
        """Placements that need attention: failed steps, plus sagas stuck mid-flight."""

        stale_before = datetime.now(timezone.utc) - timedelta(seconds=stale_after_seconds)
        with self.session_factory() as db:
            rows = (
                db.execute(
                    select(OrderPlacement)
                    .where(OrderPlacement.state.in_(sorted(RECONCILIATION_STATES | IN_FLIGHT_STATES)))
                    .order_by(OrderPlacement.updated_at)
                )
                .scalars()
                .all()
            )

        report = []
        for placement in rows:
            if placement.state in IN_FLIGHT_STATES:
                updated_at = placement.updated_at
                if updated_at is None:
                    continue
                if updated_at.tzinfo is None:
                    updated_at = updated_at.replace(tzinfo=timezone.utc)
                if updated_at > stale_before:
                    continue
            report.append(placement)
            if len(report) >= limit:
                break
        return report

    async def retry_failed_persistence(self, limit: int = 20) -> int:
        """Replay stored documents for `PERSIST_FAILED` placements. Returns how many landed."""

        with self.session_factory() as db:
            pending = (
                db.execute(
                    select(OrderPlacement)
                    .where(
                        OrderPlacement.state == PERSIST_FAILED,
                        OrderPlacement.persist_attempts < settings.persistence_retry_max_attempts,
                    )
                    .order_by(OrderPlacement.updated_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )

        recovered = 0
        for placement in pending:
            try:
                document_id = await self._write_document(placement.order_document)
            except Exception as exc:
                attempts = placement.persist_attempts + 1
                with self.session_factory() as db:
                    db.execute(
                        update(OrderPlacement)
                        .where(OrderPlacement.order_id == placement.order_id)
                        .values(
                            persist_attempts=attempts,
                            failure_details={"error": str(exc)},
                            updated_at=datetime.now(timezone.utc),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    db.commit()
                self.logger.warning(
                    "order persist retry failed order_id=%s attempt=%s error=%s",
                    placement.order_id,
                    attempts,
                    exc,
                )
                if attempts >= settings.persistence_retry_max_attempts:
                    self._flag_reconciliation(
                        "persist_retries_exhausted",
                        placement.order_id,
                        placement.payment_reference,
                        {"attempts": attempts, "error": str(exc)},
                    )
                continue

            self._advance(
                placement.order_id,
                PERSISTED,
                "persist_retried",
                event=(ORDER_PLACED, self._placed_payload(placement.order_document, document_id)),
                document_id=document_id,
                persist_attempts=placement.persist_attempts + 1,
                failure_details=None,
            )
            self.logger.info("order persisted on retry order_id=%s document_id=%s", placement.order_id, document_id)
            recovered += 1
        return recovered

    async def persistence_retry_worker(self) -> None:
        """Periodically replay failed order writes."""

        while True:
            try:
                await self.retry_failed_persistence()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.error("persistence retry loop error=%s", exc)
            await asyncio.sleep(settings.persistence_retry_interval_seconds)

    async def publish_outbox_batch(self, limit: int = 100) -> int:
        """Publish one batch of pending outbox events. Returns how many were sent."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, OutboxEvent, limit=limit)
            update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
            db.commit()

        sent = 0
        for row in rows:
            try:
                await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
            except Exception as exc:
                self.logger.error("outbox publish failed event_id=%s error=%s", row["id"], exc)
                with self.session_factory() as db:
                    requeue_outbox_event(db, OutboxEvent, row["id"])
                    update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                    db.commit()
                continue
            with self.session_factory() as db:
                mark_outbox_sent(db, OutboxEvent, row["id"])
                update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                db.commit()
            sent += 1
        return sent

    async def outbox_publisher(self) -> None:
        """Continuously publish and ack pending outbox events."""

        while True:
            try:
                await self.publish_outbox_batch()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.error("outbox publisher loop error=%s", exc)
            await asyncio.sleep(0.5)
