"""Shipping provider port and the Shippo REST adapter.

Rates are quoted before payment; the label for the chosen rate is purchased
synchronously once payment has been verified. Tracking is read-only.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from storefront.common.config import settings
from storefront.common.errors import ConfigurationError, ShippingProviderError, ValidationError
from storefront.common.logging import logger
from storefront.common.metrics import external_call_seconds


class LabelStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class Rate:
    id: str
    provider: str
    servicelevel_name: str
    description: str
    amount: float
    currency: str | None = None
    estimated_days: int | None = None


@dataclass(frozen=True)
class ShippingLabelResult:
    """Outcome of a label purchase as reported by the provider."""

    status: LabelStatus
    transaction_id: str | None = None
    tracking_number: str | None = None
    label_url: str | None = None
    carrier: str | None = None
    messages: list[Any] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        # Field presence is not guaranteed upstream, so all three must hold.
        return self.status is LabelStatus.SUCCESS and bool(self.tracking_number) and bool(self.label_url)


@dataclass(frozen=True)
class TrackingEvent:
    date: str
    location: str
    status: str


@dataclass(frozen=True)
class TrackingDetails:
    status: str
    history: list[TrackingEvent]
    eta: str | None = None


class ShippingProvider(ABC):
    """Abstract interface for the shipping-rate/label provider."""

    def ensure_configured(self) -> None:
        """Raise `ConfigurationError` when credentials are missing."""

    @abstractmethod
    async def get_rates(self, address_from: dict, address_to: dict, parcels: list[dict]) -> list[Rate]:
        ...

    @abstractmethod
    async def purchase_label(self, rate_id: str, metadata: str | None = None) -> ShippingLabelResult:
        """Buy the label for a quoted rate. Blocks until the provider decides."""
        ...

    @abstractmethod
    async def track_shipment(self, carrier: str | None, tracking_number: str) -> TrackingDetails:
        ...


def _map_rate(raw: dict) -> Rate | None:
    servicelevel = raw.get("servicelevel") or {}
    if (
        not raw.get("object_id")
        or not isinstance(raw.get("amount"), str)
        or not raw.get("provider")
        or not servicelevel.get("name")
    ):
        return None
    try:
        amount = float(raw["amount"])
    except ValueError:
        return None
    return Rate(
        id=raw["object_id"],
        provider=raw["provider"],
        servicelevel_name=servicelevel["name"],
        description=f"{raw['provider']} {servicelevel['name']}",
        amount=amount,
        currency=raw.get("currency"),
        estimated_days=raw.get("estimated_days"),
    )


def _format_location(location: dict | None) -> str:
    location = location or {}
    city = (location.get("city") or "").strip()
    state = (location.get("state") or "").strip()
    if city and state:
        return f"{city}, {state}"
    return city or state or "N/A"


class ShippoClient(ShippingProvider):
    """Talks to the Shippo REST API with one short-lived client per call."""

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        mode: str | None = None,
        label_file_type: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.shippo_api_key
        self.api_base = (api_base or settings.shippo_api_base).rstrip("/")
        self.mode = mode or settings.shippo_mode
        self.label_file_type = label_file_type or settings.shippo_label_file_type
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    def ensure_configured(self) -> None:
        if not self.api_key:
            logger.error("shippo api key is missing")
            raise ConfigurationError("Internal server configuration error (shipping).")

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> Any:
        self.ensure_configured()
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                base_url=self.api_base,
                timeout=self.timeout,
                headers={"Authorization": f"ShippoToken {self.api_key}"},
                transport=self.transport,
            ) as client:
                resp = await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("shippo request failed operation=%s error=%s", operation, exc)
            raise ShippingProviderError("Shipping provider unreachable.", details=str(exc)) from exc
        finally:
            external_call_seconds.labels(
                service=settings.service_name, dependency="shippo", operation=operation
            ).observe(time.perf_counter() - started)

        try:
            body = resp.json()
        except ValueError:
            body = resp.text
        if resp.status_code >= 400:
            logger.error("shippo rejected operation=%s status=%s body=%s", operation, resp.status_code, body)
            raise ShippingProviderError(f"Shipping provider returned HTTP {resp.status_code}.", details=body)
        return body

    async def get_rates(self, address_from: dict, address_to: dict, parcels: list[dict]) -> list[Rate]:
        body = await self._request(
            "create_shipment",
            "POST",
            "/shipments/",
            json={"address_from": address_from, "address_to": address_to, "parcels": parcels, "async": False},
        )
        raw_rates = body.get("rates") if isinstance(body, dict) else None
        if not isinstance(raw_rates, list):
            raise ShippingProviderError("Failed to get rates from shipping provider.", details=body)

        rates = []
        for raw in raw_rates:
            rate = _map_rate(raw) if isinstance(raw, dict) else None
            if rate is None:
                logger.warning("skipping malformed rate from shippo rate=%s", raw)
                continue
            rates.append(rate)
        return rates

    async def purchase_label(self, rate_id: str, metadata: str | None = None) -> ShippingLabelResult:
        payload = {"rate": rate_id, "label_file_type": self.label_file_type, "async": False}
        if metadata:
            payload["metadata"] = metadata
        body = await self._request("create_transaction", "POST", "/transactions/", json=payload)
        if not isinstance(body, dict):
            raise ShippingProviderError("Shipping provider returned an unreadable response.", details=body)

        rate = body.get("rate")
        return ShippingLabelResult(
            status=LabelStatus.SUCCESS if body.get("status") == "SUCCESS" else LabelStatus.ERROR,
            transaction_id=body.get("object_id"),
            tracking_number=body.get("tracking_number") or None,
            label_url=body.get("label_url") or None,
            carrier=rate.get("provider") if isinstance(rate, dict) else None,
            messages=body.get("messages") or [],
        )

    async def track_shipment(self, carrier: str | None, tracking_number: str) -> TrackingDetails:
        if self.mode == "test":
            # Test-mode tracking numbers are only resolvable under the `shippo` carrier.
            carrier_token = "shippo"
        elif carrier and carrier.strip():
            carrier_token = carrier.strip().lower()
        else:
            raise ValidationError("Carrier information is required for live tracking.")

        body = await self._request("get_track", "GET", f"/tracks/{carrier_token}/{tracking_number}/")
        tracking_status = body.get("tracking_status") or {}
        current = tracking_status.get("status_details") or tracking_status.get("status") or "PENDING"
        history = [
            TrackingEvent(
                date=entry.get("status_date") or "Date N/A",
                location=_format_location(entry.get("location")),
                status=entry.get("status_details") or entry.get("status") or "Status N/A",
            )
            for entry in body.get("tracking_history") or []
        ]
        return TrackingDetails(status=current.replace("_", " ").upper(), history=history, eta=body.get("eta"))
