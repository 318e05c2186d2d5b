"""Fulfillment domain types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class Leg(StrEnum):
    """Shipment direction for a rental transaction."""

    OUTBOUND = "outbound"
    RETURN = "return"


class DeliveryPhase(StrEnum):
    """Notification phase governing which link classes may be surfaced."""

    INITIAL_LENDER = "initial-lender"
    RETURN = "return"
    REMINDER = "reminder"


class LinkMode(StrEnum):
    """Artifact class a carrier link preference can point at."""

    QR = "qr"
    LABEL = "label"
    TRACKING = "tracking"


class TrackingClass(StrEnum):
    """Classification of an inbound carrier tracking status."""

    FIRST_SCAN = "first-scan"
    DELIVERED = "delivered"
    IGNORED = "ignored"


class LegState(StrEnum):
    """Persisted notification state of a shipment leg."""

    UNSHIPPED = "unshipped"
    FIRST_SCAN_NOTIFIED = "first-scan-notified"
    DELIVERED_NOTIFIED = "delivered-notified"
    RETURN_FIRST_SCAN_NOTIFIED = "return-first-scan-notified"


class EventTag(StrEnum):
    """Message classes; each is sent at most once per transaction."""

    LABEL_READY_TO_LENDER = "label_ready_to_lender"
    ITEM_SHIPPED_TO_BORROWER = "item_shipped_to_borrower"
    DELIVERY_TO_BORROWER = "delivery_to_borrower"
    RETURN_FIRST_SCAN_TO_LENDER = "return_first_scan_to_lender"
    SHIP_BY_T48_TO_LENDER = "shipby_t48_to_lender"
    SHIP_BY_T24_TO_LENDER = "shipby_t24_to_lender"
    SHIP_BY_MORNING_TO_LENDER = "shipby_morning_to_lender"
    SHIP_BY_SHORT24_TO_LENDER = "shipby_short24_to_lender"
    SHIP_BY_SHORT48_TO_LENDER = "shipby_short48_to_lender"
    LABEL_CREATED_TO_BORROWER = "label_created_to_borrower"
    RETURN_T1_TO_BORROWER = "return_tminus1_to_borrower"
    RETURN_TODAY_TO_BORROWER = "return_reminder_today"
    RETURN_LATE_TO_BORROWER = "return_reminder_late"


class NotificationStatus(StrEnum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


class LeadMode(StrEnum):
    STATIC = "static"
    DISTANCE = "distance"


class LabelFailureReason(StrEnum):
    """Structured reason codes reported by label acquisition."""

    INCOMPLETE_PROVIDER_ADDRESS = "incomplete_provider_address"
    INCOMPLETE_CUSTOMER_ADDRESS = "incomplete_customer_address"
    MISSING_API_TOKEN = "missing_api_token"
    ALREADY_PURCHASED = "already_purchased"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    NO_SHIPPING_RATES = "no_shipping_rates"
    LABEL_PURCHASE_FAILED = "label_purchase_failed"
    SHIPPO_API_ERROR = "shippo_api_error"


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


@dataclass(frozen=True)
class Address:
    """Postal address as sent to the carrier integration."""

    street1: str | None
    city: str | None
    state: str | None
    zip: str | None
    name: str = ""
    street2: str = ""
    country: str = "US"
    email: str | None = None
    phone: str | None = None

    def is_complete(self) -> bool:
        return all(
            value and str(value).strip()
            for value in (self.street1, self.city, self.state, self.zip)
        )

    def to_carrier_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "street1": self.street1,
            "street2": self.street2,
            "city": self.city,
            "state": self.state,
            "zip": self.zip,
            "country": self.country,
        }
        if self.email:
            payload["email"] = self.email
        if self.phone:
            payload["phone"] = self.phone
        return payload

    def masked(self) -> dict[str, Any]:
        """Address fields safe for diagnostic logging."""
        return {
            "city": self.city,
            "state": self.state,
            "zip": self.zip,
            "country": self.country,
            "has_street1": bool(self.street1),
        }

    @classmethod
    def from_protected_data(
        cls, protected_data: dict[str, Any], party: str
    ) -> Address:
        """Build an address from ``providerStreet``-style checkout fields."""
        return cls(
            name=protected_data.get(f"{party}Name") or party.capitalize(),
            street1=protected_data.get(f"{party}Street"),
            street2=protected_data.get(f"{party}Street2") or "",
            city=protected_data.get(f"{party}City"),
            state=protected_data.get(f"{party}State"),
            zip=protected_data.get(f"{party}Zip"),
            email=protected_data.get(f"{party}Email"),
            phone=protected_data.get(f"{party}Phone"),
        )


@dataclass(frozen=True)
class Parcel:
    length: float = 12
    width: float = 10
    height: float = 1
    weight: float = 0.75
    distance_unit: str = "in"
    mass_unit: str = "lb"

    def to_carrier_payload(self) -> dict[str, str]:
        return {
            "length": str(self.length),
            "width": str(self.width),
            "height": str(self.height),
            "distance_unit": self.distance_unit,
            "weight": str(self.weight),
            "mass_unit": self.mass_unit,
        }


@dataclass(frozen=True)
class ShipmentArtifacts:
    """Canonical carrier artifacts for one shipment leg."""

    carrier: str
    tracking_number: str | None = None
    tracking_url: str | None = None
    label_url: str | None = None
    qr_url: str | None = None
    service: str | None = None
    purchased_at: str | None = None
    qr_expires_at: str | None = None

    def link_for(self, mode: LinkMode) -> str | None:
        if mode is LinkMode.QR:
            return self.qr_url
        if mode is LinkMode.LABEL:
            return self.label_url
        return self.tracking_url

    def to_protected_data(self) -> dict[str, Any]:
        return {
            "carrier": self.carrier,
            "trackingNumber": self.tracking_number,
            "trackingUrl": self.tracking_url,
            "labelUrl": self.label_url,
            "qrUrl": self.qr_url,
            "service": self.service,
            "purchasedAt": self.purchased_at,
            "qrExpiresAt": self.qr_expires_at,
        }

    @classmethod
    def from_protected_data(
        cls, data: dict[str, Any] | None
    ) -> ShipmentArtifacts | None:
        """Rebuild persisted artifacts; ``None`` if never purchased."""
        if not data:
            return None
        if not (data.get("trackingNumber") or data.get("purchasedAt")):
            return None
        return cls(
            carrier=str(data.get("carrier") or "UNKNOWN").upper(),
            tracking_number=data.get("trackingNumber"),
            tracking_url=data.get("trackingUrl"),
            label_url=data.get("labelUrl"),
            qr_url=data.get("qrUrl"),
            service=data.get("service"),
            purchased_at=data.get("purchasedAt"),
            qr_expires_at=data.get("qrExpiresAt"),
        )


@dataclass
class TransactionRecord:
    """Marketplace transaction as seen by the fulfillment pipeline.

    ``protected_data`` is the platform-owned extensible-data blob; it is only
    ever changed through the persistence reconciler's merge path.
    """

    id: str
    protected_data: dict[str, Any] = field(default_factory=dict)
    version: int = 0
    state: str = "accepted"
    booking_start: str | None = None
    booking_end: str | None = None
    listing_title: str | None = None
    customer_profile: dict[str, Any] = field(default_factory=dict)
    provider_profile: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def artifacts(self, leg: Leg) -> ShipmentArtifacts | None:
        return ShipmentArtifacts.from_protected_data(
            self.protected_data.get(leg.value)
        )

    def tracking_number(self, leg: Leg) -> str | None:
        leg_data = self.protected_data.get(leg.value) or {}
        return leg_data.get("trackingNumber")


@dataclass(frozen=True)
class RateQuote:
    object_id: str
    provider: str
    service: str | None = None
    amount: str | None = None


@dataclass
class LabelResult:
    """Outcome of one label acquisition attempt."""

    success: bool
    reason: LabelFailureReason | None = None
    outbound: ShipmentArtifacts | None = None
    return_leg: ShipmentArtifacts | None = None
    carrier_status: str | None = None
    error: str | None = None
    ship_by: datetime | None = None
    persisted: bool = False
    notification: NotificationStatus | None = None
    borrower_notification: NotificationStatus | None = None
    return_error: str | None = None


@dataclass(frozen=True)
class SmsReceipt:
    message_id: str
    dry_run: bool = False
