"""Carrier tracking webhook reconciliation."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from fastapi_rentalship import messages
from fastapi_rentalship.config import RentalShipConfig
from fastapi_rentalship.exceptions import (
    InvalidSignatureError,
    InvalidWebhookError,
    MissingContactError,
    TransactionNotFoundError,
)
from fastapi_rentalship.links import pick_link, public_tracking_url
from fastapi_rentalship.notifications import (
    NotificationDispatcher,
    shorten_or_original,
)
from fastapi_rentalship.persistence import PatchGuard
from fastapi_rentalship.phone import borrower_phone, lender_phone
from fastapi_rentalship.protocols import LinkShortener, TransactionStore
from fastapi_rentalship.schemas import TrackingWebhookPayload
from fastapi_rentalship.state import accepts, current_state, next_state
from fastapi_rentalship.types import (
    DeliveryPhase,
    EventTag,
    Leg,
    LegState,
    LinkMode,
    NotificationStatus,
    ShipmentArtifacts,
    TrackingClass,
    TransactionRecord,
)

logger = logging.getLogger(__name__)

FIRST_SCAN_STATUSES = frozenset(
    {"ACCEPTED", "ACCEPTANCE", "IN_TRANSIT", "TRANSIT", "PICKUP"}
)
DELIVERED_STATUSES = frozenset({"DELIVERED", "DELIVERY"})
EXCEPTION_STATUSES = frozenset({"FAILURE", "RETURNED", "EXCEPTION", "UNKNOWN"})

_TRANSACTION_ID_KEYS = ("transactionId", "txId", "transaction_id")


def classify_status(status: str | None) -> TrackingClass:
    normalized = (status or "").strip().upper()
    if normalized in FIRST_SCAN_STATUSES:
        return TrackingClass.FIRST_SCAN
    if normalized in DELIVERED_STATUSES:
        return TrackingClass.DELIVERED
    return TrackingClass.IGNORED


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(
    raw_body: bytes, signature: str | None, secret: str
) -> bool:
    """Constant-time check of a hex HMAC-SHA256, ``sha256=`` prefix allowed."""
    if not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected, provided.lower())


def parse_metadata(raw: Mapping[str, Any] | str | None) -> dict[str, Any]:
    """Event metadata arrives as an object or as a JSON-encoded string."""
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, str) and raw.strip():
        try:
            decoded = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring non-JSON webhook metadata %r", raw)
            return {}
        if isinstance(decoded, Mapping):
            return dict(decoded)
    return {}


@dataclass
class _LockSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyedLocks:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._slots: dict[str, _LockSlot] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        slot = self._slots.setdefault(key, _LockSlot())
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                del self._slots[key]

    def __len__(self) -> int:
        return len(self._slots)


def state_guard(
    leg: Leg, event: TrackingClass, target: LegState
) -> PatchGuard:
    """Keep ``<leg>.state`` in a patch only while the move is still legal.

    Evaluated against the record being written, so a leg that reached a
    later state in the meantime is never moved back.
    """

    def guard(
        stored: Mapping[str, Any], patch: Mapping[str, Any]
    ) -> Mapping[str, Any]:
        state = current_state(stored, leg)
        transition = next_state(leg, state, event)
        if transition is not None and transition.target is target:
            return patch
        logger.warning(
            "Not moving %s leg from %s to %s: no longer a legal transition",
            leg,
            state,
            target,
        )
        leg_patch = {
            key: value
            for key, value in (patch.get(leg.value) or {}).items()
            if key != "state"
        }
        return {**patch, leg.value: leg_patch}

    return guard


@dataclass
class WebhookAck:
    status: str
    reason: str | None = None
    transaction_id: str | None = None
    leg: Leg | None = None
    notification: NotificationStatus | None = None


class TrackingWebhookHandler:
    """Turns signed tracking events into at most one SMS per leg transition."""

    def __init__(
        self,
        *,
        config: RentalShipConfig,
        store: TransactionStore,
        dispatcher: NotificationDispatcher,
        shortener: LinkShortener | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
    ) -> None:
        self.config = config
        self.store = store
        self.dispatcher = dispatcher
        self.shortener = shortener
        self.link_policy = config.link_policy()
        self._now = now
        self._warned_unsigned = False
        self._locks = KeyedLocks()

    def _check_signature(self, raw_body: bytes, signature: str | None) -> None:
        secret = self.config.webhook_secret
        if not secret:
            if not self._warned_unsigned:
                logger.warning(
                    "No webhook secret configured; accepting unsigned "
                    "tracking events (test mode)"
                )
                self._warned_unsigned = True
            return
        if not verify_signature(raw_body, signature, secret):
            raise InvalidSignatureError("Invalid tracking webhook signature")

    @staticmethod
    def _parse(raw_body: bytes) -> TrackingWebhookPayload:
        try:
            return TrackingWebhookPayload.model_validate_json(raw_body)
        except ValidationError as exc:
            raise InvalidWebhookError(
                f"Malformed tracking webhook: {exc.error_count()} error(s)"
            ) from exc

    async def _resolve(
        self, tracking_number: str, metadata: Mapping[str, Any]
    ) -> TransactionRecord:
        for key in _TRANSACTION_ID_KEYS:
            if metadata.get(key):
                return await self.store.get(str(metadata[key]))

        limit = self.config.recent_transactions_scan_limit
        for record in await self.store.list_recent(limit):
            if tracking_number in (
                record.tracking_number(Leg.OUTBOUND),
                record.tracking_number(Leg.RETURN),
            ):
                logger.info(
                    "Resolved tracking %s to tx %s by scan",
                    tracking_number,
                    record.id,
                )
                return record
        logger.warning(
            "No transaction among the last %d matches tracking %s",
            limit,
            tracking_number,
        )
        raise TransactionNotFoundError(tracking_number=tracking_number)

    @staticmethod
    def _leg_for(
        record: TransactionRecord,
        tracking_number: str,
        metadata: Mapping[str, Any],
    ) -> Leg | None:
        if record.tracking_number(Leg.OUTBOUND) == tracking_number:
            return Leg.OUTBOUND
        if record.tracking_number(Leg.RETURN) == tracking_number:
            return Leg.RETURN
        try:
            return Leg(str(metadata.get("leg") or ""))
        except ValueError:
            return None

    async def handle_tracking_event(
        self, raw_body: bytes, signature: str | None
    ) -> WebhookAck:
        self._check_signature(raw_body, signature)
        payload = self._parse(raw_body)
        data = payload.data
        tracking_number = data.tracking_number.strip()
        status = data.tracking_status.status

        if self.config.shippo_mode and payload.test is not None:
            event_mode = "test" if payload.test else "live"
            if event_mode != self.config.shippo_mode:
                logger.warning(
                    "Ignoring %s-mode tracking event for %s (running %s)",
                    event_mode,
                    tracking_number,
                    self.config.shippo_mode,
                )
                return WebhookAck(status="ignored", reason="mode_mismatch")

        event_class = classify_status(status)
        if event_class is TrackingClass.IGNORED:
            if status.strip().upper() in EXCEPTION_STATUSES:
                logger.warning(
                    "Tracking %s reported exception status %s",
                    tracking_number,
                    status,
                )
            return WebhookAck(status="ignored", reason="status_not_actionable")

        metadata = parse_metadata(data.metadata)
        record = await self._resolve(tracking_number, metadata)
        leg = self._leg_for(record, tracking_number, metadata)
        if leg is None:
            logger.warning(
                "Tracking %s does not match either leg of tx %s",
                tracking_number,
                record.id,
            )
            return WebhookAck(
                status="ignored",
                reason="leg_unresolved",
                transaction_id=record.id,
            )
        if not accepts(leg, event_class):
            logger.info(
                "Tx %s: %s event has no transition on the %s leg",
                record.id,
                event_class,
                leg,
            )
            return WebhookAck(
                status="ignored",
                reason="no_transition",
                transaction_id=record.id,
                leg=leg,
            )

        async with self._locks.hold(f"{record.id}:{leg}"):
            record = await self.store.get(record.id)
            return await self._advance(
                record,
                leg,
                event_class,
                status=status,
                tracking_number=tracking_number,
                carrier=(data.carrier or "").upper() or None,
                metadata=metadata,
            )

    async def _advance(
        self,
        record: TransactionRecord,
        leg: Leg,
        event_class: TrackingClass,
        *,
        status: str,
        tracking_number: str,
        carrier: str | None,
        metadata: Mapping[str, Any],
    ) -> WebhookAck:
        state = current_state(record.protected_data, leg)
        transition = next_state(leg, state, event_class)
        if transition is None:
            logger.info(
                "Tx %s %s leg already %s; %s event is a no-op",
                record.id,
                leg,
                state,
                event_class,
            )
            return WebhookAck(
                status="duplicate",
                reason=f"state_{state.value}",
                transaction_id=record.id,
                leg=leg,
            )

        if leg is Leg.OUTBOUND:
            phone = borrower_phone(
                record.customer_profile, record.protected_data, metadata
            )
        else:
            phone = lender_phone(
                record.provider_profile, record.protected_data, metadata
            )
        if not phone:
            raise MissingContactError(
                f"No phone number for {transition.tag} on tx {record.id}"
            )

        artifacts = record.artifacts(leg) or ShipmentArtifacts(
            carrier=carrier or "UNKNOWN", tracking_number=tracking_number
        )
        stamp = self._now().isoformat()
        stamp_key = (
            "deliveredAt"
            if event_class is TrackingClass.DELIVERED
            else "firstScanAt"
        )
        record_patch = {
            leg.value: {"state": transition.target.value, stamp_key: stamp},
            "lastTrackingStatus": {
                "status": status,
                "leg": leg.value,
                "trackingNumber": tracking_number,
                "at": stamp,
            },
        }

        notification = await self.dispatcher.notify(
            record.id,
            transition.tag,
            phone,
            lambda: self._compose(transition.tag, record, artifacts),
            fingerprint=f"{tracking_number}:{transition.tag}",
            record_patch=record_patch,
            record_guard=state_guard(leg, event_class, transition.target),
        )
        if notification is NotificationStatus.FAILED:
            logger.error(
                "Tracking %s on tx %s handled but %s was not delivered",
                tracking_number,
                record.id,
                transition.tag,
            )
        else:
            logger.info(
                "Tracking %s on tx %s: %s -> %s (%s)",
                tracking_number,
                record.id,
                transition.source,
                transition.target,
                notification,
            )
        return WebhookAck(
            status="handled",
            transaction_id=record.id,
            leg=leg,
            notification=notification,
        )

    async def _compose(
        self,
        tag: EventTag,
        record: TransactionRecord,
        artifacts: ShipmentArtifacts,
    ) -> str:
        brand = self.config.brand_name
        if tag is EventTag.DELIVERY_TO_BORROWER:
            return messages.item_delivered(brand, record.listing_title)

        if tag is EventTag.ITEM_SHIPPED_TO_BORROWER:
            url = public_tracking_url(
                artifacts.carrier, artifacts.tracking_number
            ) or artifacts.tracking_url
            if url:
                url = await shorten_or_original(
                    self.shortener,
                    url,
                    timeout=self.config.shortlink_timeout_seconds,
                )
            return messages.item_shipped(brand, url)

        url = pick_link(
            artifacts,
            DeliveryPhase.RETURN,
            self.link_policy,
            modes=(LinkMode.TRACKING,),
        )
        if url:
            url = await shorten_or_original(
                self.shortener,
                url,
                timeout=self.config.shortlink_timeout_seconds,
            )
        return messages.return_in_transit(brand, record.listing_title, url)
