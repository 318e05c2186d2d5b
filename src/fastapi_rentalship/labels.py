"""Label acquisition for accepted rental transactions.

``LabelOrchestrator.create_labels`` buys the outbound label (lender to
borrower) and, optionally, a return label (borrower to lender). Only
failures of the outbound purchase itself are reported as a failed label
result. Persisting the artifacts and the lender SMS are downstream steps
whose outcomes are reported separately on the result.

A purchase for a ``(transaction, leg)`` pair is claimed in-process before
the first carrier call and the claim is only released when the purchase
fails, so overlapping acceptance triggers buy each label once.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from fastapi_rentalship import messages
from fastapi_rentalship.artifacts import extract_artifacts
from fastapi_rentalship.config import RentalShipConfig
from fastapi_rentalship.deadline import ShipByCalculator
from fastapi_rentalship.exceptions import (
    CarrierCommunicationError,
    LabelPurchaseError,
    NoCompliantLinkError,
    TransactionNotFoundError,
)
from fastapi_rentalship.links import (
    link_mode_of,
    pick_link,
    public_tracking_url,
)
from fastapi_rentalship.notifications import (
    DedupCache,
    NotificationDispatcher,
    shorten_or_original,
)
from fastapi_rentalship.persistence import ProtectedDataReconciler
from fastapi_rentalship.phone import borrower_phone, lender_phone
from fastapi_rentalship.protocols import (
    CarrierClient,
    LinkShortener,
    TransactionStore,
)
from fastapi_rentalship.types import (
    Address,
    DeliveryPhase,
    EventTag,
    LabelFailureReason,
    LabelResult,
    Leg,
    LinkMode,
    NotificationStatus,
    Parcel,
    ShipmentArtifacts,
    TransactionRecord,
)

logger = logging.getLogger(__name__)

PURCHASE_SUCCESS = "SUCCESS"


def select_rate(
    rates: Sequence[Mapping[str, Any]], preferences: Sequence[str]
) -> Mapping[str, Any] | None:
    """First rate from the most preferred provider, else the first rate."""
    if not rates:
        return None
    for provider in preferences:
        wanted = provider.upper()
        for rate in rates:
            if str(rate.get("provider") or "").upper() == wanted:
                return rate
    return rates[0]


def _service_name(rate: Mapping[str, Any]) -> str | None:
    servicelevel = rate.get("servicelevel") or {}
    if isinstance(servicelevel, Mapping) and servicelevel.get("name"):
        return servicelevel["name"]
    return rate.get("servicelevel_name") or rate.get("service")


class LabelOrchestrator:
    def __init__(
        self,
        *,
        config: RentalShipConfig,
        store: TransactionStore,
        carrier: CarrierClient | None,
        reconciler: ProtectedDataReconciler,
        dispatcher: NotificationDispatcher,
        ship_by: ShipByCalculator,
        shortener: LinkShortener | None = None,
        claims: DedupCache | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
    ) -> None:
        self.config = config
        self.store = store
        self.carrier = carrier
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.ship_by = ship_by
        self.shortener = shortener
        self.claims = claims if claims is not None else DedupCache()
        self.link_policy = config.link_policy()
        self._now = now

    async def create_labels_for_transaction(
        self, transaction_id: str
    ) -> LabelResult:
        """Acceptance trigger: addresses come from checkout data."""
        try:
            record = await self.store.get(transaction_id)
        except TransactionNotFoundError:
            logger.error(
                "Cannot create labels: tx %s not found", transaction_id
            )
            return LabelResult(
                success=False, reason=LabelFailureReason.TRANSACTION_NOT_FOUND
            )
        outbound_data = record.protected_data.get(Leg.OUTBOUND.value) or {}
        if not outbound_data.get("acceptedAt"):
            await self.reconciler.merge_protected_fields(
                transaction_id,
                {"outbound": {"acceptedAt": self._now().isoformat()}},
                source="accepted",
            )
        return await self.create_labels(
            transaction_id,
            Address.from_protected_data(record.protected_data, "provider"),
            Address.from_protected_data(record.protected_data, "customer"),
        )

    async def create_labels(
        self,
        transaction_id: str,
        provider_address: Address,
        customer_address: Address,
        parcel: Parcel | None = None,
        *,
        include_return: bool | None = None,
    ) -> LabelResult:
        if not provider_address.is_complete():
            logger.warning(
                "Incomplete provider address for tx %s: %s",
                transaction_id,
                provider_address.masked(),
            )
            return LabelResult(
                success=False,
                reason=LabelFailureReason.INCOMPLETE_PROVIDER_ADDRESS,
            )
        if not customer_address.is_complete():
            logger.warning(
                "Incomplete customer address for tx %s: %s",
                transaction_id,
                customer_address.masked(),
            )
            return LabelResult(
                success=False,
                reason=LabelFailureReason.INCOMPLETE_CUSTOMER_ADDRESS,
            )
        carrier = self.carrier
        if carrier is None:
            logger.error("No carrier API token configured; cannot buy labels")
            return LabelResult(
                success=False, reason=LabelFailureReason.MISSING_API_TOKEN
            )

        try:
            record = await self.store.get(transaction_id)
        except TransactionNotFoundError:
            return LabelResult(
                success=False, reason=LabelFailureReason.TRANSACTION_NOT_FOUND
            )

        existing = record.artifacts(Leg.OUTBOUND)
        outbound_key = f"{transaction_id}:{Leg.OUTBOUND}"
        if existing is not None or not self.claims.claim(outbound_key):
            logger.info(
                "Outbound label for tx %s already purchased or in flight "
                "(%s), skipping",
                transaction_id,
                existing.tracking_number if existing else "pending",
            )
            return LabelResult(
                success=False,
                reason=LabelFailureReason.ALREADY_PURCHASED,
                outbound=existing,
                return_leg=record.artifacts(Leg.RETURN),
            )

        parcel = parcel or self.config.default_parcel()
        try:
            outbound = await self._purchase_leg(
                carrier,
                transaction_id,
                Leg.OUTBOUND,
                provider_address,
                customer_address,
                parcel,
            )
        except LabelPurchaseError as exc:
            self.claims.release(outbound_key)
            return LabelResult(
                success=False,
                reason=LabelFailureReason(exc.reason),
                carrier_status=exc.status,
                error=str(exc),
            )
        except CarrierCommunicationError as exc:
            self.claims.release(outbound_key)
            logger.error(
                "Carrier API error buying outbound label for tx %s: %s",
                transaction_id,
                exc,
            )
            return LabelResult(
                success=False,
                reason=LabelFailureReason.SHIPPO_API_ERROR,
                error=str(exc),
            )

        result = LabelResult(success=True, outbound=outbound)
        shipby = await self.ship_by.compute(
            record.booking_start,
            self.config.ship_lead_mode,
            self.config.ship_lead_days,
            self.config.ship_lead_max_days,
            provider_address.zip,
            customer_address.zip,
        )
        result.ship_by = shipby.ship_by

        outbound_patch: dict[str, Any] = outbound.to_protected_data()
        if shipby.ship_by is not None:
            outbound_patch["shipByDate"] = shipby.ship_by.isoformat()
            outbound_patch["leadDays"] = shipby.lead_days
        persisted = await self.reconciler.merge_protected_fields(
            transaction_id,
            {"outbound": outbound_patch},
            source="outbound-label",
        )
        result.persisted = persisted.success

        result.notification = await self._notify_lender(
            record, outbound, shipby.ship_by
        )

        want_return = (
            self.config.include_return_label
            if include_return is None
            else include_return
        )
        if want_return and record.artifacts(Leg.RETURN) is None:
            await self._create_return_leg(
                carrier,
                result,
                transaction_id,
                customer_address,
                provider_address,
                parcel,
            )

        if self.config.notify_borrower_on_label:
            result.borrower_notification = await self._notify_borrower(
                record, outbound
            )
        return result

    async def _create_return_leg(
        self,
        carrier: CarrierClient,
        result: LabelResult,
        transaction_id: str,
        customer_address: Address,
        provider_address: Address,
        parcel: Parcel,
    ) -> None:
        return_key = f"{transaction_id}:{Leg.RETURN}"
        if not self.claims.claim(return_key):
            logger.info(
                "Return label for tx %s already in flight, skipping",
                transaction_id,
            )
            return
        try:
            return_leg = await self._purchase_leg(
                carrier,
                transaction_id,
                Leg.RETURN,
                customer_address,
                provider_address,
                parcel,
            )
        except (LabelPurchaseError, CarrierCommunicationError) as exc:
            self.claims.release(return_key)
            logger.warning(
                "Return label for tx %s failed, outbound unaffected: %s",
                transaction_id,
                exc,
            )
            result.return_error = str(exc)
            return

        result.return_leg = return_leg
        persisted = await self.reconciler.merge_protected_fields(
            transaction_id,
            {"return": return_leg.to_protected_data()},
            source="return-label",
        )
        if not persisted.success:
            result.persisted = False

    async def _purchase_leg(
        self,
        carrier: CarrierClient,
        transaction_id: str,
        leg: Leg,
        address_from: Address,
        address_to: Address,
        parcel: Parcel,
    ) -> ShipmentArtifacts:
        shipment = await carrier.create_shipment(
            address_from.to_carrier_payload(),
            address_to.to_carrier_payload(),
            parcel.to_carrier_payload(),
        )
        rate = select_rate(
            shipment.get("rates") or [], self.config.preferred_providers
        )
        if rate is None:
            diagnostics = {
                "status": shipment.get("status"),
                "messages": shipment.get("messages"),
                "carrier_accounts": shipment.get("carrier_accounts"),
                "address_from": address_from.masked(),
                "address_to": address_to.masked(),
                "parcel": parcel.to_carrier_payload(),
            }
            logger.error(
                "No shipping rates for tx %s (%s leg): %s",
                transaction_id,
                leg,
                json.dumps(diagnostics, default=str),
            )
            raise LabelPurchaseError(
                LabelFailureReason.NO_SHIPPING_RATES.value,
                f"No shipping rates for {leg} leg",
                status=shipment.get("status"),
                diagnostics=diagnostics,
            )

        provider = str(rate.get("provider") or "").upper()
        logger.info(
            "Selected %s rate %s (%s) for tx %s %s leg",
            provider,
            rate.get("object_id"),
            rate.get("amount"),
            transaction_id,
            leg,
        )

        options: dict[str, Any] = {
            "label_file_type": self.config.label_file_type,
            "metadata": json.dumps({"txId": transaction_id, "leg": leg.value}),
        }
        if provider in self.config.qr_supported_carriers:
            options["extra"] = {"qr_code_requested": True}

        purchase = await carrier.purchase_label(
            str(rate.get("object_id")), options
        )
        status = purchase.get("status")
        if status != PURCHASE_SUCCESS:
            logger.error(
                "Label purchase for tx %s %s leg failed: %s %s",
                transaction_id,
                leg,
                status,
                purchase.get("messages"),
            )
            raise LabelPurchaseError(
                LabelFailureReason.LABEL_PURCHASE_FAILED.value,
                f"Label purchase returned status {status}",
                status=status,
                diagnostics={"messages": purchase.get("messages")},
            )

        artifacts = extract_artifacts(
            purchase,
            carrier=provider or None,
            service=_service_name(rate),
            purchased_at=self._now().isoformat(),
        )
        logger.info(
            "Purchased %s label for tx %s: %s",
            leg,
            transaction_id,
            artifacts.tracking_number,
        )
        return artifacts

    async def _notify_lender(
        self,
        record: TransactionRecord,
        outbound: ShipmentArtifacts,
        ship_by: datetime | None,
    ) -> NotificationStatus | None:
        phone = lender_phone(record.provider_profile, record.protected_data)
        if not phone:
            logger.warning(
                "No lender phone on tx %s; label-ready SMS not sent", record.id
            )
            return None

        async def compose() -> str:
            url = pick_link(
                outbound, DeliveryPhase.INITIAL_LENDER, self.link_policy
            )
            if url is None:
                present = [
                    mode.value
                    for mode in LinkMode
                    if outbound.link_for(mode)
                ]
                raise NoCompliantLinkError(
                    f"No compliant link for {outbound.carrier} label "
                    f"(present: {present or 'none'})"
                )
            mode = link_mode_of(outbound, url)
            short = await shorten_or_original(
                self.shortener,
                url,
                timeout=self.config.shortlink_timeout_seconds,
            )
            return messages.label_ready(
                self.config.brand_name,
                record.listing_title,
                ship_by,
                short,
                mode,
            )

        return await self.dispatcher.notify(
            record.id,
            EventTag.LABEL_READY_TO_LENDER,
            phone,
            compose,
            fingerprint=f"{record.id}:{EventTag.LABEL_READY_TO_LENDER}",
        )

    async def _notify_borrower(
        self, record: TransactionRecord, outbound: ShipmentArtifacts
    ) -> NotificationStatus | None:
        phone = borrower_phone(record.customer_profile, record.protected_data)
        url = (
            public_tracking_url(outbound.carrier, outbound.tracking_number)
            or outbound.tracking_url
        )
        if not phone or not url:
            logger.info(
                "No borrower phone or tracking link on tx %s; "
                "label-created SMS not sent",
                record.id,
            )
            return None

        async def compose() -> str:
            short = await shorten_or_original(
                self.shortener,
                url,
                timeout=self.config.shortlink_timeout_seconds,
            )
            return messages.label_created(self.config.brand_name, short)

        return await self.dispatcher.notify(
            record.id,
            EventTag.LABEL_CREATED_TO_BORROWER,
            phone,
            compose,
            fingerprint=f"{record.id}:{EventTag.LABEL_CREATED_TO_BORROWER}",
        )
