"""Reminder sweeps.

Lenders who have not shipped yet get ship-by reminders; borrowers holding a
return label get return reminders around the booking end. Each sweep sends
at most one window per transaction per run, and every window at most once.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

from fastapi_rentalship import messages
from fastapi_rentalship.config import RentalShipConfig
from fastapi_rentalship.deadline import ShipByCalculator, parse_booking_start
from fastapi_rentalship.exceptions import NoCompliantLinkError
from fastapi_rentalship.links import link_mode_of, pick_link
from fastapi_rentalship.notifications import (
    NotificationDispatcher,
    shorten_or_original,
)
from fastapi_rentalship.phone import borrower_phone, lender_phone
from fastapi_rentalship.protocols import LinkShortener, TransactionStore
from fastapi_rentalship.state import current_state
from fastapi_rentalship.types import (
    DeliveryPhase,
    EventTag,
    Leg,
    LegState,
    NotificationStatus,
    ShipmentArtifacts,
    TransactionRecord,
)

logger = logging.getLogger(__name__)

# More than this many days between acceptance and ship-by counts as a long
# lead and uses the t48/t24/morning windows.
LONG_LEAD_DAYS = 7

WINDOW_TAGS = {
    "t48": EventTag.SHIP_BY_T48_TO_LENDER,
    "t24": EventTag.SHIP_BY_T24_TO_LENDER,
    "morning": EventTag.SHIP_BY_MORNING_TO_LENDER,
    "short24": EventTag.SHIP_BY_SHORT24_TO_LENDER,
    "short48": EventTag.SHIP_BY_SHORT48_TO_LENDER,
}

Remind = Callable[[TransactionRecord], Awaitable[NotificationStatus | None]]

RETURN_WINDOW_TAGS = {
    "t1": EventTag.RETURN_T1_TO_BORROWER,
    "today": EventTag.RETURN_TODAY_TO_BORROWER,
    "late": EventTag.RETURN_LATE_TO_BORROWER,
}


def due_window(
    today: date,
    ship_by: date,
    accepted: date,
    sent: Mapping[str, Any],
) -> str | None:
    """The single reminder window due ``today``, if any."""
    if (ship_by - accepted).days > LONG_LEAD_DAYS:
        candidates = (
            ("t48", ship_by - timedelta(days=2)),
            ("t24", ship_by - timedelta(days=1)),
            ("morning", ship_by),
        )
    else:
        candidates = (
            ("short24", accepted + timedelta(days=1)),
            ("short48", accepted + timedelta(days=2)),
            ("t24", ship_by - timedelta(days=1)),
        )
    for window, day in candidates:
        if today == day and not sent.get(window):
            return window
    return None


def return_due_window(
    today: date, due: date, sent: Mapping[str, Any]
) -> str | None:
    """Return window due ``today``: day before, day of, or day after."""
    candidates = (
        ("t1", due - timedelta(days=1)),
        ("today", due),
        ("late", due + timedelta(days=1)),
    )
    for window, day in candidates:
        if today == day and not sent.get(window):
            return window
    return None


@dataclass
class ReminderRun:
    scanned: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0


def _accepted_on(outbound: Mapping[str, Any], tz: Any) -> date | None:
    stamp = parse_booking_start(
        outbound.get("acceptedAt") or outbound.get("purchasedAt")
    )
    if stamp is None:
        return None
    return stamp.astimezone(tz).date()


async def _remind(
    record: TransactionRecord,
    *,
    config: RentalShipConfig,
    dispatcher: NotificationDispatcher,
    ship_by_calculator: ShipByCalculator,
    shortener: LinkShortener | None,
    today: date,
) -> NotificationStatus | None:
    pd = record.protected_data
    outbound_data = pd.get(Leg.OUTBOUND.value) or {}
    artifacts = ShipmentArtifacts.from_protected_data(outbound_data)
    if artifacts is None:
        return None
    if current_state(pd, Leg.OUTBOUND) is not LegState.UNSHIPPED:
        return None

    shipby = await ship_by_calculator.compute(
        record.booking_start,
        config.ship_lead_mode,
        config.ship_lead_days,
        config.ship_lead_max_days,
        pd.get("providerZip"),
        pd.get("customerZip"),
    )
    tz = ship_by_calculator.tz
    accepted = _accepted_on(outbound_data, tz)
    if shipby.ship_by is None or accepted is None:
        logger.warning(
            "Tx %s: cannot derive ship-by or acceptance date, no reminder",
            record.id,
        )
        return None

    window = due_window(
        today,
        shipby.ship_by.astimezone(tz).date(),
        accepted,
        outbound_data.get("reminders") or {},
    )
    if window is None:
        return None

    phone = lender_phone(record.provider_profile, pd)
    policy = config.link_policy()

    async def compose() -> str:
        url = pick_link(artifacts, DeliveryPhase.REMINDER, policy)
        if url is None:
            raise NoCompliantLinkError(
                f"No reminder link for {artifacts.carrier} on tx {record.id}"
            )
        mode = link_mode_of(artifacts, url)
        short = await shorten_or_original(
            shortener, url, timeout=config.shortlink_timeout_seconds
        )
        return messages.ship_by_reminder(
            config.brand_name,
            window,
            record.listing_title,
            shipby.ship_by,
            short,
            mode,
        )

    tag = WINDOW_TAGS[window]
    return await dispatcher.notify(
        record.id,
        tag,
        phone,
        compose,
        fingerprint=f"{record.id}:{tag}",
        record_patch={
            "outbound": {
                "reminders": {window: datetime.now(tz=UTC).isoformat()}
            }
        },
    )


async def _remind_return(
    record: TransactionRecord,
    *,
    config: RentalShipConfig,
    dispatcher: NotificationDispatcher,
    shortener: LinkShortener | None,
    tz: Any,
    today: date,
) -> NotificationStatus | None:
    pd = record.protected_data
    if current_state(pd, Leg.OUTBOUND) is LegState.UNSHIPPED:
        return None
    if current_state(pd, Leg.RETURN) is not LegState.UNSHIPPED:
        return None
    return_data = pd.get(Leg.RETURN.value) or {}
    if return_data.get("firstScanAt"):
        return None

    due_at = parse_booking_start(record.booking_end)
    if due_at is None:
        logger.debug("Tx %s has no booking end, no return reminder", record.id)
        return None
    window = return_due_window(
        today,
        due_at.astimezone(tz).date(),
        return_data.get("reminders") or {},
    )
    if window is None:
        return None

    artifacts = ShipmentArtifacts.from_protected_data(return_data)
    phone = borrower_phone(record.customer_profile, pd)
    policy = config.link_policy()

    async def compose() -> str:
        url = pick_link(artifacts, DeliveryPhase.RETURN, policy)
        if url is None and window == "t1":
            raise NoCompliantLinkError(
                f"No return label link on tx {record.id}"
            )
        mode = None
        if url is not None and artifacts is not None:
            mode = link_mode_of(artifacts, url)
            url = await shorten_or_original(
                shortener, url, timeout=config.shortlink_timeout_seconds
            )
        return messages.return_reminder(
            config.brand_name, window, record.listing_title, url, mode
        )

    tag = RETURN_WINDOW_TAGS[window]
    return await dispatcher.notify(
        record.id,
        tag,
        phone,
        compose,
        fingerprint=f"{record.id}:{tag}",
        record_patch={
            "return": {
                "reminders": {window: datetime.now(tz=UTC).isoformat()}
            }
        },
    )


async def _sweep(
    name: str,
    records: list[TransactionRecord],
    remind: Remind,
    today: date,
) -> ReminderRun:
    run = ReminderRun()
    for record in records:
        run.scanned += 1
        try:
            status = await remind(record)
        except Exception:
            logger.exception("%s reminder for tx %s failed", name, record.id)
            run.failed += 1
            continue

        if status is NotificationStatus.SENT:
            run.sent += 1
        elif status is NotificationStatus.FAILED:
            run.failed += 1
        else:
            run.skipped += 1

    logger.info(
        "%s reminders for %s: scanned=%d sent=%d skipped=%d failed=%d",
        name,
        today,
        run.scanned,
        run.sent,
        run.skipped,
        run.failed,
    )
    return run


async def process_ship_by_reminders(
    *,
    store: TransactionStore,
    dispatcher: NotificationDispatcher,
    ship_by_calculator: ShipByCalculator,
    config: RentalShipConfig,
    shortener: LinkShortener | None = None,
    today: date | None = None,
) -> ReminderRun:
    """Send every ship-by reminder due today."""
    tz = ship_by_calculator.tz
    today = today or datetime.now(tz=tz).date()
    records = await store.list_recent(
        config.recent_transactions_scan_limit, state="accepted"
    )

    async def remind(record: TransactionRecord) -> NotificationStatus | None:
        return await _remind(
            record,
            config=config,
            dispatcher=dispatcher,
            ship_by_calculator=ship_by_calculator,
            shortener=shortener,
            today=today,
        )

    return await _sweep("Ship-by", records, remind, today)


async def process_return_reminders(
    *,
    store: TransactionStore,
    dispatcher: NotificationDispatcher,
    config: RentalShipConfig,
    shortener: LinkShortener | None = None,
    today: date | None = None,
) -> ReminderRun:
    """Send every borrower return reminder due today.

    Candidates are recent transactions whose item has shipped and whose
    return leg has not been scanned yet.
    """
    tz = config.timezone()
    today = today or datetime.now(tz=tz).date()
    records = await store.list_recent(config.recent_transactions_scan_limit)

    async def remind(record: TransactionRecord) -> NotificationStatus | None:
        return await _remind_return(
            record,
            config=config,
            dispatcher=dispatcher,
            shortener=shortener,
            tz=tz,
            today=today,
        )

    return await _sweep("Return", records, remind, today)
