"""Per-leg notification state machine.

Outbound: ``unshipped -> first-scan-notified -> delivered-notified``, with a
direct ``unshipped -> delivered-notified`` edge for a delivery reported
without a prior scan. Return: ``unshipped -> return-first-scan-notified``.
Anything not listed in ``TRANSITIONS`` is ignored; terminal states accept
nothing.

The state is persisted as ``<leg>.state``. Records written before the state
field existed are read through the ``shippingNotification`` flags.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from fastapi_rentalship.types import EventTag, Leg, LegState, TrackingClass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    source: LegState
    target: LegState
    tag: EventTag


TRANSITIONS: dict[tuple[Leg, LegState, TrackingClass], Transition] = {
    (Leg.OUTBOUND, LegState.UNSHIPPED, TrackingClass.FIRST_SCAN): Transition(
        LegState.UNSHIPPED,
        LegState.FIRST_SCAN_NOTIFIED,
        EventTag.ITEM_SHIPPED_TO_BORROWER,
    ),
    (Leg.OUTBOUND, LegState.UNSHIPPED, TrackingClass.DELIVERED): Transition(
        LegState.UNSHIPPED,
        LegState.DELIVERED_NOTIFIED,
        EventTag.DELIVERY_TO_BORROWER,
    ),
    (
        Leg.OUTBOUND,
        LegState.FIRST_SCAN_NOTIFIED,
        TrackingClass.DELIVERED,
    ): Transition(
        LegState.FIRST_SCAN_NOTIFIED,
        LegState.DELIVERED_NOTIFIED,
        EventTag.DELIVERY_TO_BORROWER,
    ),
    (Leg.RETURN, LegState.UNSHIPPED, TrackingClass.FIRST_SCAN): Transition(
        LegState.UNSHIPPED,
        LegState.RETURN_FIRST_SCAN_NOTIFIED,
        EventTag.RETURN_FIRST_SCAN_TO_LENDER,
    ),
}

TERMINAL_STATES = frozenset(
    {LegState.DELIVERED_NOTIFIED, LegState.RETURN_FIRST_SCAN_NOTIFIED}
)


def next_state(
    leg: Leg, current: LegState, event: TrackingClass
) -> Transition | None:
    """The transition for ``event`` or ``None`` when it must be ignored."""
    if current in TERMINAL_STATES:
        return None
    return TRANSITIONS.get((leg, current, event))


def accepts(leg: Leg, event: TrackingClass) -> bool:
    """Whether ``event`` drives any transition on ``leg`` at all."""
    return any(
        key_leg is leg and key_event is event
        for key_leg, _, key_event in TRANSITIONS
    )


def _flag_sent(protected_data: Mapping[str, Any], tag: EventTag) -> bool:
    notifications = protected_data.get("shippingNotification") or {}
    entry = notifications.get(tag.value) or {}
    return bool(entry.get("sent"))


def current_state(protected_data: Mapping[str, Any], leg: Leg) -> LegState:
    leg_data = protected_data.get(leg.value) or {}
    stored = leg_data.get("state")
    if stored:
        try:
            return LegState(stored)
        except ValueError:
            logger.warning(
                "Unknown %s leg state %r, falling back to flags", leg, stored
            )

    if leg is Leg.RETURN:
        if _flag_sent(protected_data, EventTag.RETURN_FIRST_SCAN_TO_LENDER):
            return LegState.RETURN_FIRST_SCAN_NOTIFIED
        return LegState.UNSHIPPED

    if _flag_sent(protected_data, EventTag.DELIVERY_TO_BORROWER):
        return LegState.DELIVERED_NOTIFIED
    if _flag_sent(
        protected_data, EventTag.ITEM_SHIPPED_TO_BORROWER
    ) or leg_data.get("firstScanAt"):
        return LegState.FIRST_SCAN_NOTIFIED
    return LegState.UNSHIPPED
