"""Link selection policy for shipment notifications.

``pick_link`` decides which single URL, if any, may be put into an SMS for
a given delivery phase. It is pure: no I/O, no clock, no logging side
effects that influence the result.

Rules:

* each carrier has an ordered preference list of link classes
  (``qr``, ``label``, ``tracking``); unknown carriers use the default list;
* in the ``initial-lender`` phase a ``tracking`` entry is always skipped,
  whatever the configuration says;
* in other phases ``tracking`` is used only when the policy allows it;
* when nothing matches the result is ``None``; callers must not substitute
  another link class.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from urllib.parse import quote

from fastapi_rentalship.types import DeliveryPhase, LinkMode, ShipmentArtifacts

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkPolicy:
    link_modes: Mapping[str, tuple[LinkMode, ...]] = field(
        default_factory=lambda: {
            "UPS": (LinkMode.QR, LinkMode.LABEL),
            "USPS": (LinkMode.LABEL,),
        }
    )
    default_modes: tuple[LinkMode, ...] = (LinkMode.LABEL,)
    allow_tracking: bool = False

    def modes_for(self, carrier: str | None) -> tuple[LinkMode, ...]:
        return self.link_modes.get((carrier or "").upper(), self.default_modes)


def tracking_permitted(phase: DeliveryPhase, policy: LinkPolicy) -> bool:
    """Tracking links are never allowed for the initial lender notice."""
    if phase is DeliveryPhase.INITIAL_LENDER:
        return False
    return policy.allow_tracking


def pick_link(
    artifacts: ShipmentArtifacts | None,
    phase: DeliveryPhase,
    policy: LinkPolicy,
    *,
    modes: Sequence[LinkMode] | None = None,
) -> str | None:
    """Return the first compliant link for ``phase`` or ``None``.

    ``modes`` overrides the carrier preference list; the tracking rules
    still apply to it.
    """
    if artifacts is None:
        return None

    preferences = tuple(modes) if modes is not None else policy.modes_for(
        artifacts.carrier
    )
    for mode in preferences:
        if mode is LinkMode.TRACKING and not tracking_permitted(phase, policy):
            continue
        url = artifacts.link_for(mode)
        if url:
            return url
    return None


def link_mode_of(artifacts: ShipmentArtifacts, url: str) -> LinkMode | None:
    """Which artifact class ``url`` came from (used to word the SMS)."""
    for mode in (LinkMode.QR, LinkMode.LABEL, LinkMode.TRACKING):
        if artifacts.link_for(mode) == url:
            return mode
    return None


_PUBLIC_TRACKING_URLS = (
    (
        "usps",
        "https://tools.usps.com/go/TrackConfirmAction_input?origTrackNum={}",
    ),
    ("ups", "https://www.ups.com/track?loc=en_US&tracknum={}"),
    ("fedex", "https://www.fedex.com/fedextrack/?tracknumbers={}"),
    ("dhl", "https://www.dhl.com/en/express/tracking.html?AWB={}"),
)


def public_tracking_url(
    carrier: str | None, tracking_number: str | None
) -> str | None:
    """Short public carrier tracking page for SMS copy."""
    if not tracking_number:
        return None
    number = quote(tracking_number, safe="")
    normalized = (carrier or "").lower()
    for needle, template in _PUBLIC_TRACKING_URLS:
        if needle in normalized:
            return template.format(number)
    logger.warning("Unknown carrier %r, using Shippo tracking page", carrier)
    return f"https://goshippo.com/track/{number}"
