"""Normalization of raw carrier label responses into ShipmentArtifacts.

Carrier responses expose the same concept under different field names
depending on carrier and API version (top-level ``label_url`` vs nested
``label.url``, snake vs camel case). All of that mapping lives here.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qs, urlparse

from fastapi_rentalship.types import ShipmentArtifacts

logger = logging.getLogger(__name__)

_LABEL_URL_PATHS = (("label_url",), ("label", "url"), ("labelUrl",))
_QR_URL_PATHS = (
    ("qr_code_url",),
    ("qr_code", "url"),
    ("qrCodeUrl",),
    ("qr_url",),
)
_TRACKING_URL_PATHS = (
    ("tracking_url_provider",),
    ("tracking_url",),
    ("trackingUrlProvider",),
)
_TRACKING_NUMBER_PATHS = (("tracking_number",), ("trackingNumber",))
_CARRIER_PATHS = (("carrier",), ("provider",), ("rate", "provider"))


def _first(raw: Mapping[str, Any], paths: Sequence[tuple[str, ...]]) -> Any:
    for path in paths:
        value: Any = raw
        for key in path:
            if not isinstance(value, Mapping):
                value = None
                break
            value = value.get(key)
        if value:
            return value
    return None


def parse_qr_expiry(url: str | None) -> str | None:
    """ISO timestamp from a signed URL's ``Expires`` epoch parameter."""
    if not url:
        return None
    try:
        raw = parse_qs(urlparse(url).query).get("Expires")
    except ValueError:
        return None
    if not raw:
        return None
    try:
        return datetime.fromtimestamp(int(raw[0]), tz=UTC).isoformat()
    except (ValueError, OverflowError, OSError):
        return None


def extract_artifacts(
    raw: Mapping[str, Any] | None,
    *,
    carrier: str | None = None,
    service: str | None = None,
    tracking_number: str | None = None,
    purchased_at: str | None = None,
) -> ShipmentArtifacts:
    """Map a carrier purchase response onto the canonical artifact shape."""
    if not isinstance(raw, Mapping):
        logger.warning("No carrier response to extract artifacts from")
        return ShipmentArtifacts(
            carrier=(carrier or "UNKNOWN").upper(),
            tracking_number=tracking_number,
            service=service,
            purchased_at=purchased_at,
        )

    qr_url = _first(raw, _QR_URL_PATHS)
    carrier = carrier or _first(raw, _CARRIER_PATHS) or "UNKNOWN"
    artifacts = ShipmentArtifacts(
        carrier=str(carrier).upper(),
        tracking_number=(
            tracking_number or _first(raw, _TRACKING_NUMBER_PATHS)
        ),
        tracking_url=_first(raw, _TRACKING_URL_PATHS),
        label_url=_first(raw, _LABEL_URL_PATHS),
        qr_url=qr_url,
        service=service,
        purchased_at=purchased_at,
        qr_expires_at=parse_qr_expiry(qr_url),
    )
    logger.debug(
        "Normalized artifacts carrier=%s qr=%s label=%s tracking=%s",
        artifacts.carrier,
        bool(artifacts.qr_url),
        bool(artifacts.label_url),
        bool(artifacts.tracking_url),
    )
    return artifacts
