"""Phone number helpers."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

_NON_DIGITS = re.compile(r"\D")


def normalize_phone_e164(phone: str | None) -> str | None:
    """Normalize a US-centric phone number to E.164.

    ``5551234567`` -> ``+15551234567``; ``15551234567`` -> ``+15551234567``;
    values that already start with ``+`` keep their digits. Anything else
    with at least 8 digits is prefixed with ``+`` as-is.
    """
    if phone is None:
        return None
    raw = str(phone).strip()
    if not raw:
        return None
    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        return None
    if raw.startswith("+"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if len(digits) >= 8:
        return f"+{digits}"
    return None


def mask_phone(phone: str | None) -> str:
    """``+15551234567`` -> ``+1*******4567`` for logging."""
    if not phone:
        return "<none>"
    value = str(phone)
    if len(value) <= 6:
        return "*" * len(value)
    return value[:2] + "*" * (len(value) - 6) + value[-4:]


def first_phone(candidates: Iterable[Any]) -> str | None:
    """First candidate that normalizes to a usable E.164 number."""
    for candidate in candidates:
        if not candidate:
            continue
        normalized = normalize_phone_e164(str(candidate))
        if normalized:
            return normalized
    return None


def _profile_phone(profile: Mapping[str, Any] | None) -> Any:
    if not profile:
        return None
    protected = profile.get("protectedData") or {}
    public = profile.get("publicData") or {}
    return (
        profile.get("phoneNumber")
        or profile.get("phone")
        or protected.get("phoneNumber")
        or public.get("phoneNumber")
    )


def borrower_phone(
    customer_profile: Mapping[str, Any] | None,
    protected_data: Mapping[str, Any] | None,
    event_metadata: Mapping[str, Any] | None = None,
) -> str | None:
    """Borrower phone: profile, then checkout data, then event metadata."""
    protected_data = protected_data or {}
    event_metadata = event_metadata or {}
    return first_phone(
        (
            _profile_phone(customer_profile),
            protected_data.get("customerPhone"),
            event_metadata.get("customerPhone"),
            event_metadata.get("phone"),
        )
    )


def lender_phone(
    provider_profile: Mapping[str, Any] | None,
    protected_data: Mapping[str, Any] | None,
    event_metadata: Mapping[str, Any] | None = None,
) -> str | None:
    """Lender phone: profile, then checkout data, then event metadata."""
    protected_data = protected_data or {}
    event_metadata = event_metadata or {}
    return first_phone(
        (
            _profile_phone(provider_profile),
            protected_data.get("providerPhone"),
            event_metadata.get("providerPhone"),
        )
    )
