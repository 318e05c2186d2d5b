"""SMS copy."""

from __future__ import annotations

from datetime import datetime

from fastapi_rentalship.deadline import format_ship_by
from fastapi_rentalship.types import LinkMode

TITLE_LIMIT = 40

_REMINDER_LEADS = {
    "t48": "in 2 days",
    "t24": "tomorrow",
    "morning": "today",
    "short24": "soon",
    "short48": "soon",
}


def truncate_title(title: str | None, limit: int = TITLE_LIMIT) -> str:
    value = (title or "your item").strip() or "your item"
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."


def _link_line(url: str, mode: LinkMode | None) -> str:
    if mode is LinkMode.QR:
        return f"Scan QR: {url}"
    if mode is LinkMode.TRACKING:
        return f"Track: {url}"
    return f"Label: {url}"


def label_ready(
    brand: str,
    title: str | None,
    ship_by: datetime | None,
    url: str,
    mode: LinkMode | None,
) -> str:
    deadline = format_ship_by(ship_by)
    head = f'{brand}: Ship "{truncate_title(title)}"'
    if deadline:
        head = f"{head} by {deadline}"
    return f"{head}. {_link_line(url, mode)}"


def item_shipped(brand: str, tracking_url: str | None) -> str:
    if tracking_url:
        return (
            f"{brand}: Your item is on the way! Track it here: {tracking_url}"
        )
    return f"{brand}: Your item is on the way!"


def label_created(brand: str, tracking_url: str) -> str:
    return f"{brand}: Your item will ship soon. Track at {tracking_url}"


def item_delivered(brand: str, title: str | None) -> str:
    return (
        f'{brand}: Your rental "{truncate_title(title)}" was delivered! '
        "Enjoy it."
    )


def return_in_transit(brand: str, title: str | None, url: str | None) -> str:
    body = (
        f'{brand}: The return of "{truncate_title(title)}" is on its way '
        "back to you."
    )
    if url:
        return f"{body} Track: {url}"
    return body


def ship_by_reminder(
    brand: str,
    window: str,
    title: str | None,
    ship_by: datetime | None,
    url: str,
    mode: LinkMode | None,
) -> str:
    when = _REMINDER_LEADS.get(window, "soon")
    deadline = format_ship_by(ship_by)
    due = f"by {deadline}" if deadline else when
    return (
        f'{brand}: Reminder, "{truncate_title(title)}" needs to ship {due}. '
        f"{_link_line(url, mode)}"
    )


def return_reminder(
    brand: str,
    window: str,
    title: str | None,
    url: str | None,
    mode: LinkMode | None,
) -> str:
    item = f'"{truncate_title(title)}"'
    if window == "t1":
        head = f"{brand}: Please ship {item} back tomorrow."
    elif window == "today":
        head = f"{brand}: Today's the day! Please ship {item} back today."
    else:
        return (
            f"{brand}: The return of {item} is late. Late fees apply until "
            "the carrier scans it, so please ship it back as soon as "
            "possible."
        )
    if url:
        return f"{head} {_link_line(url, mode)}"
    return f"{head} Check your dashboard for return instructions."
