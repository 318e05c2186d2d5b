"""SMS copy tests."""

from datetime import UTC, datetime

from fastapi_rentalship import messages
from fastapi_rentalship.types import LinkMode

SHIP_BY = datetime(2025, 1, 18, tzinfo=UTC)


def test_truncate_title() -> None:
    assert messages.truncate_title("Dress") == "Dress"
    assert messages.truncate_title(None) == "your item"
    assert messages.truncate_title("   ") == "your item"
    assert len(messages.truncate_title("a" * 100)) == messages.TITLE_LIMIT


def test_label_ready_wording_follows_link_class() -> None:
    qr = messages.label_ready("B", "Dress", SHIP_BY, "u", LinkMode.QR)
    label = messages.label_ready("B", "Dress", None, "u", LinkMode.LABEL)

    assert qr == 'B: Ship "Dress" by Jan 18th. Scan QR: u'
    assert label == 'B: Ship "Dress". Label: u'


def test_item_shipped() -> None:
    assert messages.item_shipped("B", "u") == (
        "B: Your item is on the way! Track it here: u"
    )
    assert messages.item_shipped("B", None) == "B: Your item is on the way!"


def test_reminder_without_deadline_uses_window_wording() -> None:
    body = messages.ship_by_reminder(
        "B", "t24", "Dress", None, "u", LinkMode.LABEL
    )

    assert body == 'B: Reminder, "Dress" needs to ship tomorrow. Label: u'


def test_label_created() -> None:
    assert messages.label_created("B", "u") == (
        "B: Your item will ship soon. Track at u"
    )


def test_return_reminder_windows() -> None:
    t1 = messages.return_reminder("B", "t1", "Dress", "u", LinkMode.QR)
    today = messages.return_reminder("B", "today", "Dress", None, None)
    late = messages.return_reminder("B", "late", "Dress", "u", LinkMode.LABEL)

    assert t1 == 'B: Please ship "Dress" back tomorrow. Scan QR: u'
    assert today == (
        "B: Today's the day! Please ship \"Dress\" back today. "
        "Check your dashboard for return instructions."
    )
    assert late == (
        'B: The return of "Dress" is late. Late fees apply until the '
        "carrier scans it, so please ship it back as soon as possible."
    )
