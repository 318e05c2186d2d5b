"""HTTP surface tests."""

from __future__ import annotations

from conftest import (
    FakeShortener,
    make_transaction,
    sent_tags,
    sign,
    tracking_event,
)
from fastapi import FastAPI
from fastapi.testclient import TestClient

from fastapi_rentalship.exceptions import register_exception_handlers
from fastapi_rentalship.router import create_fulfillment_router

LEGS = {
    "outbound": {
        "carrier": "USPS",
        "trackingNumber": "9400",
        "labelUrl": "https://labels.example/1.png",
    },
}


class ResolvingShortener(FakeShortener):
    async def resolve(self, code: str) -> str | None:
        return {"abc123ef": "https://labels.example/1.png"}.get(code)


def _create_client(config, store, carrier, sms, *, shortener=None):
    app = FastAPI()
    register_exception_handlers(app)
    router_ = create_fulfillment_router(
        config=config,
        store=store,
        carrier=carrier,
        sms=sms,
        shortener=shortener,
    )
    app.include_router(router_)
    return TestClient(app)


def _post_event(client, body: bytes, signature: str | None = None):
    return client.post(
        "/webhooks/carrier-tracking",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Signature": signature if signature is not None else sign(body),
        },
    )


def test_tracking_webhook_replay_sends_once(config, store, carrier, sms):
    store.add(make_transaction(protected_data=LEGS))
    body = tracking_event("9400", "TRANSIT")

    with _create_client(config, store, carrier, sms) as client:
        first = _post_event(client, body)
        replay = _post_event(client, body)

    assert first.status_code == 200
    assert first.json() == {
        "status": "handled",
        "reason": None,
        "transaction_id": "tx-1",
        "leg": "outbound",
        "notification": "sent",
    }
    assert replay.status_code == 200
    assert replay.json()["status"] == "duplicate"
    assert len(sms.sent) == 1


def test_tracking_webhook_bad_signature(config, store, carrier, sms):
    store.add(make_transaction(protected_data=LEGS))

    with _create_client(config, store, carrier, sms) as client:
        resp = _post_event(
            client, tracking_event("9400", "TRANSIT"), signature="nope"
        )

    assert resp.status_code == 403
    assert resp.json()["code"] == "invalid_signature"
    assert sms.sent == []


def test_tracking_webhook_malformed(config, store, carrier, sms):
    body = b'{"event": "track_updated"}'

    with _create_client(config, store, carrier, sms) as client:
        resp = _post_event(client, body)

    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_webhook"


def test_tracking_webhook_unknown_tracking(config, store, carrier, sms):
    with _create_client(config, store, carrier, sms) as client:
        resp = _post_event(client, tracking_event("UNKNOWN", "DELIVERED"))

    assert resp.status_code == 404
    assert resp.json()["code"] == "transaction_not_found"


def test_tracking_webhook_missing_phone(config, store, carrier, sms):
    store.add(
        make_transaction(protected_data={**LEGS, "customerPhone": ""})
    )

    with _create_client(config, store, carrier, sms) as client:
        resp = _post_event(client, tracking_event("9400", "TRANSIT"))

    assert resp.status_code == 400
    assert resp.json()["code"] == "missing_contact"


def test_tracking_webhook_ignored_status(config, store, carrier, sms):
    store.add(make_transaction(protected_data=LEGS))

    with _create_client(config, store, carrier, sms) as client:
        resp = _post_event(client, tracking_event("9400", "PRE_TRANSIT"))

    assert resp.status_code == 200
    assert resp.json()["reason"] == "status_not_actionable"


def test_label_job_is_queued_and_drained(config, store, carrier, sms):
    store.add(make_transaction())

    with _create_client(config, store, carrier, sms) as client:
        resp = client.post("/transactions/tx-1/labels")
        assert resp.status_code == 202
        assert resp.json() == {"transaction_id": "tx-1", "status": "queued"}

    stored = store.records["tx-1"].protected_data
    assert stored["outbound"]["trackingNumber"] == "TRK1"
    assert stored["return"]["trackingNumber"] == "TRK2"
    assert sent_tags(sms) == [
        "label_ready_to_lender",
        "label_created_to_borrower",
    ]


def test_label_job_for_unknown_transaction(config, store, carrier, sms):
    with _create_client(config, store, carrier, sms) as client:
        resp = client.post("/transactions/missing/labels")

    assert resp.status_code == 404
    assert carrier.calls == 0


def test_ship_by(config, store, carrier, sms):
    store.add(make_transaction())

    with _create_client(config, store, carrier, sms) as client:
        resp = client.get("/transactions/tx-1/ship-by")

    assert resp.status_code == 200
    data = resp.json()
    assert data["ship_by"].startswith("2025-01-18T00:00:00")
    assert data["ship_by_label"] == "Jan 18th"
    assert data["lead_days"] == 2
    assert data["mode"] == "static"


def test_ship_by_without_booking(config, store, carrier, sms):
    store.add(make_transaction(booking_start=None))

    with _create_client(config, store, carrier, sms) as client:
        data = client.get("/transactions/tx-1/ship-by").json()

    assert data["ship_by"] is None
    assert data["ship_by_label"] is None


def test_reminder_job(config, store, carrier, sms):
    store.add(make_transaction())

    with _create_client(config, store, carrier, sms) as client:
        resp = client.post("/jobs/ship-by-reminders")

    assert resp.status_code == 200
    assert resp.json() == {"scanned": 1, "sent": 0, "skipped": 1, "failed": 0}


def test_health(config, store, carrier, sms):
    with _create_client(config, store, carrier, sms) as client:
        resp = client.get("/fulfillment/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "pending_jobs": 0, "failed_jobs": 0}


def test_short_link_redirect(config, store, carrier, sms):
    with _create_client(
        config, store, carrier, sms, shortener=ResolvingShortener()
    ) as client:
        found = client.get("/r/abc123ef", follow_redirects=False)
        missing = client.get("/r/zzzzzzzz", follow_redirects=False)

    assert found.status_code == 302
    assert found.headers["location"] == "https://labels.example/1.png"
    assert missing.status_code == 404


def test_short_link_without_shortener(config, store, carrier, sms):
    with _create_client(config, store, carrier, sms) as client:
        resp = client.get("/r/abc123ef", follow_redirects=False)

    assert resp.status_code == 404


def test_return_reminder_job(config, store, carrier, sms):
    store.add(
        make_transaction(
            protected_data={
                **LEGS,
                "return": {"carrier": "USPS", "trackingNumber": "9401"},
            },
        )
    )

    with _create_client(config, store, carrier, sms) as client:
        resp = client.post("/jobs/return-reminders")

    assert resp.status_code == 200
    assert resp.json() == {"scanned": 1, "sent": 0, "skipped": 1, "failed": 0}
