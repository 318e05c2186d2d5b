"""HTTP client tests against mocked transports."""

from __future__ import annotations

import base64
import json
from urllib.parse import parse_qs

import httpx
import pytest

from fastapi_rentalship.clients.mapbox import MapboxGeocoder
from fastapi_rentalship.clients.shippo import ShippoClient
from fastapi_rentalship.clients.twilio import (
    DryRunSmsGateway,
    TwilioSmsGateway,
)
from fastapi_rentalship.exceptions import (
    CarrierCommunicationError,
    SmsDeliveryError,
)
from fastapi_rentalship.types import Coordinates


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Shippo
# ---------------------------------------------------------------------------


async def test_shippo_create_shipment_payload() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"status": "SUCCESS", "rates": []})

    shippo = ShippoClient(
        "shippo_test_abc",
        base_url="https://shippo.test/",
        client=_client(handler),
    )
    result = await shippo.create_shipment({"zip": "1"}, {"zip": "2"}, {"w": 1})

    assert result == {"status": "SUCCESS", "rates": []}
    request = seen[0]
    assert str(request.url) == "https://shippo.test/shipments/"
    assert request.headers["Authorization"] == "ShippoToken shippo_test_abc"
    assert json.loads(request.content) == {
        "address_from": {"zip": "1"},
        "address_to": {"zip": "2"},
        "parcels": [{"w": 1}],
        "async": False,
    }


async def test_shippo_purchase_label_merges_options() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"status": "SUCCESS"})

    shippo = ShippoClient("t", client=_client(handler))
    await shippo.purchase_label(
        "rate-1", {"label_file_type": "PNG", "metadata": "{}"}
    )

    assert seen[0] == {
        "rate": "rate-1",
        "async": False,
        "label_file_type": "PNG",
        "metadata": "{}",
    }


async def test_shippo_http_error_is_communication_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    shippo = ShippoClient("t", client=_client(handler))

    with pytest.raises(CarrierCommunicationError) as exc_info:
        await shippo.purchase_label("rate-1", {})

    assert exc_info.value.status_code == 503


async def test_shippo_transport_error_is_communication_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    shippo = ShippoClient("t", client=_client(handler))

    with pytest.raises(CarrierCommunicationError, match="failed"):
        await shippo.create_shipment({}, {}, {})


async def test_shippo_timeout_is_communication_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    shippo = ShippoClient("t", client=_client(handler))

    with pytest.raises(CarrierCommunicationError, match="timed out"):
        await shippo.create_shipment({}, {}, {})


async def test_shippo_non_json_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>")

    shippo = ShippoClient("t", client=_client(handler))

    with pytest.raises(CarrierCommunicationError, match="non-JSON"):
        await shippo.create_shipment({}, {}, {})


# ---------------------------------------------------------------------------
# Mapbox
# ---------------------------------------------------------------------------


async def test_mapbox_geocode() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200, json={"features": [{"center": [-122.39, 37.79]}]}
        )

    geocoder = MapboxGeocoder("pk.test", client=_client(handler))

    assert await geocoder.geocode(" 94105 ") == Coordinates(
        lat=37.79, lng=-122.39
    )
    params = seen[0].url.params
    assert seen[0].url.path.endswith("/94105.json")
    assert params["types"] == "postcode"
    assert params["access_token"] == "pk.test"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, json={"features": []}),
        httpx.Response(401, json={"message": "Not Authorized"}),
        httpx.Response(200, text="nope"),
        httpx.Response(200, json={"features": [{"center": [1.0]}]}),
    ],
)
async def test_mapbox_failures_return_none(response) -> None:
    geocoder = MapboxGeocoder("pk.test", client=_client(lambda r: response))

    assert await geocoder.geocode("00000") is None


# ---------------------------------------------------------------------------
# Twilio
# ---------------------------------------------------------------------------


async def test_twilio_send_form_and_auth() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"sid": "SM123"})

    gateway = TwilioSmsGateway(
        account_sid="AC1",
        auth_token="secret",
        messaging_service_sid="MG1",
        status_callback_url="https://app.example/twilio/status",
        client=_client(handler),
    )
    receipt = await gateway.send(
        "(415) 555-0100", "hello", {"tag": "item_shipped_to_borrower"}
    )

    assert receipt.message_id == "SM123"
    request = seen[0]
    assert request.url.path == "/2010-04-01/Accounts/AC1/Messages.json"
    form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
    assert form == {
        "To": "+14155550100",
        "Body": "hello",
        "MessagingServiceSid": "MG1",
        "StatusCallback": "https://app.example/twilio/status",
    }
    expected = base64.b64encode(b"AC1:secret").decode()
    assert request.headers["Authorization"] == f"Basic {expected}"


async def test_twilio_uses_from_number_without_service() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(parse_qs(request.content.decode()))
        return httpx.Response(201, json={"sid": "SM1"})

    gateway = TwilioSmsGateway(
        account_sid="AC1",
        auth_token="secret",
        from_number="+15550001111",
        client=_client(handler),
    )
    await gateway.send("+14155550100", "hi", {})

    assert seen[0]["From"] == ["+15550001111"]
    assert "MessagingServiceSid" not in seen[0]


async def test_twilio_rejection_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"message": "unsubscribed"})

    gateway = TwilioSmsGateway(
        account_sid="AC1",
        auth_token="secret",
        from_number="+15550001111",
        client=_client(handler),
    )

    with pytest.raises(SmsDeliveryError, match="unsubscribed"):
        await gateway.send("+14155550100", "hi", {})


async def test_twilio_invalid_number_is_not_sent() -> None:
    calls = []
    gateway = TwilioSmsGateway(
        account_sid="AC1",
        auth_token="secret",
        from_number="+15550001111",
        client=_client(lambda r: calls.append(r) or httpx.Response(201)),
    )

    with pytest.raises(SmsDeliveryError):
        await gateway.send("123", "hi", {})
    assert calls == []


def test_twilio_needs_a_sender() -> None:
    with pytest.raises(ValueError):
        TwilioSmsGateway(account_sid="AC1", auth_token="secret")


async def test_dry_run_gateway() -> None:
    gateway = DryRunSmsGateway()

    receipt = await gateway.send("+14155550100", "hello", {"tag": "x"})

    assert receipt.dry_run is True
    assert receipt.message_id.startswith("dry-run-")
    assert gateway.sent[0]["body"] == "hello"
