"""Twilio SMS gateway and a dry-run stand-in."""

from __future__ import annotations

import logging
import uuid
from typing import Any

import httpx

from fastapi_rentalship.exceptions import SmsDeliveryError
from fastapi_rentalship.phone import mask_phone, normalize_phone_e164
from fastapi_rentalship.types import SmsReceipt

logger = logging.getLogger(__name__)

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"


class TwilioSmsGateway:
    """Sends SMS through the Twilio Messages REST endpoint."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str | None = None,
        messaging_service_sid: str | None = None,
        status_callback_url: str | None = None,
        timeout: float = 10.0,
        base_url: str = TWILIO_API_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not from_number and not messaging_service_sid:
            raise ValueError(
                "Twilio needs a sender number or a messaging service SID"
            )
        self._account_sid = account_sid
        self._from_number = from_number
        self._messaging_service_sid = messaging_service_sid
        self._status_callback_url = status_callback_url
        self._url = (
            f"{base_url.rstrip('/')}/Accounts/{account_sid}/Messages.json"
        )
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._auth = (account_sid, auth_token)

    async def send(
        self, phone: str, body: str, tags: dict[str, Any]
    ) -> SmsReceipt:
        to = normalize_phone_e164(phone)
        if not to:
            raise SmsDeliveryError(f"Invalid phone number {mask_phone(phone)}")

        form = {"To": to, "Body": body}
        if self._messaging_service_sid:
            form["MessagingServiceSid"] = self._messaging_service_sid
        else:
            form["From"] = self._from_number or ""
        if self._status_callback_url:
            form["StatusCallback"] = self._status_callback_url

        try:
            response = await self._client.post(
                self._url, data=form, auth=self._auth
            )
        except httpx.RequestError as exc:
            raise SmsDeliveryError(f"Twilio request failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                detail = response.json().get("message")
            except ValueError:
                detail = response.text[:200]
            raise SmsDeliveryError(
                f"Twilio rejected message ({response.status_code}): {detail}"
            )
        payload = response.json()
        logger.debug("Twilio accepted %s tags=%s", payload.get("sid"), tags)
        return SmsReceipt(message_id=str(payload.get("sid") or ""))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class DryRunSmsGateway:
    """Logs messages instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def send(
        self, phone: str, body: str, tags: dict[str, Any]
    ) -> SmsReceipt:
        message_id = f"dry-run-{uuid.uuid4().hex[:12]}"
        self.sent.append(
            {"phone": phone, "body": body, "tags": tags, "id": message_id}
        )
        logger.info(
            "[SMS dry run] to=%s tags=%s body=%r",
            mask_phone(phone),
            tags,
            body,
        )
        return SmsReceipt(message_id=message_id, dry_run=True)

    async def aclose(self) -> None:
        return None
