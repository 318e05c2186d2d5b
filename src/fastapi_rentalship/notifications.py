"""Idempotent SMS dispatch.

A message class (``EventTag``) is sent at most once per transaction. Two
layers guard that:

1. the durable ``shippingNotification.<tag>.sent`` flag on the transaction;
2. a process-local ``DedupCache`` claim taken before the first ``await`` on
   the send path, so two deliveries racing each other within one process
   cannot both reach the gateway before either has written the flag.

The durable flag is written only after the gateway accepted the message.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from fastapi_rentalship.exceptions import NoCompliantLinkError
from fastapi_rentalship.persistence import (
    PatchGuard,
    ProtectedDataReconciler,
    deep_merge,
)
from fastapi_rentalship.phone import mask_phone
from fastapi_rentalship.protocols import LinkShortener, SmsGateway
from fastapi_rentalship.types import EventTag, NotificationStatus

logger = logging.getLogger(__name__)

Compose = Callable[[], Awaitable[str]]


class DedupCache:
    """Short-lived in-memory claims keyed by a stable fingerprint.

    Entries expire after ``ttl_seconds``; expired entries are swept lazily,
    at most once per ``sweep_seconds``.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 24 * 60 * 60,
        sweep_seconds: float = 60 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.sweep_seconds = sweep_seconds
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._last_sweep = clock()

    def _maybe_sweep(self) -> None:
        if self._clock() - self._last_sweep >= self.sweep_seconds:
            self.sweep()

    def sweep(self) -> int:
        now = self._clock()
        expired = [
            key
            for key, stamped in self._entries.items()
            if now - stamped >= self.ttl_seconds
        ]
        for key in expired:
            del self._entries[key]
        self._last_sweep = now
        return len(expired)

    def seen(self, key: str) -> bool:
        self._maybe_sweep()
        stamped = self._entries.get(key)
        if stamped is None:
            return False
        return self._clock() - stamped < self.ttl_seconds

    def claim(self, key: str) -> bool:
        """Atomically mark ``key``; ``False`` if it is already held."""
        if self.seen(key):
            return False
        self._entries[key] = self._clock()
        return True

    def release(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


async def shorten_or_original(
    shortener: LinkShortener | None,
    url: str,
    *,
    timeout: float = 2.0,
) -> str:
    """Best-effort short link; any failure yields ``url`` unchanged."""
    if shortener is None:
        return url
    try:
        short = await asyncio.wait_for(shortener.shorten(url), timeout)
    except Exception as exc:
        logger.warning("Link shortening failed, using original URL: %s", exc)
        return url
    return short or url


def notification_sent(
    protected_data: Mapping[str, Any], tag: EventTag
) -> bool:
    notifications = protected_data.get("shippingNotification") or {}
    entry = notifications.get(str(tag)) or {}
    return bool(entry.get("sent"))


class NotificationDispatcher:
    """Sends one SMS per ``(transaction, event tag)``."""

    def __init__(
        self,
        *,
        sms: SmsGateway,
        reconciler: ProtectedDataReconciler,
        dedup: DedupCache | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
    ) -> None:
        self.sms = sms
        self.reconciler = reconciler
        self.dedup = dedup if dedup is not None else DedupCache()
        self._now = now

    async def _already_recorded(
        self, transaction_id: str, tag: EventTag
    ) -> bool:
        try:
            record = await self.reconciler.store.get(transaction_id)
        except Exception as exc:
            logger.warning(
                "Could not read notification state for tx %s: %s",
                transaction_id,
                exc,
            )
            return False
        return notification_sent(record.protected_data, tag)

    async def notify(
        self,
        transaction_id: str,
        event_tag: EventTag,
        phone: str | None,
        compose: Compose,
        *,
        fingerprint: str | None = None,
        record_patch: Mapping[str, Any] | None = None,
        record_guard: PatchGuard | None = None,
    ) -> NotificationStatus:
        """Compose and send ``event_tag`` unless it already went out.

        ``record_patch`` is merged into the transaction together with the
        sent flag, after a confirmed send. ``record_guard`` is handed to the
        reconciler to re-check that patch against the stored record.
        """
        key = fingerprint or f"{transaction_id}:{event_tag}"

        if await self._already_recorded(transaction_id, event_tag):
            logger.info(
                "Skipping %s for tx %s: already recorded",
                event_tag,
                transaction_id,
            )
            return NotificationStatus.SKIPPED

        if not self.dedup.claim(key):
            logger.info(
                "Skipping %s for tx %s: in-flight or recently sent (%s)",
                event_tag,
                transaction_id,
                key,
            )
            return NotificationStatus.SKIPPED

        if not phone:
            self.dedup.release(key)
            logger.warning(
                "No phone for %s on tx %s, not sending",
                event_tag,
                transaction_id,
            )
            return NotificationStatus.FAILED

        try:
            body = await compose()
        except NoCompliantLinkError as exc:
            self.dedup.release(key)
            logger.error(
                "Refusing to send %s for tx %s: %s",
                event_tag,
                transaction_id,
                exc,
            )
            return NotificationStatus.FAILED

        try:
            receipt = await self.sms.send(
                phone,
                body,
                {"transactionId": transaction_id, "tag": str(event_tag)},
            )
        except Exception as exc:
            self.dedup.release(key)
            logger.error(
                "SMS %s to %s for tx %s failed: %s",
                event_tag,
                mask_phone(phone),
                transaction_id,
                exc,
            )
            return NotificationStatus.FAILED

        logger.info(
            "SMS %s sent to %s for tx %s (message %s%s)",
            event_tag,
            mask_phone(phone),
            transaction_id,
            receipt.message_id,
            ", dry run" if receipt.dry_run else "",
        )

        patch = {
            "shippingNotification": {
                str(event_tag): {
                    "sent": True,
                    "sentAt": self._now().isoformat(),
                    "messageId": receipt.message_id,
                }
            }
        }
        if record_patch:
            patch = deep_merge(record_patch, patch)
        result = await self.reconciler.merge_protected_fields(
            transaction_id,
            patch,
            source=str(event_tag),
            guard=record_guard,
        )
        if not result.success:
            logger.warning(
                "Sent %s for tx %s but could not record it: %s",
                event_tag,
                transaction_id,
                result.error,
            )
        return NotificationStatus.SENT
