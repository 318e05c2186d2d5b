"""SQLAlchemy-backed short links for SMS.

Codes are a 6 character base62 id followed by the first 4 hex characters
of ``HMAC-SHA256(secret, id)``; a code whose signature does not verify is
rejected without touching the database.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import string
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fastapi_rentalship.contrib.sqlalchemy.models import ShortLinkModel

logger = logging.getLogger(__name__)

BASE62 = string.digits + string.ascii_uppercase + string.ascii_lowercase
ID_LENGTH = 6
SIGNATURE_LENGTH = 4
MAX_ID_ATTEMPTS = 10


def _sign(link_id: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), link_id.encode(), hashlib.sha256)
    return digest.hexdigest()[:SIGNATURE_LENGTH]


class SQLAlchemyLinkShortener:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        secret: str | None,
        base_url: str = "/r",
        ttl_days: int = 21,
        now: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
    ) -> None:
        self.session_factory = session_factory
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.ttl = timedelta(days=ttl_days)
        self._now = now

    async def shorten(self, url: str) -> str | None:
        if not url or not self.secret:
            return None
        async with self.session_factory() as session:
            for _ in range(MAX_ID_ATTEMPTS):
                link_id = "".join(
                    secrets.choice(BASE62) for _ in range(ID_LENGTH)
                )
                if await session.get(ShortLinkModel, link_id) is None:
                    break
            else:
                logger.warning("Could not allocate a unique short link id")
                return None
            session.add(
                ShortLinkModel(
                    code=link_id, url=url, expires_at=self._now() + self.ttl
                )
            )
            await session.commit()
        return f"{self.base_url}/{link_id}{_sign(link_id, self.secret)}"

    async def resolve(self, code: str) -> str | None:
        """Target URL for ``code``; ``None`` if forged, unknown or expired."""
        if not self.secret or len(code) != ID_LENGTH + SIGNATURE_LENGTH:
            return None
        link_id, signature = code[:ID_LENGTH], code[ID_LENGTH:]
        if not hmac.compare_digest(_sign(link_id, self.secret), signature):
            logger.warning("Rejected short link with bad signature")
            return None
        async with self.session_factory() as session:
            link = await session.get(ShortLinkModel, link_id)
        if link is None:
            return None
        expires_at = link.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        if expires_at <= self._now():
            return None
        return link.url
