"""Router factory for fastapi-rentalship."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from fastapi import APIRouter, FastAPI

from fastapi_rentalship.clients.mapbox import MapboxGeocoder
from fastapi_rentalship.clients.shippo import ShippoClient
from fastapi_rentalship.clients.twilio import (
    DryRunSmsGateway,
    TwilioSmsGateway,
)
from fastapi_rentalship.config import RentalShipConfig
from fastapi_rentalship.deadline import ShipByCalculator, ZipCoordinateCache
from fastapi_rentalship.exceptions import register_exception_handlers
from fastapi_rentalship.labels import LabelOrchestrator
from fastapi_rentalship.notifications import DedupCache, NotificationDispatcher
from fastapi_rentalship.persistence import ProtectedDataReconciler
from fastapi_rentalship.protocols import (
    CarrierClient,
    Geocoder,
    LinkShortener,
    SmsGateway,
    TransactionStore,
)
from fastapi_rentalship.routes.labels import router as labels_router
from fastapi_rentalship.routes.shortlinks import router as shortlinks_router
from fastapi_rentalship.routes.webhooks import router as webhooks_router
from fastapi_rentalship.tasks import BackgroundJobRunner
from fastapi_rentalship.tracking import TrackingWebhookHandler

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


@dataclass
class FulfillmentComponents:
    """Process-wide pipeline objects shared by all requests."""

    config: RentalShipConfig
    store: TransactionStore
    reconciler: ProtectedDataReconciler
    dispatcher: NotificationDispatcher
    ship_by: ShipByCalculator
    labels: LabelOrchestrator
    tracking: TrackingWebhookHandler
    runner: BackgroundJobRunner
    shortener: LinkShortener | None = None
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def aclose(self) -> None:
        await self.runner.drain()
        for close in self.closers:
            await close()


def _default_shortener(
    config: RentalShipConfig,
    session_factory: async_sessionmaker[AsyncSession] | None,
) -> LinkShortener | None:
    if session_factory is None or not config.shortlink_secret:
        logger.info("No short link store configured; SMS use full URLs")
        return None
    from fastapi_rentalship.contrib.sqlalchemy.shortener import (
        SQLAlchemyLinkShortener,
    )

    return SQLAlchemyLinkShortener(
        session_factory,
        secret=config.shortlink_secret,
        base_url=config.shortlink_base_url,
        ttl_days=config.shortlink_ttl_days,
    )


def _default_sms(config: RentalShipConfig) -> SmsGateway:
    if config.sms_dry_run:
        return DryRunSmsGateway()
    if not (config.twilio_account_sid and config.twilio_auth_token):
        logger.warning("Twilio credentials missing; SMS runs in dry-run mode")
        return DryRunSmsGateway()
    return TwilioSmsGateway(
        account_sid=config.twilio_account_sid,
        auth_token=config.twilio_auth_token,
        from_number=config.twilio_from_number,
        messaging_service_sid=config.twilio_messaging_service_sid,
        status_callback_url=config.twilio_status_callback_url,
        timeout=config.sms_timeout_seconds,
    )


def build_components(
    *,
    config: RentalShipConfig,
    store: TransactionStore,
    carrier: CarrierClient | None = None,
    sms: SmsGateway | None = None,
    geocoder: Geocoder | None = None,
    shortener: LinkShortener | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FulfillmentComponents:
    """Wire the pipeline; missing collaborators are built from config."""
    closers: list[Callable[[], Awaitable[None]]] = []

    if carrier is None and config.shippo_api_token:
        shippo = ShippoClient(
            config.shippo_api_token,
            base_url=config.shippo_base_url,
            timeout=config.carrier_timeout_seconds,
        )
        closers.append(shippo.aclose)
        carrier = shippo
    if sms is None:
        sms = _default_sms(config)
        closers.append(sms.aclose)
    if geocoder is None and config.mapbox_token:
        mapbox = MapboxGeocoder(
            config.mapbox_token, timeout=config.geocode_timeout_seconds
        )
        closers.append(mapbox.aclose)
        geocoder = mapbox
    if not config.shortlink_enabled:
        shortener = None
    elif shortener is None:
        shortener = _default_shortener(config, session_factory)

    reconciler = ProtectedDataReconciler(
        store,
        retries=config.persist_retries,
        backoff_ms=config.persist_backoff_ms,
    )
    dispatcher = NotificationDispatcher(
        sms=sms,
        reconciler=reconciler,
        dedup=DedupCache(
            ttl_seconds=config.dedup_ttl_seconds,
            sweep_seconds=config.dedup_sweep_seconds,
        ),
    )
    ship_by = ShipByCalculator(
        geocoder=geocoder, cache=ZipCoordinateCache(), tz=config.timezone()
    )
    return FulfillmentComponents(
        config=config,
        store=store,
        reconciler=reconciler,
        dispatcher=dispatcher,
        ship_by=ship_by,
        labels=LabelOrchestrator(
            config=config,
            store=store,
            carrier=carrier,
            reconciler=reconciler,
            dispatcher=dispatcher,
            ship_by=ship_by,
            shortener=shortener,
        ),
        tracking=TrackingWebhookHandler(
            config=config,
            store=store,
            dispatcher=dispatcher,
            shortener=shortener,
        ),
        runner=BackgroundJobRunner(),
        shortener=shortener,
        closers=closers,
    )


def create_fulfillment_router(
    *,
    config: RentalShipConfig,
    store: TransactionStore,
    carrier: CarrierClient | None = None,
    sms: SmsGateway | None = None,
    geocoder: Geocoder | None = None,
    shortener: LinkShortener | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> APIRouter:
    """Create a configured API router.

    ``session_factory`` backs the bundled short link store when no
    ``shortener`` is given.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        components = build_components(
            config=config,
            store=store,
            carrier=carrier,
            sms=sms,
            geocoder=geocoder,
            shortener=shortener,
            session_factory=session_factory,
        )
        app.state.rentalship = components
        register_exception_handlers(app)
        try:
            yield
        finally:
            await components.aclose()

    router = APIRouter(lifespan=lifespan)
    router.include_router(webhooks_router)
    router.include_router(labels_router)
    router.include_router(shortlinks_router)
    return router
