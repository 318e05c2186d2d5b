"""Runtime configuration for the fulfillment pipeline."""

from __future__ import annotations

from typing import Annotated, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from fastapi_rentalship.links import LinkPolicy
from fastapi_rentalship.types import LeadMode, LinkMode, Parcel

CsvList = Annotated[list[str], NoDecode]


def _split_csv(value: object) -> object:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class RentalShipConfig(BaseSettings):
    """Environment-driven settings (``RENTALSHIP_`` prefix)."""

    model_config = SettingsConfigDict(env_prefix="RENTALSHIP_")

    # Carrier integration
    shippo_api_token: str | None = None
    shippo_base_url: str = "https://api.goshippo.com"
    shippo_mode: Literal["test", "live"] | None = None
    carrier_timeout_seconds: float = 30.0
    preferred_providers: CsvList = Field(
        default_factory=lambda: ["UPS", "USPS"]
    )
    qr_supported_carriers: CsvList = Field(default_factory=lambda: ["USPS"])
    label_file_type: str = "PNG"
    include_return_label: bool = True
    notify_borrower_on_label: bool = True

    # Link policy
    ups_link_mode: CsvList = Field(default_factory=lambda: ["qr", "label"])
    usps_link_mode: CsvList = Field(default_factory=lambda: ["label"])
    default_link_mode: CsvList = Field(default_factory=lambda: ["label"])
    allow_tracking_links: bool = False

    # Ship-by deadline
    ship_lead_mode: LeadMode = LeadMode.STATIC
    ship_lead_days: int = Field(default=2, ge=0)
    ship_lead_max_days: int = Field(default=5, ge=1)
    ship_timezone: str = "UTC"
    mapbox_token: str | None = None
    geocode_timeout_seconds: float = 5.0

    # Webhooks
    webhook_secret: str | None = None
    recent_transactions_scan_limit: int = Field(default=100, ge=1)

    # SMS
    sms_dry_run: bool = False
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None
    twilio_messaging_service_sid: str | None = None
    twilio_status_callback_url: str | None = None
    sms_timeout_seconds: float = 10.0
    brand_name: str = "Rentals"

    # Short links
    shortlink_enabled: bool = True
    shortlink_base_url: str = "/r"
    shortlink_secret: str | None = None
    shortlink_ttl_days: int = 21
    shortlink_timeout_seconds: float = 2.0

    # Persistence and idempotency
    persist_retries: int = Field(default=3, ge=0)
    persist_backoff_ms: int = Field(default=250, ge=0)
    dedup_ttl_seconds: int = 24 * 60 * 60
    dedup_sweep_seconds: int = 60 * 60

    # Default parcel (inches / pounds)
    parcel_length: float = 12
    parcel_width: float = 10
    parcel_height: float = 1
    parcel_weight: float = 0.75

    @field_validator(
        "preferred_providers", "qr_supported_carriers", mode="before"
    )
    @classmethod
    def _carrier_list(cls, value: object) -> object:
        value = _split_csv(value)
        if isinstance(value, list):
            return [str(item).strip().upper() for item in value]
        return value

    @field_validator(
        "ups_link_mode", "usps_link_mode", "default_link_mode", mode="before"
    )
    @classmethod
    def _link_mode_list(cls, value: object) -> object:
        value = _split_csv(value)
        if isinstance(value, list):
            modes = [str(item).strip().lower() for item in value]
            for mode in modes:
                LinkMode(mode)
            return modes
        return value

    @field_validator("ship_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown time zone {value!r}") from exc
        return value

    def link_policy(self) -> LinkPolicy:
        return LinkPolicy(
            link_modes={
                "UPS": tuple(LinkMode(m) for m in self.ups_link_mode),
                "USPS": tuple(LinkMode(m) for m in self.usps_link_mode),
            },
            default_modes=tuple(LinkMode(m) for m in self.default_link_mode),
            allow_tracking=self.allow_tracking_links,
        )

    def default_parcel(self) -> Parcel:
        return Parcel(
            length=self.parcel_length,
            width=self.parcel_width,
            height=self.parcel_height,
            weight=self.parcel_weight,
        )

    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.ship_timezone)
