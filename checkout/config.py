import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from checkout.errors import ConfigurationError, InvalidPhoneNumber
from checkout.phone import normalize_phone

load_dotenv()

GATEWAY_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

KNOWN_CHANNELS = ("email", "whatsapp")
FULFILLMENT_MODES = ("inline", "queue")


@dataclass(frozen=True)
class GatewaySettings:
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_url: str
    environment: str = "sandbox"
    timeout_seconds: float = 15.0
    transaction_type: str = "CustomerPayBillOnline"

    @property
    def base_url(self) -> str:
        return GATEWAY_BASE_URLS[self.environment]


@dataclass(frozen=True)
class EmailSettings:
    api_key: str
    sender: str
    owner_email: str


@dataclass(frozen=True)
class WhatsAppSettings:
    token: str
    phone_id: str
    owner_phone: str


@dataclass(frozen=True)
class Settings:
    gateway: GatewaySettings
    brand_name: str
    country_code: str = "254"
    email: Optional[EmailSettings] = None
    whatsapp: Optional[WhatsAppSettings] = None
    database_url: str = "sqlite+aiosqlite:///./checkout.db"
    fulfillment_mode: str = "inline"
    rabbitmq_url: Optional[str] = None
    log_level: str = "INFO"
    channels: tuple = field(default=KNOWN_CHANNELS)

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        """Build settings from the environment, failing on anything missing.

        Every missing variable is collected first so that the error names
        all of them at once instead of one per restart.
        """
        env = os.environ if environ is None else environ
        missing = []
        invalid = []

        def required(name):
            value = (env.get(name) or "").strip()
            if not value:
                missing.append(name)
            return value

        def optional(name, default):
            value = (env.get(name) or "").strip()
            return value or default

        gateway_environment = optional("MPESA_ENVIRONMENT", "sandbox").lower()
        if gateway_environment not in GATEWAY_BASE_URLS:
            invalid.append(f"MPESA_ENVIRONMENT={gateway_environment!r} (expected sandbox or production)")

        callback_url = required("MPESA_CALLBACK_URL")
        if callback_url and not callback_url.startswith("https://"):
            invalid.append("MPESA_CALLBACK_URL must be an https:// URL")

        timeout_raw = optional("MPESA_TIMEOUT_SECONDS", "15")
        try:
            timeout_seconds = float(timeout_raw)
            if timeout_seconds <= 0:
                raise ValueError(timeout_raw)
        except ValueError:
            invalid.append(f"MPESA_TIMEOUT_SECONDS={timeout_raw!r} (expected a positive number)")
            timeout_seconds = 15.0

        gateway = GatewaySettings(
            consumer_key=required("MPESA_CONSUMER_KEY"),
            consumer_secret=required("MPESA_CONSUMER_SECRET"),
            shortcode=required("MPESA_SHORTCODE"),
            passkey=required("MPESA_PASSKEY"),
            callback_url=callback_url,
            environment=gateway_environment if gateway_environment in GATEWAY_BASE_URLS else "sandbox",
            timeout_seconds=timeout_seconds,
            transaction_type=optional("MPESA_TRANSACTION_TYPE", "CustomerPayBillOnline"),
        )

        country_code = optional("COUNTRY_CODE", "254")

        channels = tuple(
            c.strip().lower() for c in optional("NOTIFICATION_CHANNELS", ",".join(KNOWN_CHANNELS)).split(",") if c.strip()
        )
        for channel in channels:
            if channel not in KNOWN_CHANNELS:
                invalid.append(f"NOTIFICATION_CHANNELS contains unknown channel {channel!r}")

        email = None
        if "email" in channels:
            email = EmailSettings(
                api_key=required("SENDGRID_API_KEY"),
                sender=required("SENDGRID_FROM"),
                owner_email=required("OWNER_EMAIL"),
            )

        whatsapp = None
        if "whatsapp" in channels:
            owner_phone = required("OWNER_WHATSAPP")
            if owner_phone:
                try:
                    owner_phone = normalize_phone(owner_phone, country_code)
                except InvalidPhoneNumber:
                    invalid.append(f"OWNER_WHATSAPP={owner_phone!r} (not a valid phone number)")
            whatsapp = WhatsAppSettings(
                token=required("WHATSAPP_TOKEN"),
                phone_id=required("WHATSAPP_PHONE_ID"),
                owner_phone=owner_phone,
            )

        fulfillment_mode = optional("FULFILLMENT_MODE", "inline").lower()
        if fulfillment_mode not in FULFILLMENT_MODES:
            invalid.append(f"FULFILLMENT_MODE={fulfillment_mode!r} (expected inline or queue)")
        rabbitmq_url = required("RABBITMQ_URL") if fulfillment_mode == "queue" else env.get("RABBITMQ_URL")

        brand_name = required("BRAND_NAME")

        if missing or invalid:
            problems = []
            if missing:
                problems.append("missing " + ", ".join(missing))
            problems.extend(invalid)
            raise ConfigurationError("Invalid configuration: " + "; ".join(problems))

        return cls(
            gateway=gateway,
            brand_name=brand_name,
            country_code=country_code,
            email=email,
            whatsapp=whatsapp,
            database_url=optional("DATABASE_URL", "sqlite+aiosqlite:///./checkout.db"),
            fulfillment_mode=fulfillment_mode,
            rabbitmq_url=rabbitmq_url,
            log_level=optional("LOG_LEVEL", "INFO").upper(),
            channels=channels,
        )


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
