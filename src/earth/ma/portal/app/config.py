"""
Configuration Module for the Ma Earth portal

This module defines the configuration system for the portal, using Pydantic for settings
validation and dependency injection through AppKeys.

The configuration follows these principles:
1. Environment-based configuration with sensible defaults
2. Strong validation and typing through Pydantic
3. Dependency injection pattern using aiohttp's app context
4. Secrets are required and never defaulted

The Settings class serves as the central configuration point, loaded from environment
variables. All application components access settings and shared resources through typed
AppKeys to maintain clean dependency injection.

Key configuration areas include:
- Service identification and networking
- AT Protocol endpoints
- Session, CSRF and encryption secrets
- Redis connection
- Wallet service and spending limits
- Email delivery
- Monitoring and observability
"""

import asyncio
import base64
from decimal import Decimal
import logging
from typing import Final, Optional

from aiohttp import ClientSession, web
from cryptography.fernet import Fernet
from pydantic import AliasChoices, Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings
from redis import asyncio as redis

from earth.ma.portal.app.metrics import MetricsClient
from earth.ma.portal.model.health import HealthGauge
from earth.ma.portal.security.csrf import CsrfTokenCodec
from earth.ma.portal.security.ratelimit import RateLimiter
from earth.ma.portal.security.session import SessionStore
from earth.ma.portal.twofa.email import EmailSender
from earth.ma.portal.twofa.passkey import PasskeyCeremony
from earth.ma.portal.twofa.store import TwoFactorStore
from earth.ma.portal.wallet.limits import DailySpendTracker

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """
    Application settings for the portal.

    Values are read from environment variables named after each field (case-insensitive),
    with aliases where the deployment uses a different name. ``session_secret`` and
    ``csrf_secret`` have no defaults: the service refuses to start without them.
    """

    # Environment and debugging settings
    debug: bool = False
    """
    Enable debug mode for verbose logging and development features.
    Set with DEBUG=true environment variable.
    """

    # Network and service identification settings
    http_port: int = Field(alias="port", default=3000)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    public_url: str = "http://localhost:3000"
    """
    Externally visible base URL, used for the OAuth client id and redirect URI.
    Set with PUBLIC_URL environment variable.
    """

    # AT Protocol endpoints
    pds_url: str = "https://pds.certs.network"
    """
    Default PDS used for email-based logins.
    Set with PDS_URL environment variable.
    """

    auth_endpoint: str = "https://auth.pds.certs.network/oauth/authorize"
    """
    Authorization endpoint of the default PDS.
    Set with AUTH_ENDPOINT environment variable.
    """

    plc_directory_url: str = "https://plc.directory"
    """
    Base URL of the PLC directory for resolving did:plc DIDs.
    Set with PLC_DIRECTORY_URL environment variable.
    """

    handle_resolver_url: str = "https://bsky.social"
    """
    XRPC service tried first when resolving handles.
    Set with HANDLE_RESOLVER_URL environment variable.
    """

    # Security and cryptography settings
    session_secret: str
    """
    HMAC key for signing session identifiers (required, at least 32 characters).
    Set with SESSION_SECRET environment variable.
    """

    csrf_secret: str
    """
    HMAC key for CSRF tokens (required, at least 32 characters).
    Set with CSRF_SECRET environment variable.
    """

    encryption_key: Fernet = Fernet(Fernet.generate_key())
    """
    Fernet key encrypting two-factor secrets at rest.
    Can be set to a Fernet object or base64-encoded key string.
    Set with ENCRYPTION_KEY environment variable.
    """

    # Cache connection
    redis_dsn: RedisDsn = Field(
        "redis://localhost:6379/0?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string for two-factor state.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    # Monitoring and error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    metrics_backend: str = "none"
    """
    Metrics backend, 'telegraf' or 'none'.
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    statsd_prefix: str = "portal"
    """
    Prefix for all StatsD metrics from this service.
    Set with STATSD_PREFIX environment variable.
    """

    # Wallet service
    wallet_service_url: Optional[str] = None
    """
    Base URL of the wallet microservice. Wallet routes answer 503 when unset.
    Set with WALLET_SERVICE_URL environment variable.
    """

    wallet_api_key: Optional[str] = None
    """
    API key sent to the wallet microservice in X-API-Key.
    Set with WALLET_API_KEY environment variable.
    """

    rate_limit_transaction: int = 5
    """
    Transactions allowed per user per minute.
    Set with RATE_LIMIT_TRANSACTION environment variable.
    """

    max_transaction_amount: Decimal = Decimal("0.1")
    """
    Largest amount (ETH) allowed in a single transaction.
    Set with MAX_TRANSACTION_AMOUNT environment variable.
    """

    max_daily_amount: Decimal = Decimal("1.0")
    """
    Largest total (ETH) a user may send per UTC day.
    Set with MAX_DAILY_AMOUNT environment variable.
    """

    # Email delivery
    email_api_url: Optional[str] = None
    """
    Transactional email API endpoint. Email codes cannot be sent when unset.
    Set with EMAIL_API_URL environment variable.
    """

    email_api_key: Optional[str] = None
    """
    Bearer token for the email API.
    Set with EMAIL_API_KEY environment variable.
    """

    email_from: str = "Ma Earth <noreply@ma.earth>"
    """Sender address for verification emails"""

    # Passkeys
    passkey_rp_name: str = "Ma Earth"
    """
    Relying party name shown by the authenticator when registering a passkey. The
    relying party id and origin come from PUBLIC_URL.
    Set with PASSKEY_RP_NAME environment variable.
    """

    @field_validator("public_url", "pds_url", "plc_directory_url", "handle_resolver_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @field_validator("session_secret", "csrf_secret")
    @classmethod
    def check_secret_length(cls, v: str) -> str:
        if len(v) < MIN_SECRET_LENGTH:
            raise ValueError(f"secrets must be at least {MIN_SECRET_LENGTH} characters")
        return v

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Fernet:
        """
        Validate and process the encryption_key setting.

        This validator accepts either:
        - An existing Fernet object (for programmatic configuration)
        - A base64-encoded string containing a Fernet key

        Args:
            v: The input value to validate

        Returns:
            Fernet: A valid Fernet encryption object

        Raises:
            ValueError: If the input is neither a Fernet object nor a valid base64 key
        """
        if isinstance(v, Fernet):  # Already a Fernet instance, return it
            return v
        elif isinstance(v, str):  # Decode from a base64-encoded string
            key_data = base64.b64decode(v)
            return Fernet(key_data)
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that monitors service health"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

SessionStoreAppKey: Final = web.AppKey("session_store", SessionStore)
"""AppKey for the in-memory session store"""

RateLimiterAppKey: Final = web.AppKey("rate_limiter", RateLimiter)
"""AppKey for the token-bucket rate limiter"""

CsrfCodecAppKey: Final = web.AppKey("csrf_codec", CsrfTokenCodec)
"""AppKey for the CSRF token codec"""

TwoFactorStoreAppKey: Final = web.AppKey("twofa_store", TwoFactorStore)
"""AppKey for the Redis-backed two-factor store"""

EmailSenderAppKey: Final = web.AppKey("email_sender", EmailSender)
"""AppKey for the email sender, absent when email delivery is not configured"""

PasskeyCeremonyAppKey: Final = web.AppKey("passkey_ceremony", PasskeyCeremony)
"""AppKey for the WebAuthn ceremony"""

DailySpendAppKey: Final = web.AppKey("daily_spend", DailySpendTracker)
"""AppKey for the in-memory daily spend tracker"""
