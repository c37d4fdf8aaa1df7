"""
Configuration Module for the Dashboard API

Settings are loaded from environment variables through pydantic-settings, with defaults suitable for a local
development stack. Shared resources (database engine, redis client, metrics client, ...) are created at startup
and handed to handlers through the typed AppKeys at the bottom of this module.

Key configuration areas include:
- Service identification, networking and CORS
- Database and cache connections
- Secrets for bearer tokens and stored provider credentials
- Google OAuth client registration
- Exchange API credentials
- Background processing and monitoring
"""

import asyncio
import base64
from datetime import timedelta
import logging
from typing import Annotated, Dict, Final, List, Optional, Tuple

from aiohttp import ClientSession, web
from cryptography.fernet import Fernet
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode
from redis import asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from finance.tradedash.api.app.metrics import MetricsClient
from finance.tradedash.api.model.health import HealthGauge
from finance.tradedash.api.trading.service import TradingService

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the dashboard API.

    Values come from environment variables (case insensitive). Aliases keep the common names working, for
    example the database can be configured with either DATABASE_URL or PG_DSN.
    """

    # Environment and debugging settings
    debug: bool = False
    """
    Enable debug mode: verbose logging, exception details in error responses and localhost CORS.
    Set with DEBUG=true environment variable.
    """

    environment: str = "development"
    """
    Deployment environment name. Anything other than "development" marks session cookies Secure.
    Set with ENVIRONMENT environment variable.
    """

    service_name: str = "tradedash-api"
    """Service name reported by the health and info endpoints."""

    service_version: str = "0.1.0"
    """Service version reported by the health and info endpoints."""

    http_port: int = Field(alias="port", default=8787)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    allowed_origins: Annotated[List[str], NoDecode] = [
        "http://localhost:8787",
        "http://127.0.0.1:3000",
        "http://localhost:3000",
    ]
    """
    Origins allowed to make credentialed cross-origin requests.
    Set with ALLOWED_ORIGINS environment variable as comma-separated values.
    """

    # Monitoring and error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    # Database and cache connections
    database_url: str = Field(
        "postgresql+asyncpg://postgres:password@db/tradedash",
        validation_alias=AliasChoices("database_url", "pg_dsn"),
    )
    """
    SQLAlchemy async connection string.
    Set with DATABASE_URL or PG_DSN environment variables.
    Default: postgresql+asyncpg://postgres:password@db/tradedash
    """

    redis_dsn: str = Field(
        "redis://valkey:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )
    """
    Redis connection string for OAuth state, rate limiting, subscriptions and background queues.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    # Security and cryptography settings
    jwt_secret: str = "change-me-in-production-tradedash-jwt"
    """
    Shared secret used to sign HS256 bearer tokens.
    Set with JWT_SECRET environment variable.
    """

    jwt_expiry: int = 86400
    """Bearer token lifetime in seconds. Default: 86400 (24 hours)"""

    encryption_key: Fernet = Fernet(Fernet.generate_key())
    """
    Fernet symmetric key that encrypts stored provider tokens.
    Can be set to a Fernet object or base64-encoded key string.
    Set with ENCRYPTION_KEY environment variable.
    """

    session_expiry: int = 86400
    """Browser session lifetime in seconds. Default: 86400 (24 hours)"""

    oauth_state_ttl: int = 600
    """Lifetime in seconds of a pending OAuth state. Default: 600 (10 minutes)"""

    auth_rate_limit_per_minute: int = 60
    """
    Maximum POST requests per client IP per minute on /api/auth/ routes. 0 disables the limit.
    Set with AUTH_RATE_LIMIT_PER_MINUTE environment variable.
    """

    trusted_proxy_count: int = Field(default=0, ge=0)
    """
    Number of reverse proxies in front of the service that append to X-Forwarded-For. 0 (the default) ignores
    X-Forwarded-For and X-Real-IP and uses the socket peer address.
    Set with TRUSTED_PROXY_COUNT environment variable.
    """

    # Google OAuth settings
    google_client_id: Optional[str] = None
    """Google OAuth client id. Set with GOOGLE_CLIENT_ID environment variable."""

    google_client_secret: Optional[str] = None
    """Google OAuth client secret. Set with GOOGLE_CLIENT_SECRET environment variable."""

    google_redirect_uri: str = "http://localhost:8787/api/auth/oauth/callback"
    """
    Redirect URI registered with Google.
    Set with GOOGLE_REDIRECT_URI environment variable.
    """

    frontend_base_url: str = "http://localhost:3000"
    """
    Base URL of the dashboard frontend. The OAuth callback forwards to {frontend_base_url}/auth/callback.
    Set with FRONTEND_BASE_URL environment variable.
    """

    # Exchange credentials
    binance_api_key: Optional[str] = None
    binance_api_secret: Optional[str] = None
    coinbase_api_key: Optional[str] = None
    coinbase_api_secret: Optional[str] = None
    kraken_api_key: Optional[str] = None
    kraken_api_secret: Optional[str] = None

    # Worker identification
    worker_id: str
    """
    Unique identifier for this worker instance (required, no default).
    Used to distribute background work among multiple instances.
    Set with WORKER_ID environment variable.
    """

    # Background processing configuration
    token_refresh_before_expiry_ratio: float = 0.8
    """
    Ratio of provider access token lifetime to wait before refreshing.
    Set with TOKEN_REFRESH_BEFORE_EXPIRY_RATIO environment variable.
    """

    oauth_refresh_max_retries: int = 3
    """Maximum number of retry attempts for a failed provider token refresh."""

    oauth_refresh_retry_base_delay: int = 300
    """
    Base delay in seconds for provider token refresh retries (exponential backoff).
    Actual delay = base_delay * (2 ^ retry_attempt)
    """

    cleanup_interval: int = 3600
    """Seconds between sweeps of expired sessions and tokens. Default: 3600 (1 hour)"""

    # Monitoring and observability settings
    metrics_backend: str = "telegraf"
    """
    Metrics backend, "telegraf" or "none".
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

    statsd_prefix: str = "tradedash"
    """Prefix for all StatsD metrics from this service."""

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def decode_allowed_origins(cls, v) -> List[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return [str(origin).strip() for origin in v]
        raise ValueError("allowed_origins must be a list or a comma-separated string")

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Fernet:
        """
        Accept either a Fernet instance or the base64-encoded key printed by `tradedash-util gen-crypto`.
        """
        if isinstance(v, Fernet):
            return v
        elif isinstance(v, str):
            key_data = base64.b64decode(v)
            return Fernet(key_data)
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )

    @property
    def is_development(self) -> bool:
        return self.environment.strip().lower() == "development"

    @property
    def google_oauth_configured(self) -> bool:
        return bool(self.google_client_id) and bool(self.google_client_secret)

    @property
    def session_lifetime(self) -> timedelta:
        return timedelta(seconds=self.session_expiry)

    def exchange_credentials(self) -> Dict[str, Tuple[str, str]]:
        """Exchange name to (api_key, api_secret) for every exchange with both values set."""
        pairs = {
            "binance": (self.binance_api_key, self.binance_api_secret),
            "coinbase": (self.coinbase_api_key, self.coinbase_api_secret),
            "kraken": (self.kraken_api_key, self.kraken_api_secret),
        }
        return {
            exchange: (key, secret)
            for exchange, (key, secret) in pairs.items()
            if key and secret
        }


# Background task queue constants
TOKEN_REFRESH_QUEUE = "oauth:google:refresh"
"""
Redis sorted set key for scheduling provider access token refreshes.
Contains linked account ids with refresh timestamps as scores.
"""

TOKEN_REFRESH_RETRY_QUEUE = "oauth:google:refresh:retry"
"""
Redis hash key for tracking provider token refresh retry attempts.
Keys are linked account ids, values are retry counts.
"""

# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for accessing the SQLAlchemy async session factory"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisPoolAppKey: Final = web.AppKey("redis_pool", redis.ConnectionPool)
"""AppKey for accessing the Redis connection pool"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client (telegraf or no-op)"""

TradingServiceAppKey: Final = web.AppKey("trading_service", TradingService)
"""AppKey for the exchange trading service"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that monitors service health"""

TokenRefreshTaskAppKey: Final = web.AppKey("token_refresh_task", asyncio.Task[None])
"""AppKey for the background task that refreshes provider access tokens"""

CleanupTaskAppKey: Final = web.AppKey("cleanup_task", asyncio.Task[None])
"""AppKey for the background task that removes expired sessions and tokens"""
