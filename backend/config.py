"""
Restaurant Payments Core - Configuration

Every tunable the service reads from the environment: database, Casso
gateway credentials, pricing constants, matching tolerance, realtime
notifications and operator keys. Pricing values are read here once and
handed to the pricing engine as a PricingConfig; nothing else reads them.
"""

from typing import List, Set
from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="PostgreSQL connection URL (required in production)"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="restaurant")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="require")

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )

    # ==================== CASSO GATEWAY ====================
    CASSO_API_KEY: str = Field(
        default="",
        description="Casso API key used for the apikey Authorization header"
    )
    CASSO_API_BASE: str = Field(
        default="https://oauth.casso.vn/v2",
        description="Casso REST API base URL"
    )
    CASSO_WEBHOOK_TOKEN: str = Field(
        default="",
        description="Shared secret Casso sends in the secure-token header"
    )
    CASSO_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for every outbound Casso request"
    )
    CASSO_POLL_ENABLED: bool = Field(
        default=False,
        description="Run the background poller in addition to the webhook"
    )
    CASSO_POLL_INTERVAL_SECONDS: int = Field(
        default=60,
        description="Seconds between poll cycles"
    )
    CASSO_POLL_PAGE_SIZE: int = Field(
        default=100,
        description="Transactions fetched per poll cycle (Casso caps this at 100)"
    )

    # ==================== PRICING ====================
    TAX_RATE: float = Field(
        default=0.08,
        description="VAT applied to the subtotal"
    )
    FREE_DELIVERY_THRESHOLD: int = Field(
        default=500000,
        description="Subtotal (VND) at which delivery becomes free"
    )
    DEFAULT_DELIVERY_FEE: int = Field(
        default=30000,
        description="Flat delivery fee (VND)"
    )
    AMOUNT_TOLERANCE: int = Field(
        default=1000,
        description="Largest transfer/total difference (VND) still treated as a match"
    )

    # ==================== NOTIFICATIONS ====================
    NOTIFICATION_URL: str = Field(
        default="",
        description="Realtime service endpoint for room broadcasts (empty = log only)"
    )
    NOTIFICATION_TIMEOUT_SECONDS: float = Field(default=5.0)

    # ==================== INTERNAL AUTH ====================
    INTERNAL_API_KEY: str = Field(
        default="",
        description="Single operator API key"
    )
    INTERNAL_API_KEYS: str = Field(
        default="",
        description="Comma-separated list of additional operator keys (for rotation)"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="Restaurant Payments Core API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    # ==================== DERIVED VALUES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def debug_enabled(self) -> bool:
        return self.DEBUG or self.is_development

    @property
    def casso_configured(self) -> bool:
        return bool(self.CASSO_API_KEY)

    @property
    def operator_api_keys(self) -> Set[str]:
        """INTERNAL_API_KEY plus every key in INTERNAL_API_KEYS"""
        keys = {k.strip() for k in self.INTERNAL_API_KEYS.split(",")}
        keys.add(self.INTERNAL_API_KEY.strip())
        keys.discard("")
        return keys

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Allowed origins for the checkout frontend and the staff dashboard.

        Outside production the local Vite and CRA dev servers are added.
        """
        origins = {o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip() and o.strip() != "*"}
        if not self.is_production:
            origins.update(LOCAL_DEV_ORIGINS)
        return sorted(origins)

    def validate_production_config(self) -> List[str]:
        """
        Problems that make this configuration unsafe to deploy.

        Pricing bounds are checked in every environment; the rest only
        in production.
        """
        errors = []

        if not (0 <= self.TAX_RATE <= 1):
            errors.append("TAX_RATE must be between 0 and 1")
        if self.AMOUNT_TOLERANCE < 0:
            errors.append("AMOUNT_TOLERANCE cannot be negative")
        if not self.DATABASE_URL and not self.POSTGRES_HOST:
            errors.append("DATABASE_URL is required")

        if not self.is_production:
            return errors

        if not self.CASSO_WEBHOOK_TOKEN:
            errors.append("CASSO_WEBHOOK_TOKEN is required in production")
        if not self.operator_api_keys:
            errors.append("INTERNAL_API_KEY is required in production")
        if self.CORS_ORIGINS.strip() == "*":
            errors.append("CORS_ORIGINS cannot be '*' in production")
        if "localhost" in self.DATABASE_URL.lower():
            errors.append("DATABASE_URL cannot point to localhost in production")
        if self.DEBUG:
            errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL

        if not (self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD):
            raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")

        query = f"?ssl={self.POSTGRES_SSLMODE}" if self.POSTGRES_SSLMODE else ""
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}{query}"
        )


LOCAL_DEV_ORIGINS = (
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
)


@lru_cache()
def get_settings() -> Settings:
    """
    Load settings once per process.

    Raises:
        ValueError: production configuration is unsafe to serve traffic
    """
    settings = Settings()
    logger.info(f"Environment: {settings.ENVIRONMENT}, Casso API configured: {settings.casso_configured}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


def get_cors_config() -> dict:
    """Keyword arguments for CORSMiddleware."""
    return {
        "allow_origins": get_settings().cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": [
            "Authorization",
            "Content-Type",
            "Accept",
            "Origin",
            "X-Request-ID",
            "X-Internal-Api-Key",
            "X-Operator-Id",
        ],
        "max_age": 600,
    }


# (variable, getter, effect when unset)
_OPTIONAL_SETTINGS = (
    ("SENTRY_DSN", lambda s: s.SENTRY_DSN, "Error tracking disabled"),
    ("CASSO_API_KEY", lambda s: s.CASSO_API_KEY, "Casso polling and manual lookups disabled"),
    ("CASSO_WEBHOOK_TOKEN", lambda s: s.CASSO_WEBHOOK_TOKEN, "Webhook secret validation disabled"),
    ("NOTIFICATION_URL", lambda s: s.NOTIFICATION_URL, "Realtime notifications are only logged"),
    ("INTERNAL_API_KEY", lambda s: s.operator_api_keys, "Operator endpoints will reject every request"),
)


def validate_environment() -> dict:
    """
    Configuration report for startup and /api/config/status.

    Values are never included, only whether each variable is set.
    """
    settings = get_settings()
    errors = settings.validate_production_config()

    variables = {"DATABASE_URL": "✓ Set" if (settings.DATABASE_URL or settings.POSTGRES_HOST) else "✗ Missing"}
    warnings = []
    for name, getter, effect in _OPTIONAL_SETTINGS:
        if getter(settings):
            variables[name] = "✓ Set"
        else:
            variables[name] = "⚠ Not set"
            warnings.append(effect)

    return {
        "valid": not errors,
        "environment": settings.ENVIRONMENT,
        "errors": errors,
        "warnings": warnings,
        "variables": variables,
    }


settings = get_settings()
