import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _split_scopes(raw: str) -> tuple[str, ...]:
    return tuple(scope.strip() for scope in re.split(r"[,\s]+", raw) if scope.strip())


@dataclass(frozen=True)
class Settings:
    """Process configuration, resolved once at startup and passed to every component."""

    database_url: str = "sqlite:///./storefront.db"
    secret_key: str = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only
    frontend_url: str = "http://localhost:5173"
    allowed_origins: tuple[str, ...] = ("http://localhost:5173", "http://localhost:5000")

    # Square
    square_enabled: bool = False
    square_sync_enabled: bool = False
    square_environment: str = "sandbox"  # sandbox or production
    square_application_id: Optional[str] = None
    square_application_secret: Optional[str] = None
    square_redirect_url: Optional[str] = None
    square_oauth_scopes: tuple[str, ...] = ("ITEMS_READ",)
    square_access_token: Optional[str] = None  # Operator override, bypasses OAuth
    square_location_id: Optional[str] = None
    square_webhook_signature_key: Optional[str] = None
    square_api_version: str = "2024-12-18"
    square_http_timeout: float = 30.0
    square_currency: str = "USD"

    # Token encryption (64 hex chars = 32 bytes)
    encryption_key: Optional[str] = field(default=None, repr=False)

    # Cart
    cart_ttl_seconds: int = 7 * 24 * 60 * 60

    # Rate limiting for public write endpoints
    rate_limit_requests: int = 30
    rate_limit_window_seconds: int = 60
    redis_url: Optional[str] = None

    @property
    def square_oauth_base_url(self) -> str:
        # Sandbox and Production use DIFFERENT hosts
        if self.square_environment == "production":
            return "https://connect.squareup.com"
        return "https://connect.squareupsandbox.com"

    @property
    def square_api_url(self) -> str:
        return f"{self.square_oauth_base_url}/v2"

    @classmethod
    def from_env(cls) -> "Settings":
        secret_key = os.getenv("SECRET_KEY")
        if not secret_key:
            import warnings

            warnings.warn(
                "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION",
                RuntimeWarning,
                stacklevel=2,
            )
            secret_key = cls.secret_key

        frontend_url = os.getenv("FRONTEND_URL", cls.frontend_url)
        environment = os.getenv("SQUARE_ENVIRONMENT", "sandbox").strip().lower()

        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            secret_key=secret_key,
            frontend_url=frontend_url,
            allowed_origins=tuple(
                origin.strip()
                for origin in os.getenv("ALLOWED_ORIGINS", ",".join(cls.allowed_origins)).split(",")
                if origin.strip()
            ),
            square_enabled=_env_bool("SQUARE_ENABLED"),
            square_sync_enabled=_env_bool("SQUARE_SYNC_ENABLED"),
            square_environment="production" if environment == "production" else "sandbox",
            square_application_id=_env_optional("SQUARE_APPLICATION_ID"),
            square_application_secret=_env_optional("SQUARE_APPLICATION_SECRET"),
            square_redirect_url=_env_optional("SQUARE_REDIRECT_URL"),
            square_oauth_scopes=_split_scopes(os.getenv("SQUARE_OAUTH_SCOPES", "ITEMS_READ")),
            square_access_token=_env_optional("SQUARE_ACCESS_TOKEN"),
            square_location_id=_env_optional("SQUARE_LOCATION_ID"),
            square_webhook_signature_key=_env_optional("SQUARE_WEBHOOK_SIGNATURE_KEY"),
            square_api_version=os.getenv("SQUARE_API_VERSION", cls.square_api_version),
            square_http_timeout=float(os.getenv("SQUARE_HTTP_TIMEOUT", "30")),
            square_currency=os.getenv("SQUARE_CURRENCY", cls.square_currency).upper(),
            encryption_key=_env_optional("ENCRYPTION_KEY"),
            cart_ttl_seconds=int(os.getenv("CART_TTL_SECONDS", str(cls.cart_ttl_seconds))),
            rate_limit_requests=int(os.getenv("RATE_LIMIT_REQUESTS", "30")),
            rate_limit_window_seconds=int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60")),
            redis_url=_env_optional("REDIS_URL"),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
