import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

# Import all models to ensure they're registered with SQLAlchemy Base
from . import (
    models,  # noqa: F401
    models_square,  # noqa: F401
)
from .config import Settings, get_settings
from .database import Base, build_engine, build_session_factory
from .dependencies import CART_SESSION_HEADER
from .encryption import CredentialVault
from .errors import BookingFailed, CommerceError, PaymentFailed, ProviderError
from .oauth_state import OAuthStateSigner
from .rate_limiter import RateLimiter, RedisRateLimitStore
from .routes.bookings import router as bookings_router
from .routes.cart import router as cart_router
from .routes.checkout import router as checkout_router
from .routes.square import router as square_router
from .routes.square_webhooks import router as square_webhooks_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=app.state.engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")
            raise

    yield
    logger.info("Application shutting down...")


def _build_rate_limiter(settings: Settings) -> RateLimiter:
    store = None
    if settings.redis_url:
        store = RedisRateLimitStore.from_url(settings.redis_url)
        logger.info("Rate limiting backed by Redis")
    return RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds, store=store)


async def commerce_error_handler(request: Request, exc: CommerceError):
    if isinstance(exc, ProviderError):
        logger.error(f"❌ {request.method} {request.url.path} - Square error: {exc}")
    elif isinstance(exc, (PaymentFailed, BookingFailed)) and exc.cause is not None:
        logger.error(f"❌ {request.method} {request.url.path} - {exc.message}: {exc.cause}")
    elif exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path} - {exc.message}")
    else:
        logger.warning(f"⚠️ {request.method} {request.url.path} - {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(exc.errors())})


def create_app(settings: Optional[Settings] = None, engine: Optional[Engine] = None) -> FastAPI:
    settings = settings or get_settings()
    engine = engine or build_engine(settings.database_url)

    app = FastAPI(title="Storefront Commerce API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.rate_limiter = _build_rate_limiter(settings)

    if settings.square_enabled:
        # Fails fast on a missing or malformed ENCRYPTION_KEY
        app.state.vault = CredentialVault.from_settings(settings)
        app.state.signer = OAuthStateSigner.from_vault(app.state.vault)
        logger.info(f"✅ Square enabled ({settings.square_environment})")
    else:
        app.state.vault = None
        app.state.signer = None
        logger.info("Square disabled - payment, booking and sync routes will answer 503")

    app.add_exception_handler(CommerceError, commerce_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # CORS Configuration
    logger.info(f"CORS allowed origins: {list(settings.allowed_origins)}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=[CART_SESSION_HEADER],
    )

    # Routes
    app.include_router(cart_router)
    app.include_router(checkout_router)
    app.include_router(bookings_router)
    app.include_router(square_router)
    app.include_router(square_webhooks_router)

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    return app


app = create_app()
