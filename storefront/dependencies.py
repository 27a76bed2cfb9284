"""
FastAPI dependencies that build the commerce services for a request

Process-wide pieces (settings, vault, state signer, rate limiter, optional
Square transport for tests) live on app.state and are set up by create_app.
"""

from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from .auth import CurrentUser, get_optional_user
from .config import Settings
from .database import get_db
from .errors import NotConfigured
from .services.booking_service import BookingService
from .services.cart_service import CartOwner, CartService
from .services.catalog_sync import CatalogSyncService
from .services.checkout_service import CheckoutService
from .services.square_client import SquareClient
from .services.square_oauth import SquareOAuthManager

CART_SESSION_HEADER = "x-cart-session"


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def require_square_enabled(settings: Settings = Depends(get_app_settings)) -> Settings:
    if not settings.square_enabled:
        raise NotConfigured()
    return settings


def get_square_client(request: Request, settings: Settings = Depends(require_square_enabled)) -> SquareClient:
    return SquareClient(settings, transport=getattr(request.app.state, "square_transport", None))


def get_oauth_manager(
    request: Request,
    settings: Settings = Depends(require_square_enabled),
    db: Session = Depends(get_db),
    client: SquareClient = Depends(get_square_client),
) -> SquareOAuthManager:
    state = request.app.state
    return SquareOAuthManager(db, settings, state.vault, state.signer, client)


def get_cart_service(settings: Settings = Depends(get_app_settings), db: Session = Depends(get_db)) -> CartService:
    return CartService(db, settings.cart_ttl_seconds)


def get_cart_owner(
    request: Request,
    user: Optional[CurrentUser] = Depends(get_optional_user),
) -> CartOwner:
    session_id = request.headers.get(CART_SESSION_HEADER) or request.query_params.get("sessionId")
    return CartOwner(
        user_id=user.id if user else None,
        session_id=session_id.strip() if session_id and session_id.strip() else None,
    )


def get_checkout_service(
    settings: Settings = Depends(require_square_enabled),
    db: Session = Depends(get_db),
    carts: CartService = Depends(get_cart_service),
    oauth: SquareOAuthManager = Depends(get_oauth_manager),
    client: SquareClient = Depends(get_square_client),
) -> CheckoutService:
    return CheckoutService(db, settings, carts, oauth, client)


def get_booking_service(
    db: Session = Depends(get_db),
    oauth: SquareOAuthManager = Depends(get_oauth_manager),
    client: SquareClient = Depends(get_square_client),
) -> BookingService:
    return BookingService(db, oauth, client)


def get_catalog_sync_service(
    settings: Settings = Depends(require_square_enabled),
    db: Session = Depends(get_db),
    oauth: SquareOAuthManager = Depends(get_oauth_manager),
    client: SquareClient = Depends(get_square_client),
) -> CatalogSyncService:
    return CatalogSyncService(db, settings, oauth, client)
