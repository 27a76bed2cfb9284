"""
Square OAuth and catalog administration
Connect/disconnect the merchant account and trigger catalog synchronization.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse

from ..auth import CurrentUser, require_admin
from ..config import Settings
from ..dependencies import get_catalog_sync_service, get_oauth_manager, require_square_enabled
from ..errors import CommerceError
from ..schemas import CatalogSyncResponse, SquareStatusResponse
from ..services.catalog_sync import CatalogSyncService
from ..services.square_oauth import SquareOAuthManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/square", tags=["square"])


@router.get("/status", response_model=SquareStatusResponse)
async def get_square_status(
    _: CurrentUser = Depends(require_admin),
    oauth: SquareOAuthManager = Depends(get_oauth_manager),
):
    return oauth.status()


@router.post("/oauth/start")
async def start_oauth(
    current_user: CurrentUser = Depends(require_admin),
    oauth: SquareOAuthManager = Depends(get_oauth_manager),
):
    """Returns the Square authorization URL carrying a signed state"""
    url = oauth.build_authorization_url()
    logger.info(f"Square OAuth started by admin {current_user.id}")
    return {"url": url}


@router.get("/oauth/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    settings: Settings = Depends(require_square_enabled),
    oauth: SquareOAuthManager = Depends(get_oauth_manager),
):
    """
    Square redirects the merchant's browser here, so no bearer token is
    available. The signed state is what ties the callback to an admin start.
    """
    admin_url = f"{settings.frontend_url}/admin"

    if error or not code:
        logger.warning(f"⚠️ Square OAuth callback without code (error={error})")
        return RedirectResponse(url=f"{admin_url}?square=error")

    try:
        await oauth.exchange_code(code, state or "")
    except CommerceError as e:
        logger.error(f"❌ Square OAuth callback failed: {e}")
        return RedirectResponse(url=f"{admin_url}?square=error")

    return RedirectResponse(url=f"{admin_url}?square=connected")


@router.post("/refresh", response_model=SquareStatusResponse)
async def refresh_token(
    _: CurrentUser = Depends(require_admin),
    oauth: SquareOAuthManager = Depends(get_oauth_manager),
):
    await oauth.refresh()
    return oauth.status()


@router.post("/disconnect")
async def disconnect(
    current_user: CurrentUser = Depends(require_admin),
    oauth: SquareOAuthManager = Depends(get_oauth_manager),
):
    oauth.disconnect()
    logger.info(f"Square disconnected by admin {current_user.id}")
    return {"success": True}


@router.post("/catalog/sync", response_model=CatalogSyncResponse)
async def sync_catalog(
    _: CurrentUser = Depends(require_admin),
    sync: CatalogSyncService = Depends(get_catalog_sync_service),
):
    return await sync.run()
