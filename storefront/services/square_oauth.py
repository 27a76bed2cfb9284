"""
Square OAuth 2.0 token lifecycle
Authorization URL, code exchange, refresh, token resolution and disconnect.
Tokens are persisted encrypted, one row per provider.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from urllib.parse import urlencode

from sqlalchemy.orm import Session

from ..config import Settings
from ..encryption import CredentialVault
from ..errors import InvalidState, NotConfigured, NotConnected, ProviderError
from ..models import utcnow
from ..models_square import OAuthToken
from ..oauth_state import OAuthStateSigner
from .square_client import SquareClient

logger = logging.getLogger(__name__)

PROVIDER = "square"
DEFAULT_TOKEN_LIFETIME = timedelta(minutes=55)


def _parse_expires_at(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as e:
        logger.warning(f"Failed to parse expires_at: {e}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class SquareOAuthManager:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        vault: CredentialVault,
        signer: OAuthStateSigner,
        client: SquareClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.vault = vault
        self.signer = signer
        self.client = client
        self._clock = clock

    def _require_oauth_config(self) -> None:
        s = self.settings
        if not (
            s.square_application_id
            and s.square_application_secret
            and s.square_redirect_url
            and s.square_oauth_scopes
        ):
            raise NotConfigured("Square OAuth is not configured")

    def _load_record(self) -> Optional[OAuthToken]:
        return self.db.query(OAuthToken).filter(OAuthToken.provider == PROVIDER).first()

    # ------------------------------------------------------------------
    # Authorization flow
    # ------------------------------------------------------------------

    def build_authorization_url(self) -> str:
        self._require_oauth_config()
        query = urlencode(
            {
                "client_id": self.settings.square_application_id,
                "redirect_uri": self.settings.square_redirect_url,
                "scope": " ".join(self.settings.square_oauth_scopes),
                "state": self.signer.issue(),
            }
        )
        logger.info(f"Square OAuth initiated ({self.settings.square_environment})")
        return f"{self.settings.square_oauth_base_url}/oauth2/authorize?{query}"

    async def exchange_code(self, code: str, state: str) -> OAuthToken:
        if not self.signer.validate(state):
            logger.warning("🚫 Square OAuth callback rejected: invalid state")
            raise InvalidState()
        self._require_oauth_config()

        token = await self._request_token(
            {
                "client_id": self.settings.square_application_id,
                "client_secret": self.settings.square_application_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.settings.square_redirect_url,
            }
        )
        record = self._persist_tokens(token)
        logger.info(f"✅ Square connected for merchant {record.merchant_id}")
        return record

    async def refresh(self) -> OAuthToken:
        record = self._load_record()
        if not record or not record.refresh_token:
            raise NotConnected("Square refresh token not available")
        self._require_oauth_config()

        token = await self._request_token(
            {
                "client_id": self.settings.square_application_id,
                "client_secret": self.settings.square_application_secret,
                "grant_type": "refresh_token",
                "refresh_token": self.vault.decrypt(record.refresh_token),
            }
        )
        record = self._persist_tokens(token)
        logger.info(f"✅ Square token refreshed, expires at {record.expires_at}")
        return record

    async def _request_token(self, body: dict[str, str]) -> dict[str, Any]:
        data = await self.client.request_token(body)
        if not data.get("access_token"):
            raise ProviderError("Square OAuth response missing access token")
        return data

    def _persist_tokens(self, token: dict[str, Any]) -> OAuthToken:
        expires_at = _parse_expires_at(token.get("expires_at")) or self._clock() + DEFAULT_TOKEN_LIFETIME
        values = {
            "access_token": self.vault.encrypt(token["access_token"]),
            "expires_at": expires_at,
            "merchant_id": token.get("merchant_id"),
            "location_id": token.get("location_id"),
            "payload": {
                "token_type": token.get("token_type"),
                "scope": token.get("scope"),
                "environment": self.settings.square_environment,
            },
        }
        refresh_token = token.get("refresh_token")

        record = self._load_record()
        if record:
            for key, value in values.items():
                setattr(record, key, value)
            # Square only returns a refresh token on the code grant; keep the stored one otherwise
            if refresh_token:
                record.refresh_token = self.vault.encrypt(refresh_token)
        else:
            record = OAuthToken(
                provider=PROVIDER,
                refresh_token=self.vault.encrypt(refresh_token) if refresh_token else None,
                **values,
            )
            self.db.add(record)

        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error("❌ Failed to persist Square tokens")
            raise
        self.db.refresh(record)
        return record

    # ------------------------------------------------------------------
    # Token resolution
    # ------------------------------------------------------------------

    async def resolve_access_token(self) -> str:
        """Static operator token first, then the stored OAuth token (refreshed if expired)."""
        if self.settings.square_access_token:
            return self.settings.square_access_token

        record = self._load_record()
        if not record or not record.access_token:
            raise NotConnected("Square access token not available")

        if record.expires_at and record.expires_at <= self._clock() and record.refresh_token:
            logger.info("Square access token expired, refreshing")
            record = await self.refresh()

        return self.vault.decrypt(record.access_token)

    async def resolve_location_id(self, access_token: Optional[str] = None) -> str:
        if self.settings.square_location_id:
            return self.settings.square_location_id

        record = self._load_record()
        if record and record.location_id:
            return record.location_id

        token = access_token or await self.resolve_access_token()
        locations = await self.client.list_locations(token)
        for location in locations:
            if location.get("status") == "ACTIVE" and location.get("id"):
                return location["id"]
        if locations and locations[0].get("id"):
            logger.warning(f"⚠️ No active location found, using first location: {locations[0]['id']}")
            return locations[0]["id"]
        raise NotConnected("Square location not available")

    def status(self) -> dict[str, Any]:
        record = self._load_record()
        summary: dict[str, Any] = {
            "connected": bool(record) or bool(self.settings.square_access_token),
            "environment": self.settings.square_environment,
            "merchantId": None,
            "locationId": self.settings.square_location_id,
            "expiresAt": None,
        }
        if record:
            summary["merchantId"] = record.merchant_id
            summary["locationId"] = self.settings.square_location_id or record.location_id
            summary["expiresAt"] = record.expires_at.isoformat() if record.expires_at else None
        return summary

    def disconnect(self) -> None:
        deleted = self.db.query(OAuthToken).filter(OAuthToken.provider == PROVIDER).delete()
        self.db.commit()
        if deleted:
            logger.info("Square disconnected")
