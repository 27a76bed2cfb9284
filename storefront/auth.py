import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    is_admin: bool = False


def create_access_token(user_id: str, secret_key: str, is_admin: bool = False) -> str:
    """Issue a session token (used by the sign-in flow and by tests)"""
    return jwt.encode({"sub": user_id, "admin": is_admin}, secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str, secret_key: str) -> CurrentUser:
    try:
        payload = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.warning(f"🚫 Invalid bearer token: {e}")
        raise HTTPException(status_code=401, detail="Invalid authentication token") from e

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid authentication token")
    return CurrentUser(id=str(user_id), is_admin=bool(payload.get("admin")))


async def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[CurrentUser]:
    """Signed-in user if a bearer token was sent, None for guests"""
    if credentials is None:
        return None
    return decode_access_token(credentials.credentials, request.app.state.settings.secret_key)


async def require_admin(user: Optional[CurrentUser] = Depends(get_optional_user)) -> CurrentUser:
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden - admin access required")
    return user
