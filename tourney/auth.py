"""
tourney/auth.py
Bearer-token identity for the HTTP surface.

Tokens are issued by the account service; this module only decodes them.
`sub` carries the integer user id and `role == "admin"` unlocks admin
routes. The engine itself only ever sees the user id.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from tourney.config.settings import EngineSettings, settings as default_settings
from tourney.engine import TournamentEngine

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"
ACCESS_TOKEN_EXPIRE_MINUTES = 30

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token")


@dataclass
class CurrentUser:
    id: int
    role: str = "player"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


# ================= TOKEN UTILS =================

def create_access_token(user_id: int, role: str = "player",
                        expires_delta: Optional[timedelta] = None,
                        settings: Optional[EngineSettings] = None) -> str:
    """Create a JWT access token (used by tests and local tooling)."""
    settings = settings or default_settings
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": str(user_id), "role": role, "exp": expire, "type": "access"}
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Optional[EngineSettings] = None) -> Optional[dict]:
    """Decode and validate JWT token"""
    settings = settings or default_settings
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


# ================= AUTH DEPENDENCIES =================

def get_engine(request: Request) -> TournamentEngine:
    return request.app.state.engine


async def get_current_user(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> CurrentUser:
    """
    Resolve the caller from the bearer token.
    Returns 401 if token is invalid or expired.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "success": False,
            "error": "Unauthorized",
            "message": "Invalid or expired token",
            "code": "AUTH_INVALID"
        },
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(token, get_engine(request).settings)
    if not payload or payload.get("type") != "access":
        raise credentials_exception

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise credentials_exception

    return CurrentUser(id=user_id, role=payload.get("role") or "player")


async def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current_user.is_admin:
        logger.warning(f"Access denied: user {current_user.id} attempted an admin action")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "success": False,
                "error": "Forbidden",
                "message": "This action requires the admin role",
                "code": "ADMIN_REQUIRED",
            }
        )
    return current_user
