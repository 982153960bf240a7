"""Bearer-token identity. Tokens are minted by the account service; we only verify them."""
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt
from pydantic import BaseModel

from chatrelay.config import settings
from chatrelay.observability.logger import get_logger

log = get_logger("auth")


class CurrentUser(BaseModel):
    id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_access_token(user_id: str, role: str = "user", expires_minutes: int = 60 * 24) -> str:
    payload = {
        "sub": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> CurrentUser:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        raise HTTPException(status_code=401, detail="Invalid or expired token") from e
    user_id = payload.get("sub") or payload.get("userId")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return CurrentUser(id=str(user_id), role=payload.get("role") or "user")


def get_current_user(request: Request) -> CurrentUser:
    """Dependency: require a valid bearer token. Raises 401 otherwise."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return decode_token(token.strip())


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        log.warning("admin_access_denied", user_id=user.id)
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
