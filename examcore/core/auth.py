from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from typing import List, Optional
import jwt
from datetime import datetime, timedelta, timezone
from examcore.core.config import settings
from examcore.core.errors import AuthorizationError

ROLES = ("student", "educator", "admin")


class TokenData(BaseModel):
    sub: str
    roles: List[str]

    def has_role(self, *roles: str) -> bool:
        return bool(set(self.roles).intersection(roles))


bearer = HTTPBearer()


def create_token(user_id: str, roles: List[str], ttl_minutes: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = ttl_minutes if ttl_minutes is not None else settings.ACCESS_TOKEN_EXPIRE_MINUTES
    payload = {"sub": user_id, "roles": roles, "iat": int(now.timestamp()), "exp": int((now + timedelta(minutes=ttl)).timestamp())}
    return jwt.encode(payload, settings.APP_SECRET.get_secret_value(), algorithm=settings.ALGORITHM)


def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> TokenData:
    try:
        payload = jwt.decode(creds.credentials, settings.APP_SECRET.get_secret_value(), algorithms=[settings.ALGORITHM])
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    return TokenData(sub=payload["sub"], roles=payload.get("roles", []))


def require_roles(*required: str):
    def checker(user: TokenData = Depends(get_current_user)):
        if not user.has_role(*required):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user
    return checker


def ensure_self_or_staff(user: TokenData, student_id: str) -> None:
    """Students may only act on their own id; educators and admins on anyone's."""
    if user.has_role("educator", "admin"):
        return
    if user.sub != student_id:
        raise AuthorizationError("Students may only act on their own account")
