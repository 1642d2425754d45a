"""Authentication helpers: bcrypt passwords, JWT bearer tokens, route guards."""
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from bson import ObjectId
from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from config import settings
from database import get_db

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"
_BCRYPT_ROUNDS = 10
# bcrypt only reads the first 72 bytes; longer input is rejected at the API boundary
MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)).decode("utf-8")


def check_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # stored value is not a bcrypt hash
        return False


def new_token() -> str:
    """Random single-use token for email verification and password reset."""
    return secrets.token_hex(32)


def create_access_token(user_id: str, is_admin: bool) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "id": user_id,
        "isAdmin": is_admin,
        "iat": now,
        "exp": now + timedelta(hours=settings.jwt_ttl_hours),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[_ALGORITHM])
    except JWTError:
        return None


class CurrentUser:
    """Identity carried by a verified bearer token."""

    def __init__(self, id: str, is_admin: bool = False):
        self.id = id
        self.is_admin = is_admin


def get_current_user(authorization: Optional[str] = Header(None)) -> CurrentUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing token")
    claims = decode_access_token(authorization.split(" ", 1)[1])
    if not claims or not claims.get("id"):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return CurrentUser(id=str(claims["id"]), is_admin=bool(claims.get("isAdmin")))


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def find_user(user_id: Optional[str]) -> Optional[dict]:
    """Load a user by string id; unknown or malformed ids give None."""
    if not user_id or not ObjectId.is_valid(user_id):
        return None
    return get_db().user.find_one({"_id": ObjectId(user_id)})
