from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo.database import Database

from config import get_settings
from database import MEMBERS, get_db
from errors import AuthenticationFailed, PermissionDenied

security = HTTPBearer()
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")

ADMIN = "admin"
MEMBER = "member"


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return password_ctx.verify(password, hashed)


def create_token(member: dict) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(member["_id"]),
        "email": member.get("email"),
        "exp": now + timedelta(minutes=settings.jwt_expires_min),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, get_settings().jwt_secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthenticationFailed("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationFailed("Invalid token")


def member_role(member: dict) -> str:
    return ADMIN if member.get("role") == ADMIN else MEMBER


def get_current_member(credentials: HTTPAuthorizationCredentials = Depends(security),
                       db: Database = Depends(get_db)) -> dict:
    payload = decode_token(credentials.credentials)
    member = db[MEMBERS].find_one({"_id": payload.get("sub")})
    if not member:
        raise AuthenticationFailed("Member not found")
    return member


def require_admin(member: dict = Depends(get_current_member)) -> dict:
    # Role is read from the member document, never from the token
    if member_role(member) != ADMIN:
        raise PermissionDenied()
    return member
