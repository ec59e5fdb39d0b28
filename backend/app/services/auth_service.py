"""Access-token verification for request handlers.

Login, token issuance and sessions are owned by the auth service; this
module only decodes the access token cookie and loads the user.
"""

import logging

import jwt
from bson import ObjectId
from fastapi import Depends, HTTPException, Request, status
from jwt.exceptions import InvalidTokenError as JWTError

from app.config import settings
from app.database import get_db

logger = logging.getLogger("phantacci.auth")

ALGORITHM = "HS256"


def decode_jwt(token: str) -> dict:
    """Decode a JWT, trying the current secret first, then the old one.

    This allows zero-downtime rotation of JWT_SECRET:
    1. Set JWT_SECRET to the new value and JWT_SECRET_OLD to the previous one.
    2. After the refresh token lifetime, all old tokens have expired.
    3. Remove JWT_SECRET_OLD from .env.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError:
        if settings.JWT_SECRET_OLD:
            return jwt.decode(token, settings.JWT_SECRET_OLD, algorithms=[ALGORITHM])
        raise


async def get_current_user(request: Request, db=Depends(get_db)) -> dict:
    """FastAPI dependency: extract and validate user from access token cookie."""
    token = request.cookies.get("access_token")
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not signed in.",
        )

    try:
        payload = decode_jwt(token)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token.",
        )

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type.",
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token.",
        )

    user = await db.users.find_one({"_id": ObjectId(user_id), "is_deleted": {"$ne": True}})
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found.",
        )
    if user.get("is_banned"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your account has been suspended.",
        )
    return user


def is_admin(user: dict) -> bool:
    return bool(user.get("is_admin")) or user.get("admin_level") in ("ADMIN", "SUPER_ADMIN")


async def get_admin_user(request: Request, db=Depends(get_db)) -> dict:
    """FastAPI dependency: requires an authenticated admin user."""
    user = await get_current_user(request, db)
    if not is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admins only.",
        )
    return user
