"""Authentication service - verifies identity-provider JWTs and mirrors users locally"""

from datetime import datetime, timedelta
from typing import Optional, Tuple
import uuid

from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import User


def create_access_token(user_id: str, email: Optional[str] = None, expires_minutes: int = 60) -> str:
    """Create a JWT access token (used by tooling and tests; production tokens come from the auth provider)"""
    expire = datetime.utcnow() + timedelta(minutes=expires_minutes)
    to_encode = {
        "sub": user_id,
        "exp": expire,
        "iat": datetime.utcnow(),
        "jti": str(uuid.uuid4()),
    }
    if email:
        to_encode["email"] = email
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[Tuple[str, Optional[str]]]:
    """Decode a JWT token and return (user id, email)"""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"verify_aud": False},
        )
    except JWTError:
        return None
    user_id = payload.get("sub")
    if not user_id:
        return None
    return user_id, payload.get("email")


async def get_or_create_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> User:
    """Return the local user row for an identity, creating it on first sight"""
    user = await db.get(User, user_id)
    if user:
        return user

    user = User(id=user_id, email=email)
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        user = await db.get(User, user_id)
    return user
