"""Session management using JWT tokens."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt
from pydantic import BaseModel

from labcal.config import get_session_secret, get_settings
from labcal.database import get_database
from labcal.models import Actor

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SESSION_COOKIE_NAME = "session"


class SessionData(BaseModel):
    """Session data stored in JWT."""
    user_id: int
    email: str
    is_admin: bool = False
    exp: datetime


class User(BaseModel):
    """Signed-in lab member."""
    id: int
    email: str
    display_name: Optional[str] = None
    is_admin: bool = False
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @property
    def actor(self) -> Actor:
        return Actor(id=f"user:{self.id}", is_admin=self.is_admin)


def create_session_token(user_id: int, email: str, is_admin: bool = False) -> str:
    """Create a JWT session token."""
    settings = get_settings()
    secret = get_session_secret()

    expire = datetime.now(timezone.utc) + timedelta(days=settings.session_expire_days)
    data = {
        "user_id": user_id,
        "email": email,
        "is_admin": is_admin,
        "exp": expire,
    }

    return jwt.encode(data, secret, algorithm=ALGORITHM)


def verify_session_token(token: str) -> Optional[SessionData]:
    """Verify and decode a session token."""
    try:
        secret = get_session_secret()
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
        return SessionData(**payload)
    except JWTError as e:
        logger.warning(f"Invalid session token: {e}")
        return None


async def get_user_by_id(user_id: int) -> Optional[User]:
    """Get user from database by ID."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM users WHERE id = ?", (user_id,)
    )
    row = await cursor.fetchone()

    if row:
        return User(
            id=row["id"],
            email=row["email"],
            display_name=row["display_name"],
            is_admin=bool(row["is_admin"]),
            created_at=row["created_at"],
            last_login_at=row["last_login_at"],
        )
    return None


async def get_current_user_optional(request: Request) -> Optional[User]:
    """Get current user from session, returns None if not authenticated."""
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None

    session = verify_session_token(token)
    if not session:
        return None

    return await get_user_by_id(session.user_id)


async def get_current_user(request: Request) -> User:
    """Get current user from session, raises 401 if not authenticated."""
    user = await get_current_user_optional(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
