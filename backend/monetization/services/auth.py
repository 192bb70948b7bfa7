from datetime import timedelta
from typing import Optional
from uuid import UUID
from jose import jwt, JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from monetization.config import settings
from monetization.models.base import utcnow
from monetization.models.user import User


class AuthService:
    """Reads access tokens issued by the identity service."""

    @staticmethod
    def create_access_token(user_id: UUID, expires_minutes: int = 60) -> str:
        expire = utcnow() + timedelta(minutes=expires_minutes)
        payload = {"sub": str(user_id), "exp": expire, "type": "access"}
        return jwt.encode(payload, settings.APP_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    @staticmethod
    def decode_token(token: str) -> Optional[dict]:
        try:
            return jwt.decode(token, settings.APP_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        except JWTError:
            return None

    @staticmethod
    async def get_user_by_id(db: AsyncSession, user_id: UUID) -> Optional[User]:
        result = await db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()


auth_service = AuthService()
