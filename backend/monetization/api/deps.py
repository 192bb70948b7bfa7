from typing import AsyncIterator, Optional
from uuid import UUID
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from monetization.services.auth import auth_service
from monetization.services.context import ServiceContext
from monetization.models.user import User

security = HTTPBearer(auto_error=False)


def get_services(request: Request) -> ServiceContext:
    return request.app.state.services


async def get_db(services: ServiceContext = Depends(get_services)) -> AsyncIterator[AsyncSession]:
    async with services.session_factory() as session:
        yield session


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    payload = auth_service.decode_token(credentials.credentials)
    if not payload or payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token")

    try:
        user_id = UUID(payload["sub"])
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")

    user = await auth_service.get_user_by_id(db, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    if user.is_blocked:
        raise HTTPException(status_code=403, detail="User is blocked")

    return user


async def get_admin_user(
    current_user: User = Depends(get_current_user),
) -> User:
    """Requires the admin or superadmin role."""
    if current_user.role not in ("admin", "superadmin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return current_user
