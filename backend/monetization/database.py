from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from monetization.config import settings


class Base(DeclarativeBase):
    pass


def create_engine(url: str = None):
    return create_async_engine(url or settings.DATABASE_URL, pool_pre_ping=True)


def create_session_factory(bind) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = create_engine()
async_session = create_session_factory(engine)
