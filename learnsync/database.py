from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from learnsync.config import get_settings

settings = get_settings()

engine = create_async_engine(
    settings.async_database_url,
    echo=False,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""


async def init_models(bind: AsyncEngine | None = None) -> None:
    """Create all tables on *bind* (defaults to the module engine)."""
    from learnsync import models  # noqa: F401 - Import models to register them with Base

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

