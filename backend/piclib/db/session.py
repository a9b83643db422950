from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from piclib.core.config import settings

connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_async_engine(settings.database_url, future=True, echo=False, connect_args=connect_args)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False, class_=AsyncSession)


async def create_all() -> None:
    """Create any missing tables on the configured database."""
    from piclib.db.base import Base
    import piclib.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
