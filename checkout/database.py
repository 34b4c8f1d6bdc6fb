from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from checkout.models import Base

engine = None
SessionLocal = None


def configure_database(database_url: str, **engine_kwargs):
    """Create the engine and session factory for ``database_url``."""
    global engine, SessionLocal
    engine = create_async_engine(database_url, **engine_kwargs)
    SessionLocal = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return SessionLocal


async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_db():
    if engine is not None:
        await engine.dispose()
