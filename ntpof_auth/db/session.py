from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ntpof_auth.db.base import Base


def create_engine_and_sessionmaker(
    database_url: str, echo: bool = False
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(database_url, echo=echo, pool_pre_ping=not database_url.startswith("sqlite"))
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, session_maker


async def init_db(engine: AsyncEngine) -> None:
    # Register every model on Base.metadata before create_all.
    import ntpof_auth.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def sync_database_url(database_url: str) -> str:
    """URL for sync drivers (Alembic): drop the async driver suffix."""
    return database_url.replace("+asyncpg", "", 1).replace("+aiosqlite", "", 1)
