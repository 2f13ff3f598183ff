import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from teampulse.core.config import config

logger = logging.getLogger("database")


def to_async_url(url: str) -> str:
    """Neon hands out plain postgres:// URLs; SQLAlchemy needs the asyncpg driver."""
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://"):]
    # asyncpg does not understand libpq's sslmode/channel_binding query options
    if url.startswith("postgresql+asyncpg://") and "?" in url:
        base, _, query = url.partition("?")
        params = [p for p in query.split("&") if not p.startswith(("sslmode=", "channel_binding="))]
        url = base + ("?" + "&".join(params) if params else "")
    return url


class NeonDatabase:
    engine: Optional[AsyncEngine] = None
    session_factory: Optional[async_sessionmaker] = None

    @classmethod
    def init(cls, url: Optional[str] = None) -> AsyncEngine:
        if cls.engine is not None and url is None:
            return cls.engine

        url = url or config.DATABASE_URL
        if not url:
            raise RuntimeError("DATABASE_URL is not set")

        async_url = to_async_url(url)
        connect_args = {"ssl": "require"} if "neon.tech" in async_url else {}
        cls.engine = create_async_engine(async_url, pool_pre_ping=True, connect_args=connect_args)
        cls.session_factory = async_sessionmaker(cls.engine, expire_on_commit=False, class_=AsyncSession)
        logger.info(f"Database engine created for {cls.engine.url.render_as_string(hide_password=True)}")
        return cls.engine

    @classmethod
    @asynccontextmanager
    async def get_session(cls) -> AsyncIterator[AsyncSession]:
        if cls.session_factory is None:
            cls.init()
        async with cls.session_factory() as session:
            yield session

    @classmethod
    async def create_tables(cls) -> None:
        from teampulse.database.models.Base import Base
        import teampulse.database.models  # noqa: F401  registers tables on Base.metadata

        engine = cls.init()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")

    @classmethod
    async def dispose(cls) -> None:
        if cls.engine is not None:
            await cls.engine.dispose()
        cls.engine = None
        cls.session_factory = None
