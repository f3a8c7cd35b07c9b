from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


class Database:
    """Owns the engine and session factory for the ledger of record.

    Created once by the process entry point (or the test fixtures) and
    handed to whatever needs sessions. Nothing is connected at import time.
    """

    def __init__(self, url: str, *, engine: AsyncEngine | None = None, **engine_kwargs):
        self.url = url
        self.is_sqlite = url.startswith("sqlite")

        if engine is None:
            # Engine config: PostgreSQL needs connection pool settings, SQLite does not
            kwargs: dict = {"echo": False}
            if not self.is_sqlite:
                kwargs.update({
                    "pool_size": 5,
                    "max_overflow": 10,
                    "pool_timeout": 30,
                    "pool_recycle": 1800,
                })
            kwargs.update(engine_kwargs)
            engine = create_async_engine(url, **kwargs)

        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )

        if self.is_sqlite:
            event.listen(self.engine.sync_engine, "connect", _set_sqlite_pragma)

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def create_all(self) -> None:
        """Create all tables."""
        import gamevault.models  # noqa: F401  register every mapper

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        """Drop all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        """Dispose of the engine connection pool. Call on shutdown."""
        await self.engine.dispose()
