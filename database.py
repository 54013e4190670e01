from functools import lru_cache
from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from config import get_settings


@lru_cache
def get_engine() -> AsyncEngine:
    settings = get_settings()

    # Fail fast when the URL is missing
    if not settings.database_url:
        raise ValueError("DATABASE_URL is not set. Please check your .env file.")

    options = {"echo": settings.sql_echo, "future": True}
    if settings.database_url.startswith("sqlite"):
        # aiosqlite connections are bound to the loop that opened them
        options["poolclass"] = NullPool

    return create_async_engine(settings.database_url, **options)


async def init_db():
    async with get_engine().begin() as conn:
        # This creates the tables if they don't exist
        await conn.run_sync(SQLModel.metadata.create_all)


async def get_session() -> AsyncSession:
    async_session = sessionmaker(
        get_engine(), class_=AsyncSession, expire_on_commit=False
    )
    async with async_session() as session:
        yield session
