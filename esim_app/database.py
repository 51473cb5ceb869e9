"""Подключение к базе данных."""
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from esim_app.config import settings


def build_engine(url: str) -> AsyncEngine:
    """Асинхронный движок: asyncpg в production, aiosqlite в тестах."""
    if url.startswith("sqlite"):
        # Конкурентные обработчики webhook ждут блокировку записи, а не падают
        return create_async_engine(url, echo=False, connect_args={"timeout": 15})
    return create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.database_url)
AsyncSessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    """Базовый класс для всех моделей."""

    pass


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency для получения сессии БД."""
    async with AsyncSessionLocal() as session:
        yield session
