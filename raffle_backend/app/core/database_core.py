# -*- coding: utf-8 -*-
# raffle_backend/app/core/database_core.py
# =============================================================================
# Назначение кода:
#   • Единая точка работы с БД (PostgreSQL + asyncpg + SQLAlchemy 2.0).
#   • Декларативная база ORM (Base) для всех моделей.
#   • Создание AsyncEngine и async_sessionmaker, выдача сессий для FastAPI,
#     сервисов и планировщика.
#   • Health-утилиты: db_ping(), мягкий reset_engine().
#
# Канон / инварианты:
#   • Только async-движок (create_async_engine).
#   • DSN берём из Settings.database_url_async().
#   • Сессии expire_on_commit=False: агрегат розыгрыша остаётся читаемым
#     после commit() между шагами расчёта.
#
# Запреты:
#   • Никакой бизнес-логики в этом модуле.
#   • Никаких DDL здесь: схема создаётся Alembic-миграциями.
# =============================================================================

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict, Optional

from sqlalchemy import MetaData, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.logging_core import get_logger

logger = get_logger(__name__)
settings = get_settings()

# Единые имена ограничений: миграции Alembic получают стабильные имена
NAMING_CONVENTION: Dict[str, str] = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Декларативная база всех ORM-моделей."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


# -----------------------------------------------------------------------------
# Глобальные объекты: движок и фабрика сессий
# -----------------------------------------------------------------------------
_engine: Optional[AsyncEngine] = None
_SessionFactory: Optional[async_sessionmaker[AsyncSession]] = None
_engine_lock = asyncio.Lock()


def _create_engine() -> AsyncEngine:
    """
    Создаёт новый AsyncEngine на базе актуальных настроек.

    • pool_pre_ping для раннего обнаружения «умерших» соединений;
    • размеры пула только для серверных СУБД (SQLite их не принимает);
    • echo только в DEBUG.
    """
    dsn = settings.database_url_async()
    logger.info("Creating async DB engine", extra={"dsn_set": bool(dsn)})
    kwargs: Dict[str, Any] = {"pool_pre_ping": True, "echo": settings.DEBUG}
    if not dsn.startswith("sqlite"):
        kwargs["pool_size"] = settings.DB_POOL_SIZE
        kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW
    return create_async_engine(dsn, **kwargs)


def _create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """async_sessionmaker поверх движка: expire_on_commit=False, autoflush=False."""
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
        autoflush=False,
        class_=AsyncSession,
    )


async def reset_engine() -> None:
    """
    Мягко пересоздаёт движок и фабрику сессий.
    Старый движок закрывается через dispose().
    """
    global _engine, _SessionFactory

    async with _engine_lock:
        old_engine = _engine
        new_engine = _create_engine()
        _SessionFactory = _create_session_factory(new_engine)
        _engine = new_engine
        logger.info("DB engine has been reset successfully")
        if old_engine is not None:
            try:
                await old_engine.dispose()
            except Exception:  # noqa: BLE001
                logger.warning("Error during old engine dispose", exc_info=True)


def get_engine() -> AsyncEngine:
    """Возвращает текущий AsyncEngine, создавая его лениво."""
    global _engine, _SessionFactory

    if _engine is None:
        _engine = _create_engine()
        _SessionFactory = _create_session_factory(_engine)
        logger.info("DB engine lazily initialized")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Возвращает фабрику сессий (гарантирует, что движок создан)."""
    global _SessionFactory

    if _SessionFactory is None:
        _SessionFactory = _create_session_factory(get_engine())
        logger.info("Session factory initialized")
    return _SessionFactory


# -----------------------------------------------------------------------------
# Выдача сессий
# -----------------------------------------------------------------------------
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Зависимость FastAPI:

        SessionDep = Annotated[AsyncSession, Depends(get_db)]

    Commit управляется вызывающим кодом (RafflesCRUD.save коммитит сам).
    """
    session = get_session_factory()()
    try:
        yield session
    except Exception as exc:
        logger.warning("DB session error", extra={"error": str(exc)})
        raise
    finally:
        await session.close()


@asynccontextmanager
async def lifespan_session() -> AsyncIterator[AsyncSession]:
    """
    Сессия для фоновых задач (планировщик, скрипты):

        async with lifespan_session() as db:
            ...
    Незакоммиченные изменения откатываются при ошибке.
    """
    session = get_session_factory()()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


# -----------------------------------------------------------------------------
# Health-check / ping
# -----------------------------------------------------------------------------
async def db_ping() -> bool:
    """True, если SELECT 1 прошёл; False, если БД недоступна."""
    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (OperationalError, DBAPIError, OSError) as exc:
        logger.error("DB ping failed: DB is not reachable", extra={"error": str(exc)})
        return False
    except RuntimeError as exc:
        # DATABASE_URL не задан
        logger.error("DB ping failed: %s", exc)
        return False


__all__ = [
    "Base",
    "AsyncSession",
    "AsyncEngine",
    "get_engine",
    "get_session_factory",
    "get_db",
    "lifespan_session",
    "db_ping",
    "reset_engine",
]
# =============================================================================
# Пояснения «для чайника»:
#   • Движок создаётся лениво: импорт моделей или Alembic не требует живой БД.
#   • В роутерах берите сессию через Depends(get_db), в планировщике через
#     `async with lifespan_session() as db`.
#   • /health вызывает db_ping(), чтобы показать, доступна ли БД.
# =============================================================================
