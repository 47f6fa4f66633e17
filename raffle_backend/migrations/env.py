# -*- coding: utf-8 -*-
"""Alembic environment for the raffle engine (async).

Назначение:
    • Настроить Alembic для работы с async SQLAlchemy (PostgreSQL + asyncpg).
    • Подтянуть Declarative Base со всеми таблицами розыгрышей.
    • Запустить миграции в оффлайн/онлайн-режиме.

Канон/инварианты:
    • Только DDL, никакой бизнес-логики.
    • DSN и схема берутся из config_core (единственный источник правды).

Запреты:
    • Никаких create_all вне файлов версий.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.models import Base

config = context.config
if config.config_file_name:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

settings = get_settings()

db_url = settings.database_url_async()
config.set_main_option("sqlalchemy.url", db_url)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Запускает миграции без подключения к БД (выводит SQL)."""

    context.configure(
        url=db_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_schemas=True,
        version_table_schema=settings.db_schema,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        include_schemas=True,
        version_table_schema=settings.db_schema,
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    """Создаёт async engine и запускает миграции."""

    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section) or {},
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())


# ============================================================================
# Пояснения «для чайника»:
#   • Запуск из корня репозитория: alembic upgrade head
#   • URL БД берётся из DATABASE_URL и приводится к asyncpg.
#   • Таблица версий Alembic живёт в той же схеме, что и таблицы розыгрышей.
# ============================================================================
