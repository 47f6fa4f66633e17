# -*- coding: utf-8 -*-
"""Initial migration for the raffle engine.

Назначение:
    • Создать схему розыгрышей и все таблицы из ORM-моделей: raffles,
      raffle_deposits, raffle_entries, raffle_winners, raffle_prize_payouts,
      raffle_settlement_transfers.

Канон/инварианты:
    • Уникальность (raffle_pk, txid) в raffle_deposits делает повторное
      кредитование одной транзакции невозможным на уровне БД.
    • Один шаг расчёта и одна выплата победителю на розыгрыш.

ИИ-защита:
    • checkfirst=True: повторный запуск не ломает БД.
"""

from __future__ import annotations

from alembic import op
from sqlalchemy import text

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.models import Base

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels = None
depends_on = None

settings = get_settings()


def upgrade() -> None:
    """Создать схему и все таблицы/индексы из моделей."""

    bind = op.get_bind()
    if settings.db_schema:
        bind.execute(text(f"CREATE SCHEMA IF NOT EXISTS {settings.db_schema}"))
    Base.metadata.create_all(bind=bind, checkfirst=True)


def downgrade() -> None:
    """Удалить таблицы розыгрышей (схема остаётся: в ней таблица версий)."""

    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind, checkfirst=True)
