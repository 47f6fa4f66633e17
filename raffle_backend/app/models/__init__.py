# -*- coding: utf-8 -*-
# raffle_backend/app/models/__init__.py
# =============================================================================
# Назначение кода:
#   Единая точка входа слоя моделей: импорт всех ORM-классов, чтобы
#   Base.metadata видел полный набор таблиц (Alembic, тесты).
# =============================================================================

from __future__ import annotations

from ..core.database_core import Base
from .raffle_models import (
    SCHEMA,
    Raffle,
    RaffleDeposit,
    RaffleEntry,
    RafflePrizePayout,
    RaffleSettlementTransfer,
    RaffleWinner,
)

__all__ = [
    "Base",
    "SCHEMA",
    "Raffle",
    "RaffleDeposit",
    "RaffleEntry",
    "RaffleWinner",
    "RafflePrizePayout",
    "RaffleSettlementTransfer",
]
