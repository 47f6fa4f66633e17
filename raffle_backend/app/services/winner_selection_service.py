# -*- coding: utf-8 -*-
# raffle_backend/app/services/winner_selection_service.py
# =============================================================================
# Raffle Engine: выбор победителей (взвешенная выборка без возвращения)
# -----------------------------------------------------------------------------
# Назначение:
#   • select_winners(): чистая функция от весов, числа победителей и
#     источника случайности.
#   • close_raffle(): единственный переход live → completed с записью
#     победителей и зерна жеребьёвки.
#   • verify_draw(): повторная жеребьёвка по сохранённому зерну для аудита.
#
# Канон/инварианты:
#   • Один код для любого числа победителей (1 победитель = список из одного).
#   • Обход участников в стабильном порядке (порядок первого депозита).
#   • Нулевые веса никогда не выбираются.
#   • Пустой набор участников → сентинел NO_ENTRIES, а не пустой список.
#   • winners назначаются один раз и больше не пересчитываются.
# =============================================================================

from __future__ import annotations

import random
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from raffle_backend.app.core.errors_core import RaffleStateError
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.utils_core import decimal_from, gen_draw_seed
from raffle_backend.app.services.raffle_state import RaffleState, RaffleStatus

logger = get_logger(__name__)


class _NoEntries:
    """Сентинел «участников нет»: не путать с пустым списком победителей."""

    _instance: Optional["_NoEntries"] = None

    def __new__(cls) -> "_NoEntries":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_ENTRIES"


NO_ENTRIES = _NoEntries()

Weights = Union[Mapping[str, Decimal], Sequence[Tuple[str, Decimal]]]
SelectionResult = Union[List[str], _NoEntries]


def _as_pool(weights: Weights) -> List[Tuple[str, Decimal]]:
    items: Iterable[Tuple[str, Decimal]]
    if isinstance(weights, Mapping):
        items = weights.items()
    else:
        items = weights
    return [(wallet, decimal_from(w)) for wallet, w in items if decimal_from(w) > 0]


def select_winners(weights: Weights, count: int, rng: random.Random) -> SelectionResult:
    """
    Взвешенная выборка без возвращения.

    min(count, |pool|) раз: r = U[0, 1) * остаток_весов; идём по пулу в
    стабильном порядке, вычитая веса, пока r > 0; запись, на которой r стал
    ≤ 0, выбрана и убирается из пула.
    """
    if count < 1:
        raise ValueError("winners count must be >= 1")

    pool = _as_pool(weights)
    if not pool:
        return NO_ENTRIES

    remaining_total = sum((w for _, w in pool), Decimal(0))
    winners: List[str] = []
    for _ in range(min(count, len(pool))):
        r = Decimal(repr(rng.random())) * remaining_total
        chosen_idx = len(pool) - 1
        for idx, (_, weight) in enumerate(pool):
            r -= weight
            if r <= 0:
                chosen_idx = idx
                break
        wallet, weight = pool.pop(chosen_idx)
        remaining_total -= weight
        winners.append(wallet)
    return winners


def _entry_weights(raffle: RaffleState) -> List[Tuple[str, Decimal]]:
    return [(e.wallet_address, e.total_credits_added) for e in raffle.ordered_entries()]


def draw_from_seed(raffle: RaffleState, seed: str) -> SelectionResult:
    return select_winners(_entry_weights(raffle), raffle.winners_requested, random.Random(seed))


def close_raffle(raffle: RaffleState, now: datetime, *, seed: Optional[str] = None) -> SelectionResult:
    """
    Переход live → completed. Записывает winners, draw_seed, completed_at.
    Повторный вызов для завершённого розыгрыша запрещён.
    """
    if raffle.status != RaffleStatus.LIVE:
        raise RaffleStateError(
            "Winners are already drawn for this raffle.",
            details={"raffle_id": raffle.raffle_id, "status": raffle.status.value},
        )

    draw_seed = seed or gen_draw_seed()
    outcome = draw_from_seed(raffle, draw_seed)

    raffle.draw_seed = draw_seed
    raffle.winners = [] if outcome is NO_ENTRIES else list(outcome)
    raffle.status = RaffleStatus.COMPLETED
    raffle.completed_at = now

    if outcome is NO_ENTRIES:
        logger.warning("Raffle closed with no entries", extra={"raffle_id": raffle.raffle_id})
    else:
        logger.info(
            "Raffle closed, winners drawn",
            extra={"raffle_id": raffle.raffle_id, "winners": raffle.winners},
        )
    return outcome


def verify_draw(raffle: RaffleState) -> bool:
    """Пересчитывает жеребьёвку по сохранённому зерну и сравнивает с winners."""
    if raffle.status != RaffleStatus.COMPLETED or not raffle.draw_seed:
        return False
    outcome = draw_from_seed(raffle, raffle.draw_seed)
    expected: List[str] = [] if outcome is NO_ENTRIES else list(outcome)
    return expected == raffle.winners


__all__ = [
    "NO_ENTRIES",
    "select_winners",
    "draw_from_seed",
    "close_raffle",
    "verify_draw",
]
