# -*- coding: utf-8 -*-
# raffle_backend/app/core/utils_core.py
# =============================================================================
# Назначение:
#   • Базовые утилиты уровня "core" без зависимостей от FastAPI/SQLAlchemy.
#   • Работа с Decimal: перевод базовых единиц в отображаемые, обрезка до
#     8 знаков (ROUND_DOWN).
#   • Время/таймстемпы, генерация идентификаторов и зерна жеребьёвки.
#
# Канон:
#   • Денежные суммы выплат и расчётов не более 8 знаков, округление DOWN.
#   • Кредиты реестра НЕ округляются (дробные, накапливаются точно).
#   • Все функции чистые: без сетевых вызовов и побочных эффектов.
# =============================================================================

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Optional, Union

NumberLike = Union[str, int, float, Decimal]

Q8 = Decimal("0.00000001")


# -----------------------------------------------------------------------------
# Decimal helpers
# -----------------------------------------------------------------------------
def decimal_from(value: NumberLike) -> Decimal:
    """
    Приводит значение к Decimal.
    float приводим через str(), чтобы не тащить бинарные артефакты.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def d8(value: NumberLike) -> Decimal:
    """Округление вниз до 8 знаков (суммы переводов)."""
    return decimal_from(value).quantize(Q8, rounding=ROUND_DOWN)


def base_units_to_display(raw: NumberLike, decimals: int = 8) -> Decimal:
    """
    Переводит целые базовые единицы (sompi и т.п.) в отображаемые:
        250_000_000 → 2.5 при decimals=8.
    Некорректный вход (None, мусорная строка, дробь) → ValueError.
    """
    if raw is None or isinstance(raw, bool):
        raise ValueError("base-unit amount is missing")
    try:
        value = decimal_from(raw)
    except InvalidOperation as exc:
        raise ValueError(f"base-unit amount is not a number: {raw!r}") from exc
    if not value.is_finite() or value != value.to_integral_value():
        raise ValueError(f"base-unit amount must be an integer, got {raw!r}")
    return value.scaleb(-decimals)


def format_decimal_str(value: NumberLike, decimals: int = 8) -> str:
    """Строка с обрезкой до decimals знаков и без хвостовых нулей."""
    d = decimal_from(value)
    if d.is_finite():
        d = d.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)
    s = f"{d:.{decimals}f}"
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    return s


# -----------------------------------------------------------------------------
# Время / таймстемпы
# -----------------------------------------------------------------------------
def utcnow() -> datetime:
    """Текущее время в UTC с tzinfo=UTC."""
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Наивный datetime считаем UTC (SQLite теряет tzinfo), aware приводим к UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_unix_ms(raw: Union[int, str, None]) -> Optional[datetime]:
    """Unix-время в миллисекундах → datetime UTC (None для пустого/битого)."""
    if raw in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


# -----------------------------------------------------------------------------
# Идентификаторы
# -----------------------------------------------------------------------------
def new_raffle_id() -> str:
    """Непрозрачный публичный идентификатор розыгрыша."""
    return uuid.uuid4().hex


def gen_draw_seed() -> str:
    """Свежее криптостойкое зерно жеребьёвки (сохраняется для аудита)."""
    return secrets.token_hex(32)


__all__ = [
    "NumberLike",
    "Q8",
    "decimal_from",
    "d8",
    "base_units_to_display",
    "format_decimal_str",
    "utcnow",
    "ensure_utc",
    "from_unix_ms",
    "new_raffle_id",
    "gen_draw_seed",
]
