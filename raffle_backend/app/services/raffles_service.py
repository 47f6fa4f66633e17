# -*- coding: utf-8 -*-
# raffle_backend/app/services/raffles_service.py
# =============================================================================
# Raffle Engine: управление розыгрышами (создание, чтение, ручной ingest)
# -----------------------------------------------------------------------------
# Назначение:
#   • create_raffle(): валидация параметров и создание live-розыгрыша с
#     нулевыми агрегатами.
#   • get_raffle() / list_raffles(): чтение для API.
#   • process_deposits_now(): внеочередной проход реестра по одному
#     live-розыгрышу (ручка POST /raffles/{id}/process).
#   • raffle_summary(): публичное представление (без ссылок на ключи).
#
# Канон/инварианты:
#   • Срок розыгрыша строго в будущем и не дальше RAFFLE_MAX_DURATION_DAYS.
#   • Токен-розыгрыш требует тикер, который индексатор знает как выпущенный.
#   • Тикеры хранятся в верхнем регистре.
#   • Ключи кошельков генерирует внешний сервис: сюда приходит только адрес
#     и ссылка на ключ.
# =============================================================================

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.errors_core import NotFoundError, RaffleStateError, ValidationError
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.utils_core import decimal_from, ensure_utc, format_decimal_str, new_raffle_id, utcnow
from raffle_backend.app.integrations.chain_gateway import ChainGateway
from raffle_backend.app.services import ledger_service
from raffle_backend.app.services.ledger_service import IngestResult
from raffle_backend.app.services.raffle_state import AssetKind, RaffleState, RaffleStatus, RaffleStore
from raffle_backend.app.services.reconciliation_service import deposit_ticker_for_gateway

logger = get_logger(__name__)
settings = get_settings()


def _positive_decimal(name: str, value: Any) -> Decimal:
    try:
        d = decimal_from(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{name} must be a number.", details={"field": name}) from None
    if not d.is_finite() or d <= 0:
        raise ValidationError(f"{name} must be positive.", details={"field": name})
    return d


def _norm_ticker(ticker: Optional[str]) -> str:
    return (ticker or "").strip().upper()


async def _resolve_ticker(gateway: ChainGateway, kind: AssetKind, ticker: Optional[str], field: str) -> str:
    """Нативный актив → NATIVE_TICKER; токен → проверенный тикер."""
    if kind == AssetKind.NATIVE:
        return settings.NATIVE_TICKER
    tick = _norm_ticker(ticker)
    if not tick:
        raise ValidationError("Token raffles require a token ticker.", details={"field": field})
    if not await gateway.token_is_deployed(tick):
        raise ValidationError("Invalid or un-deployed token ticker.", details={"field": field, "ticker": tick})
    return tick


async def create_raffle(
    store: RaffleStore,
    gateway: ChainGateway,
    *,
    creator_address: str,
    receiving_address: str,
    signing_key_ref: str,
    deposit_asset: AssetKind,
    expires_at: datetime,
    credit_conversion: Any,
    prize_amount: Any,
    deposit_ticker: Optional[str] = None,
    prize_asset: AssetKind = AssetKind.NATIVE,
    prize_ticker: Optional[str] = None,
    prize_display: Optional[str] = None,
    winners_requested: int = 1,
    treasury_address: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RaffleState:
    """Проверяет параметры и создаёт live-розыгрыш."""
    now = now or utcnow()

    for name, value in (
        ("creator_address", creator_address),
        ("receiving_address", receiving_address),
        ("signing_key_ref", signing_key_ref),
    ):
        if not (value or "").strip():
            raise ValidationError(f"{name} is required.", details={"field": name})

    treasury = (treasury_address or settings.TREASURY_ADDRESS or "").strip()
    if not treasury:
        raise ValidationError("Treasury address is not configured.", details={"field": "treasury_address"})

    expires = ensure_utc(expires_at)
    if expires <= now:
        raise ValidationError("Time frame cannot be in the past.", details={"field": "expires_at"})
    if expires > now + timedelta(days=settings.RAFFLE_MAX_DURATION_DAYS):
        raise ValidationError(
            f"Time frame exceeds maximum {settings.RAFFLE_MAX_DURATION_DAYS}-day period.",
            details={"field": "expires_at"},
        )

    conversion = _positive_decimal("credit_conversion", credit_conversion)
    prize = _positive_decimal("prize_amount", prize_amount)

    if not 1 <= int(winners_requested) <= settings.RAFFLE_MAX_WINNERS:
        raise ValidationError(
            f"winners_requested must be between 1 and {settings.RAFFLE_MAX_WINNERS}.",
            details={"field": "winners_requested"},
        )

    dep_ticker = await _resolve_ticker(gateway, deposit_asset, deposit_ticker, "deposit_ticker")
    prz_ticker = await _resolve_ticker(gateway, prize_asset, prize_ticker, "prize_ticker")

    raffle = RaffleState(
        raffle_id=new_raffle_id(),
        creator_address=creator_address.strip(),
        receiving_address=receiving_address.strip(),
        signing_key_ref=signing_key_ref.strip(),
        treasury_address=treasury,
        deposit_asset=deposit_asset,
        deposit_ticker=dep_ticker,
        prize_asset=prize_asset,
        prize_ticker=prz_ticker,
        credit_conversion=conversion,
        prize_amount=prize,
        winners_requested=int(winners_requested),
        expires_at=expires,
        created_at=now,
        prize_display=prize_display,
    )
    await store.create(raffle)
    logger.info(
        "Raffle registered",
        extra={"raffle_id": raffle.raffle_id, "deposit_ticker": dep_ticker, "expires_at": expires.isoformat()},
    )
    return raffle


async def get_raffle(store: RaffleStore, raffle_id: str) -> RaffleState:
    raffle = await store.get(raffle_id)
    if raffle is None:
        raise NotFoundError(details={"raffle_id": raffle_id})
    return raffle


async def list_raffles(store: RaffleStore, creator: Optional[str] = None) -> List[RaffleState]:
    return await store.list(creator=creator)


async def process_deposits_now(
    store: RaffleStore,
    gateway: ChainGateway,
    raffle_id: str,
    *,
    now: Optional[datetime] = None,
) -> tuple[RaffleState, IngestResult]:
    """
    Внеочередной ingest для live-розыгрыша. Жеребьёвку не запускает: переход
    в completed делает только сверка.
    """
    raffle = await get_raffle(store, raffle_id)
    if raffle.status != RaffleStatus.LIVE:
        raise RaffleStateError("Deposits are only processed while the raffle is live.")
    txs = await gateway.list_transactions(
        raffle.receiving_address,
        deposit_ticker_for_gateway(raffle),
        known_txids=raffle.known_txids(),
    )
    result = ledger_service.ingest(raffle, txs, now=now or utcnow())
    if result.credited:
        await store.save(raffle)
    return raffle, result


def format_credits(value: Decimal) -> str:
    """Кредиты дробные: до 18 знаков без хвостовых нулей."""
    return format_decimal_str(value, 18)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def raffle_summary(raffle: RaffleState) -> Dict[str, Any]:
    """Публичное представление розыгрыша (без signing_key_ref и draw_seed до завершения)."""
    return {
        "raffle_id": raffle.raffle_id,
        "creator_address": raffle.creator_address,
        "receiving_address": raffle.receiving_address,
        "treasury_address": raffle.treasury_address,
        "deposit_asset": raffle.deposit_asset.value,
        "deposit_ticker": raffle.deposit_ticker,
        "prize_asset": raffle.prize_asset.value,
        "prize_ticker": raffle.prize_ticker,
        "prize_amount": format_decimal_str(raffle.prize_amount),
        "prize_display": raffle.prize_display,
        "credit_conversion": format_decimal_str(raffle.credit_conversion),
        "winners_requested": raffle.winners_requested,
        "status": raffle.status.value,
        "expires_at": _iso(raffle.expires_at),
        "created_at": _iso(raffle.created_at),
        "completed_at": _iso(raffle.completed_at),
        "total_entries": format_credits(raffle.total_entries),
        "current_entries": format_credits(raffle.current_entries),
        "entries": [
            {
                "wallet_address": e.wallet_address,
                "credits": format_credits(e.total_credits_added),
                "amount": format_decimal_str(e.total_amount),
                "last_confirmed_at": _iso(e.last_confirmed_at),
            }
            for e in raffle.ordered_entries()
        ],
        "deposits_count": len(raffle.deposits),
        "winners": list(raffle.winners),
        "draw_seed": raffle.draw_seed if raffle.status == RaffleStatus.COMPLETED else None,
        "prize_dispersed": raffle.prize_dispersed,
        "prize_payouts": [
            {
                "winner_address": p.winner_address,
                "txid": p.txid,
                "amount": format_decimal_str(p.amount),
                "paid_at": _iso(p.paid_at),
            }
            for p in raffle.prize_payouts.values()
        ],
        "generated_tokens_dispersed": raffle.generated_tokens_dispersed,
        "settlement_in_progress": raffle.generated_tokens_dispersal_in_progress,
        "settlement_amount": (
            format_decimal_str(raffle.settlement_amount) if raffle.settlement_amount is not None else None
        ),
        "settlement_transfers": [
            {
                "step": t.step.value,
                "destination": t.destination,
                "amount": format_decimal_str(t.amount),
                "txid": t.txid,
            }
            for t in raffle.settlement_transfers.values()
        ],
    }


__all__ = [
    "create_raffle",
    "get_raffle",
    "list_raffles",
    "process_deposits_now",
    "raffle_summary",
    "format_credits",
]
