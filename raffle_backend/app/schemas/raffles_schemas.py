# -*- coding: utf-8 -*-
# raffle_backend/app/schemas/raffles_schemas.py
# =============================================================================
# Назначение кода:
#   Pydantic-схемы API розыгрышей: создание, карточка, список, ручной ingest.
#
# Канон / инварианты:
#   • Денежные значения и кредиты наружу отдаются СТРОКОЙ (без float).
#   • Ссылка на ключ подписи принимается при создании, но никогда не
#     возвращается в ответах.
#   • В схемах нет бизнес-логики: только форма данных и базовые ограничения.
# =============================================================================

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from raffle_backend.app.services.raffle_state import AssetKind


class RaffleCreateIn(BaseModel):
    """Тело POST /raffles."""

    creator_address: str = Field(..., min_length=1, max_length=128, description="Кошелёк создателя")
    receiving_address: str = Field(..., min_length=1, max_length=128, description="Адрес депозитов розыгрыша")
    signing_key_ref: str = Field(..., min_length=1, max_length=256, description="Ссылка на ключ адреса розыгрыша")
    deposit_asset: AssetKind = Field(..., description="native | token")
    deposit_ticker: Optional[str] = Field(None, max_length=32, description="Тикер токена депозита")
    prize_asset: AssetKind = Field(AssetKind.NATIVE, description="native | token")
    prize_ticker: Optional[str] = Field(None, max_length=32, description="Тикер токена приза")
    prize_amount: Decimal = Field(..., gt=0, description="Общий приз в отображаемых единицах")
    prize_display: Optional[str] = Field(None, max_length=200, description="Описание приза")
    credit_conversion: Decimal = Field(..., gt=0, description="Единиц депозита на один кредит")
    winners_requested: int = Field(1, ge=1, description="Сколько победителей")
    expires_at: datetime = Field(..., description="Окончание приёма депозитов (UTC)")
    treasury_address: Optional[str] = Field(None, max_length=128, description="Адрес казначейства")

    @field_validator("deposit_ticker", "prize_ticker")
    @classmethod
    def _upper(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v else v


class EntryOut(BaseModel):
    wallet_address: str
    credits: str
    amount: str
    last_confirmed_at: Optional[str] = None


class PrizePayoutOut(BaseModel):
    winner_address: str
    txid: str
    amount: str
    paid_at: Optional[str] = None


class SettlementTransferOut(BaseModel):
    step: str
    destination: str
    amount: str
    txid: Optional[str] = None


class RaffleOut(BaseModel):
    """Публичная карточка розыгрыша."""

    raffle_id: str
    creator_address: str
    receiving_address: str
    treasury_address: str
    deposit_asset: str
    deposit_ticker: str
    prize_asset: str
    prize_ticker: str
    prize_amount: str
    prize_display: Optional[str] = None
    credit_conversion: str
    winners_requested: int
    status: str
    expires_at: str
    created_at: str
    completed_at: Optional[str] = None
    total_entries: str
    current_entries: str
    entries: List[EntryOut] = Field(default_factory=list)
    deposits_count: int = 0
    winners: List[str] = Field(default_factory=list)
    draw_seed: Optional[str] = None
    prize_dispersed: bool = False
    prize_payouts: List[PrizePayoutOut] = Field(default_factory=list)
    generated_tokens_dispersed: bool = False
    settlement_in_progress: bool = False
    settlement_amount: Optional[str] = None
    settlement_transfers: List[SettlementTransferOut] = Field(default_factory=list)


class RaffleCreatedOut(BaseModel):
    success: bool = True
    raffle_id: str
    raffle: RaffleOut


class RaffleDetailOut(BaseModel):
    success: bool = True
    raffle: RaffleOut


class RaffleListOut(BaseModel):
    success: bool = True
    raffles: List[RaffleOut]


class ProcessDepositsOut(BaseModel):
    success: bool = True
    credited: int
    duplicates: int
    ignored: int
    malformed: int
    credits_added: str
    raffle: RaffleOut


__all__ = [
    "RaffleCreateIn",
    "EntryOut",
    "PrizePayoutOut",
    "SettlementTransferOut",
    "RaffleOut",
    "RaffleCreatedOut",
    "RaffleDetailOut",
    "RaffleListOut",
    "ProcessDepositsOut",
]
