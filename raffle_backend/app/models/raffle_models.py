# -*- coding: utf-8 -*-
# raffle_backend/app/models/raffle_models.py
# =============================================================================
# Назначение кода:
#   SQLAlchemy-модели розыгрыша: карточка розыгрыша с агрегатами и флагами,
#   депозиты, записи участников, победители, выплаты призов, шаги расчёта.
#
# Канон/инварианты:
#   • Бизнес-логики нет: модели только описывают структуру данных.
#   • Уникальность на уровне БД:
#       - (raffle_pk, txid)            один депозит на транзакцию;
#       - (raffle_pk, wallet_address)  одна запись на кошелёк;
#       - (raffle_pk, winner_address)  одна выплата приза на победителя;
#       - (raffle_pk, step)            один завершённый шаг расчёта.
#   • Суммы: Numeric(38, 8); кредиты: Numeric(48, 18) (дробные, без округления
#     на входе, БД хранит 18 знаков).
#
# Запреты:
#   • Никаких ключей подписи: только signing_key_ref (ссылка).
# =============================================================================

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.config_core import get_settings
from ..core.database_core import Base

_settings = get_settings()
SCHEMA: Optional[str] = _settings.db_schema

RAFFLE_STATUS_ENUM = ("live", "completed")
ASSET_KIND_ENUM = ("native", "token")
SETTLEMENT_STEP_ENUM = ("top_up", "fee", "remainder", "sweep")

AMOUNT = Numeric(38, 8)
CREDITS = Numeric(48, 18)


def _fk(target: str) -> str:
    return f"{SCHEMA}.{target}" if SCHEMA else target


def _table_args(*items):
    return (*items, {"schema": SCHEMA})


# =============================================================================
# МОДЕЛИ
# =============================================================================


class Raffle(Base):
    """Карточка розыгрыша: классификация, агрегаты реестра, флаги выплат, аренда."""

    __tablename__ = "raffles"
    __table_args__ = _table_args(
        CheckConstraint(f"status IN {RAFFLE_STATUS_ENUM}", name="raffle_status_check"),
        CheckConstraint(f"deposit_asset IN {ASSET_KIND_ENUM}", name="raffle_deposit_asset_check"),
        CheckConstraint(f"prize_asset IN {ASSET_KIND_ENUM}", name="raffle_prize_asset_check"),
        CheckConstraint("winners_requested >= 1", name="raffle_winners_requested_pos"),
        CheckConstraint("credit_conversion > 0", name="raffle_credit_conversion_pos"),
        CheckConstraint("prize_amount > 0", name="raffle_prize_amount_pos"),
        Index("ix_raffles_creator", "creator_address"),
        Index("ix_raffles_attention", "status", "prize_dispersed", "generated_tokens_dispersed"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    raffle_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    creator_address: Mapped[str] = mapped_column(String(128), nullable=False)
    receiving_address: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    signing_key_ref: Mapped[str] = mapped_column(String(256), nullable=False)
    treasury_address: Mapped[str] = mapped_column(String(128), nullable=False)

    deposit_asset: Mapped[str] = mapped_column(String(8), nullable=False)
    deposit_ticker: Mapped[str] = mapped_column(String(32), nullable=False)
    prize_asset: Mapped[str] = mapped_column(String(8), nullable=False)
    prize_ticker: Mapped[str] = mapped_column(String(32), nullable=False)
    prize_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    prize_display: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    credit_conversion: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    winners_requested: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="live")

    total_entries: Mapped[Decimal] = mapped_column(CREDITS, nullable=False, default=Decimal(0))
    current_entries: Mapped[Decimal] = mapped_column(CREDITS, nullable=False, default=Decimal(0))

    draw_seed: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    prize_dispersed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    generated_tokens_dispersed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Аренда расчёта: время захвата; NULL = свободна
    settlement_lease_acquired_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    settlement_amount: Mapped[Optional[Decimal]] = mapped_column(AMOUNT, nullable=True)

    deposits: Mapped[List["RaffleDeposit"]] = relationship(
        back_populates="raffle",
        cascade="all, delete-orphan",
        lazy="raise_on_sql",
        order_by="RaffleDeposit.id",
    )
    entries: Mapped[List["RaffleEntry"]] = relationship(
        back_populates="raffle",
        cascade="all, delete-orphan",
        lazy="raise_on_sql",
        order_by="RaffleEntry.position",
    )
    winners: Mapped[List["RaffleWinner"]] = relationship(
        back_populates="raffle",
        cascade="all, delete-orphan",
        lazy="raise_on_sql",
        order_by="RaffleWinner.position",
    )
    prize_payouts: Mapped[List["RafflePrizePayout"]] = relationship(
        back_populates="raffle",
        cascade="all, delete-orphan",
        lazy="raise_on_sql",
        order_by="RafflePrizePayout.id",
    )
    settlement_transfers: Mapped[List["RaffleSettlementTransfer"]] = relationship(
        back_populates="raffle",
        cascade="all, delete-orphan",
        lazy="raise_on_sql",
        order_by="RaffleSettlementTransfer.id",
    )


class RaffleDeposit(Base):
    """Учтённая входящая транзакция. UNIQUE(raffle_pk, txid) = идемпотентность."""

    __tablename__ = "raffle_deposits"
    __table_args__ = _table_args(
        UniqueConstraint("raffle_pk", "txid", name="uq_raffle_deposit_txid"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    raffle_pk: Mapped[int] = mapped_column(
        Integer,
        ForeignKey(_fk("raffles.id"), ondelete="CASCADE"),
        nullable=False,
    )
    txid: Mapped[str] = mapped_column(String(128), nullable=False)
    sender: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    credits_added: Mapped[Decimal] = mapped_column(CREDITS, nullable=False)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    raffle: Mapped["Raffle"] = relationship(back_populates="deposits", lazy="raise_on_sql")


class RaffleEntry(Base):
    """Агрегат по кошельку участника; position = порядок первого депозита."""

    __tablename__ = "raffle_entries"
    __table_args__ = _table_args(
        UniqueConstraint("raffle_pk", "wallet_address", name="uq_raffle_entry_wallet"),
        CheckConstraint("total_credits_added >= 0", name="raffle_entry_credits_nonneg"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    raffle_pk: Mapped[int] = mapped_column(
        Integer,
        ForeignKey(_fk("raffles.id"), ondelete="CASCADE"),
        nullable=False,
    )
    wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    total_credits_added: Mapped[Decimal] = mapped_column(CREDITS, nullable=False, default=Decimal(0))
    total_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=Decimal(0))
    last_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    raffle: Mapped["Raffle"] = relationship(back_populates="entries", lazy="raise_on_sql")


class RaffleWinner(Base):
    """Победитель; position задаёт порядок выбора."""

    __tablename__ = "raffle_winners"
    __table_args__ = _table_args(
        UniqueConstraint("raffle_pk", "position", name="uq_raffle_winner_position"),
        UniqueConstraint("raffle_pk", "wallet_address", name="uq_raffle_winner_wallet"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    raffle_pk: Mapped[int] = mapped_column(
        Integer,
        ForeignKey(_fk("raffles.id"), ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)

    raffle: Mapped["Raffle"] = relationship(back_populates="winners", lazy="raise_on_sql")


class RafflePrizePayout(Base):
    """Выплата приза победителю. UNIQUE(raffle_pk, winner_address)."""

    __tablename__ = "raffle_prize_payouts"
    __table_args__ = _table_args(
        UniqueConstraint("raffle_pk", "winner_address", name="uq_raffle_prize_payout_winner"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    raffle_pk: Mapped[int] = mapped_column(
        Integer,
        ForeignKey(_fk("raffles.id"), ondelete="CASCADE"),
        nullable=False,
    )
    winner_address: Mapped[str] = mapped_column(String(128), nullable=False)
    txid: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    raffle: Mapped["Raffle"] = relationship(back_populates="prize_payouts", lazy="raise_on_sql")


class RaffleSettlementTransfer(Base):
    """Завершённый шаг расчёта. txid NULL = шаг завершён без перевода."""

    __tablename__ = "raffle_settlement_transfers"
    __table_args__ = _table_args(
        UniqueConstraint("raffle_pk", "step", name="uq_raffle_settlement_step"),
        CheckConstraint(f"step IN {SETTLEMENT_STEP_ENUM}", name="raffle_settlement_step_check"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    raffle_pk: Mapped[int] = mapped_column(
        Integer,
        ForeignKey(_fk("raffles.id"), ondelete="CASCADE"),
        nullable=False,
    )
    step: Mapped[str] = mapped_column(String(16), nullable=False)
    destination: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    txid: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    raffle: Mapped["Raffle"] = relationship(back_populates="settlement_transfers", lazy="raise_on_sql")


__all__ = [
    "SCHEMA",
    "Raffle",
    "RaffleDeposit",
    "RaffleEntry",
    "RaffleWinner",
    "RafflePrizePayout",
    "RaffleSettlementTransfer",
]
