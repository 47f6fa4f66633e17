# -*- coding: utf-8 -*-
# raffle_backend/app/services/raffle_state.py
# =============================================================================
# Raffle Engine: доменный агрегат розыгрыша
# -----------------------------------------------------------------------------
# Назначение:
#   Описывает розыгрыш как единый агрегат в памяти (RaffleState) и его
#   вложенные записи: депозиты, записи участников, выплаты призов, шаги расчёта.
#   Реестр, выбор победителей, выплаты и сверка работают только с этими
#   объектами; ORM-слой (crud/raffles_crud.py) переводит их в строки БД и обратно.
#
# Канон/инварианты:
#   • txid встречается в deposits не более одного раза за всю жизнь розыгрыша.
#   • total_entries == current_entries == Σ entries[*].total_credits_added.
#   • winners назначаются один раз, при переходе live → completed.
#   • prize_payouts ключуются адресом победителя: два платежа одному адресу
#     невозможны структурно.
#   • settlement_transfers ключуются шагом: повторно завершённый шаг не делается.
#   • generated_tokens_dispersed переходит false → true не более одного раза.
#
# Запреты:
#   • Никаких внешних вызовов и операций с БД в этом модуле.
#   • Никаких ключей подписи: только непрозрачные ссылки (signing_key_ref).
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Protocol, Set


class AssetKind(str, Enum):
    """Вид актива: нативная монета сети или фунгибельный токен с тикером."""

    NATIVE = "native"
    TOKEN = "token"


class RaffleStatus(str, Enum):
    LIVE = "live"
    COMPLETED = "completed"


class SettlementStep(str, Enum):
    """Шаги расчёта по собранным депозитам (в порядке исполнения)."""

    TOP_UP = "top_up"
    FEE = "fee"
    REMAINDER = "remainder"
    SWEEP = "sweep"


# Последовательность шагов расчёта по виду депозитного актива
SETTLEMENT_PLAN: Dict[AssetKind, tuple] = {
    AssetKind.TOKEN: (
        SettlementStep.TOP_UP,
        SettlementStep.FEE,
        SettlementStep.REMAINDER,
        SettlementStep.SWEEP,
    ),
    AssetKind.NATIVE: (
        SettlementStep.TOP_UP,
        SettlementStep.SWEEP,
    ),
}


@dataclass
class DepositRecord:
    """Учтённая входящая транзакция (уникальна по txid)."""

    txid: str
    sender: str
    amount: Decimal
    credits_added: Decimal
    observed_at: datetime
    confirmed_at: Optional[datetime] = None


@dataclass
class EntryRecord:
    """Агрегат по кошельку участника; position задаёт стабильный порядок обхода."""

    wallet_address: str
    total_credits_added: Decimal = Decimal(0)
    total_amount: Decimal = Decimal(0)
    last_confirmed_at: Optional[datetime] = None
    position: int = 0


@dataclass
class PrizePayout:
    winner_address: str
    txid: str
    amount: Decimal
    paid_at: datetime


@dataclass
class SettlementTransfer:
    """
    Завершённый шаг расчёта. txid=None означает, что шаг завершён без перевода
    (резерв уже достаточен, нечего свипать, нулевая сумма).
    """

    step: SettlementStep
    destination: str
    amount: Decimal
    txid: Optional[str]
    completed_at: datetime


@dataclass(frozen=True)
class LeaseClaim:
    """
    Захваченная аренда расчёта. reclaimed_from: момент захвата просроченной
    аренды, которую заменил этот захват (None, если аренда была свободна).
    """

    acquired_at: datetime
    reclaimed_from: Optional[datetime] = None


@dataclass
class RaffleState:
    """Агрегат розыгрыша: идентичность, классификация, реестр, итог, выплаты."""

    raffle_id: str
    creator_address: str
    receiving_address: str
    signing_key_ref: str
    treasury_address: str

    deposit_asset: AssetKind
    deposit_ticker: str
    prize_asset: AssetKind
    prize_ticker: str
    credit_conversion: Decimal
    prize_amount: Decimal
    winners_requested: int
    expires_at: datetime
    created_at: datetime
    prize_display: Optional[str] = None

    status: RaffleStatus = RaffleStatus.LIVE
    completed_at: Optional[datetime] = None

    # Реестр кредитов
    total_entries: Decimal = Decimal(0)
    current_entries: Decimal = Decimal(0)
    deposits: List[DepositRecord] = field(default_factory=list)
    entries: Dict[str, EntryRecord] = field(default_factory=dict)

    # Итог жеребьёвки
    winners: List[str] = field(default_factory=list)
    draw_seed: Optional[str] = None

    # Выплата призов
    prize_dispersed: bool = False
    prize_payouts: Dict[str, PrizePayout] = field(default_factory=dict)

    # Расчёт по собранным депозитам
    generated_tokens_dispersed: bool = False
    settlement_lease_acquired_at: Optional[datetime] = None
    settlement_amount: Optional[Decimal] = None
    settlement_transfers: Dict[SettlementStep, SettlementTransfer] = field(default_factory=dict)

    # ------------------------------------------------------------------ helpers

    def known_txids(self) -> Set[str]:
        return {d.txid for d in self.deposits}

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_terminal(self) -> bool:
        return (
            self.status == RaffleStatus.COMPLETED
            and self.prize_dispersed
            and self.generated_tokens_dispersed
        )

    def needs_attention(self) -> bool:
        return self.status == RaffleStatus.LIVE or not self.is_terminal()

    def lease_held(self, now: datetime, max_hold: timedelta) -> bool:
        """Аренда расчёта удерживается и ещё не просрочена."""
        acquired = self.settlement_lease_acquired_at
        return acquired is not None and now - acquired < max_hold

    @property
    def generated_tokens_dispersal_in_progress(self) -> bool:
        return self.settlement_lease_acquired_at is not None

    def ordered_entries(self) -> List[EntryRecord]:
        return sorted(self.entries.values(), key=lambda e: e.position)


class RaffleStore(Protocol):
    """
    Контракт хранилища агрегата. Единица персистентности: read-modify-write
    одного розыгрыша. Аренда расчёта меняется только claim/release, а не save().

    save() сливает депозиты по txid и пересчитывает записи участников и
    агрегаты из объединённого списка депозитов; объединённый реестр
    записывается обратно в переданный агрегат.
    """

    async def create(self, raffle: RaffleState) -> RaffleState: ...

    async def get(self, raffle_id: str) -> Optional[RaffleState]: ...

    async def list(self, creator: Optional[str] = None) -> List[RaffleState]: ...

    async def list_needing_attention(self) -> List[RaffleState]: ...

    async def save(self, raffle: RaffleState) -> RaffleState: ...

    async def claim_settlement_lease(
        self,
        raffle_id: str,
        now: datetime,
        max_hold: timedelta,
    ) -> Optional[LeaseClaim]: ...

    async def release_settlement_lease(self, raffle_id: str, acquired_at: datetime) -> bool:
        """Снимает аренду, только если она всё ещё та, что захвачена в acquired_at."""
        ...


__all__ = [
    "AssetKind",
    "RaffleStatus",
    "SettlementStep",
    "SETTLEMENT_PLAN",
    "DepositRecord",
    "EntryRecord",
    "PrizePayout",
    "SettlementTransfer",
    "LeaseClaim",
    "RaffleState",
    "RaffleStore",
]
