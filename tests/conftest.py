# -*- coding: utf-8 -*-
# tests/conftest.py
# =============================================================================
# Общие фикстуры: окружение, фейковые шлюз/исполнитель, хранилище в памяти.
# Окружение выставляется ДО импорта пакета: настройки кэшируются при импорте.
# =============================================================================
from __future__ import annotations

import os

os.environ["ENV"] = "local"
os.environ["DB_SCHEMA_RAFFLES"] = ""
os.environ.setdefault("TREASURY_ADDRESS", "kaspa:treasury")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.pytest_raffles.db")
os.environ["ALERT_TELEGRAM_BOT_TOKEN"] = ""
os.environ["ALERT_TELEGRAM_CHAT_ID"] = ""

import copy
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set

import pytest

from raffle_backend.app.core.errors_core import GatewayError, PaymentError
from raffle_backend.app.integrations.chain_gateway import RawTransaction, TxOutput
from raffle_backend.app.integrations.payment_executor import TransferRequest
from raffle_backend.app.services import ledger_service
from raffle_backend.app.services.operator_alerts import OperatorAlerts
from raffle_backend.app.services.raffle_state import AssetKind, LeaseClaim, RaffleState, RaffleStatus

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
RECEIVING = "kaspa:raffle-receiving"
CREATOR = "kaspa:creator"
TREASURY = "kaspa:treasury"
RAFFLE_KEY = "vault/raffle-1"


def to_base_units(amount) -> int:
    return int(Decimal(str(amount)) * 10**8)


def native_tx(
    txid: str,
    sender: Optional[str],
    amount,
    *,
    to: str = RECEIVING,
    confirmed_at: Optional[datetime] = None,
    change: Optional[int] = None,
) -> RawTransaction:
    outputs = [TxOutput(address=to, amount=to_base_units(amount))]
    if change is not None:
        outputs.append(TxOutput(address=sender or "", amount=change))
    return RawTransaction(
        txid=txid,
        sender=sender,
        outputs=outputs,
        confirmed_at=confirmed_at or NOW - timedelta(minutes=5),
    )


def token_op(txid: str, sender: str, amount, *, op: str = "transfer", to: str = RECEIVING) -> RawTransaction:
    return RawTransaction(
        txid=txid,
        sender=sender,
        outputs=[TxOutput(address=to, amount=to_base_units(amount))],
        op_kind=op,
        confirmed_at=NOW - timedelta(minutes=5),
    )


def make_raffle(**overrides) -> RaffleState:
    data = dict(
        raffle_id="r-1",
        creator_address=CREATOR,
        receiving_address=RECEIVING,
        signing_key_ref=RAFFLE_KEY,
        treasury_address=TREASURY,
        deposit_asset=AssetKind.NATIVE,
        deposit_ticker="KAS",
        prize_asset=AssetKind.NATIVE,
        prize_ticker="KAS",
        credit_conversion=Decimal("100"),
        prize_amount=Decimal("1000"),
        winners_requested=1,
        expires_at=NOW + timedelta(hours=1),
        created_at=NOW - timedelta(hours=1),
    )
    data.update(overrides)
    return RaffleState(**data)


class FakeGateway:
    """Шлюз блокчейна в памяти: отдаёт заданный список и балансы."""

    def __init__(
        self,
        transactions: Iterable[RawTransaction] = (),
        *,
        native_balance="0",
        token_balance="0",
        deployed: Iterable[str] = ("NACHO",),
    ) -> None:
        self.transactions: List[RawTransaction] = list(transactions)
        self.native_balance = Decimal(str(native_balance))
        self.token_balance = Decimal(str(token_balance))
        self.deployed: Set[str] = set(deployed)
        self.fail_listing = False
        self.fail_balances = False
        self.listed: List[tuple] = []

    async def list_transactions(
        self, address: str, ticker: Optional[str] = None, *, known_txids=None
    ) -> List[RawTransaction]:
        self.listed.append((address, ticker))
        if self.fail_listing:
            raise GatewayError("Chain gateway request failed.")
        return list(self.transactions)

    async def get_native_balance(self, address: str) -> Decimal:
        if self.fail_balances:
            raise GatewayError("Chain gateway request failed.")
        return self.native_balance

    async def get_token_balance(self, address: str, ticker: str) -> Decimal:
        if self.fail_balances:
            raise GatewayError("Chain gateway request failed.")
        return self.token_balance

    async def token_is_deployed(self, ticker: str) -> bool:
        return ticker in self.deployed


class FakePaymentExecutor:
    """Исполнитель платежей в памяти: пишет запросы, выдаёт txid, умеет падать."""

    def __init__(self) -> None:
        self.requests: List[TransferRequest] = []
        self.fail_destinations: Set[str] = set()
        self.fail_after: Optional[int] = None
        self._counter = 0

    async def send(self, request: TransferRequest) -> str:
        if request.destination in self.fail_destinations:
            raise PaymentError("Payment executor rejected the transfer.")
        if self.fail_after is not None and len(self.requests) >= self.fail_after:
            raise PaymentError("Payment executor is unreachable.")
        self._counter += 1
        self.requests.append(request)
        return f"tx-{self._counter}"

    def sent_to(self, destination: str) -> List[TransferRequest]:
        return [r for r in self.requests if r.destination == destination]


class InMemoryRaffleStore:
    """
    Хранилище с тем же контрактом, что RafflesCRUD: копии агрегатов,
    слияние депозитов по txid с пересчётом реестра, монотонные флаги,
    аренда меняется только claim/release.
    """

    def __init__(self, *raffles: RaffleState) -> None:
        self._rows: Dict[str, RaffleState] = {}
        self.saves = 0
        for raffle in raffles:
            self._rows[raffle.raffle_id] = copy.deepcopy(raffle)

    async def create(self, raffle: RaffleState) -> RaffleState:
        if raffle.raffle_id in self._rows:
            raise ValueError("duplicate raffle_id")
        self._rows[raffle.raffle_id] = copy.deepcopy(raffle)
        return raffle

    async def get(self, raffle_id: str) -> Optional[RaffleState]:
        row = self._rows.get(raffle_id)
        return copy.deepcopy(row) if row is not None else None

    async def list(self, creator: Optional[str] = None) -> List[RaffleState]:
        rows = [r for r in self._rows.values() if creator is None or r.creator_address == creator]
        rows.sort(key=lambda r: r.total_entries, reverse=True)
        return [copy.deepcopy(r) for r in rows]

    async def list_needing_attention(self) -> List[RaffleState]:
        rows = [r for r in self._rows.values() if r.needs_attention()]
        rows.sort(key=lambda r: r.expires_at)
        return [copy.deepcopy(r) for r in rows]

    async def save(self, raffle: RaffleState) -> RaffleState:
        stored = self._rows.get(raffle.raffle_id)
        if stored is None:
            raise LookupError(raffle.raffle_id)
        known = stored.known_txids()
        merged = list(stored.deposits) + [d for d in raffle.deposits if d.txid not in known]
        ledger_service.apply_deposits(raffle, copy.deepcopy(merged))

        snapshot = copy.deepcopy(raffle)
        snapshot.settlement_lease_acquired_at = stored.settlement_lease_acquired_at
        snapshot.prize_dispersed = stored.prize_dispersed or raffle.prize_dispersed
        snapshot.generated_tokens_dispersed = stored.generated_tokens_dispersed or raffle.generated_tokens_dispersed
        if stored.status == RaffleStatus.COMPLETED:
            snapshot.status = stored.status
            snapshot.completed_at = stored.completed_at
        self._rows[raffle.raffle_id] = snapshot
        self.saves += 1
        return raffle

    async def claim_settlement_lease(self, raffle_id: str, now: datetime, max_hold: timedelta) -> Optional[LeaseClaim]:
        row = self._rows[raffle_id]
        if row.generated_tokens_dispersed or row.lease_held(now, max_hold):
            return None
        previous = row.settlement_lease_acquired_at
        row.settlement_lease_acquired_at = now
        return LeaseClaim(acquired_at=now, reclaimed_from=previous)

    async def release_settlement_lease(self, raffle_id: str, acquired_at: datetime) -> bool:
        row = self._rows[raffle_id]
        if row.settlement_lease_acquired_at != acquired_at:
            return False
        row.settlement_lease_acquired_at = None
        return True

    def stored(self, raffle_id: str) -> RaffleState:
        return self._rows[raffle_id]


class RecordingAlerts(OperatorAlerts):
    """Алерты без сети: только запоминает события."""

    def __init__(self) -> None:
        super().__init__(bot_token="", chat_id="")
        self.events: List[tuple] = []

    async def notify(self, event, message, *, details=None) -> bool:
        self.events.append((event, details or {}))
        return False


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def executor() -> FakePaymentExecutor:
    return FakePaymentExecutor()


@pytest.fixture
def alerts() -> RecordingAlerts:
    return RecordingAlerts()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()
