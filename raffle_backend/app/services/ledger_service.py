# -*- coding: utf-8 -*-
# raffle_backend/app/services/ledger_service.py
# =============================================================================
# Raffle Engine: реестр кредитов (ingest входящих транзакций)
# -----------------------------------------------------------------------------
# Назначение:
#   Превращает сырой список транзакций из шлюза блокчейна в записи участников
#   и агрегаты розыгрыша. Вызывается сверкой на каждом тике и вручную через
#   API (process_deposits_now). Внешних вызовов не делает.
#
# Канон/инварианты:
#   • Идемпотентность по txid: точное совпадение, один DepositRecord на txid
#     за всю жизнь розыгрыша. Шлюз отдаёт всю историю каждый тик, дубли и
#     перестановки нормальны и поглощаются здесь.
#   • Учитываются только выходы/операции на адрес розыгрыша; у токенов только
#     операции вида "transfer".
#   • credits = amount / credit_conversion, без округления (дробные кредиты
#     копятся точно, округляются только суммы расчёта).
#   • total_entries == current_entries == Σ entries.total_credits_added:
#     проверяется до и после каждой мутации, расхождение → LedgerInvariantError.
#   • Транзакции, подтверждённые позже expires_at, не кредитуются и не
#     записываются: на каждом опросе они просто снова игнорируются.
#   • Записи участников и агрегаты однозначно выводятся из списка депозитов
#     (rebuild_entries): хранилище пересчитывает их при слиянии.
#
# ИИ-защиты:
#   • Битая транзакция (нет txid, отправителя, суммы) пропускается с warning,
#     остальные в пачке обрабатываются.
#   • Исходящие с адреса розыгрыша (сдача самому себе) не считаются депозитом.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.errors_core import LedgerInvariantError
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.utils_core import base_units_to_display, utcnow
from raffle_backend.app.integrations.chain_gateway import OP_TRANSFER, RawTransaction
from raffle_backend.app.services.raffle_state import (
    AssetKind,
    DepositRecord,
    EntryRecord,
    RaffleState,
    RaffleStatus,
)

logger = get_logger(__name__)
settings = get_settings()


@dataclass
class IngestResult:
    """Итог одного прохода реестра по списку транзакций."""

    credited: int = 0
    duplicates: int = 0
    ignored: int = 0
    malformed: int = 0
    credits_added: Decimal = Decimal(0)


class MalformedTransaction(ValueError):
    """Транзакция без обязательных полей или с неразборчивой суммой."""


def amount_received(raffle: RaffleState, tx: RawTransaction, decimals: Optional[int] = None) -> Decimal:
    """
    Сумма (в отображаемых единицах), реально пришедшая на адрес розыгрыша.
    Выходы на другие адреса (сдача отправителю, сторонние получатели) не
    учитываются.
    """
    dec = settings.BASE_UNIT_DECIMALS if decimals is None else decimals
    total = Decimal(0)
    for out in tx.outputs or []:
        if out.address != raffle.receiving_address:
            continue
        try:
            value = base_units_to_display(out.amount, dec)
        except ValueError as exc:
            raise MalformedTransaction(str(exc)) from exc
        if value < 0:
            raise MalformedTransaction(f"negative output amount {out.amount!r}")
        total += value
    return total


def entries_sum(raffle: RaffleState) -> Decimal:
    return sum((e.total_credits_added for e in raffle.entries.values()), Decimal(0))


def check_invariant(raffle: RaffleState, tolerance: Optional[Decimal] = None) -> None:
    """
    total_entries == current_entries == Σ EntryRecord.total_credits_added.

    Сравнение с допуском: деление на credit_conversion может давать
    бесконечные дроби, а БД хранит их с конечным числом знаков.
    """
    tol = settings.LEDGER_TOLERANCE if tolerance is None else tolerance
    summed = entries_sum(raffle)
    if abs(raffle.total_entries - raffle.current_entries) > tol or abs(raffle.total_entries - summed) > tol:
        details = {
            "raffle_id": raffle.raffle_id,
            "total_entries": str(raffle.total_entries),
            "current_entries": str(raffle.current_entries),
            "entries_sum": str(summed),
        }
        logger.error("Ledger invariant violated", extra=details)
        raise LedgerInvariantError(details=details)


def rebuild_entries(deposits: Iterable[DepositRecord]) -> Dict[str, EntryRecord]:
    """Записи участников из депозитов; position = порядок первого депозита кошелька."""
    entries: Dict[str, EntryRecord] = {}
    for dep in deposits:
        entry = entries.get(dep.sender)
        if entry is None:
            entry = EntryRecord(wallet_address=dep.sender, position=len(entries))
            entries[dep.sender] = entry
        entry.total_credits_added += dep.credits_added
        entry.total_amount += dep.amount
        confirmed = dep.confirmed_at or dep.observed_at
        if entry.last_confirmed_at is None or confirmed > entry.last_confirmed_at:
            entry.last_confirmed_at = confirmed
    return entries


def apply_deposits(raffle: RaffleState, deposits: List[DepositRecord]) -> None:
    """
    Заменяет реестр розыгрыша на выведенный из deposits: записи участников,
    total_entries и current_entries считаются заново.
    """
    raffle.deposits = list(deposits)
    raffle.entries = rebuild_entries(raffle.deposits)
    total = entries_sum(raffle)
    raffle.total_entries = total
    raffle.current_entries = total


def _is_eligible(raffle: RaffleState, tx: RawTransaction) -> bool:
    if raffle.deposit_asset == AssetKind.TOKEN and (tx.op_kind or "").lower() != OP_TRANSFER:
        return False
    if tx.sender and tx.sender == raffle.receiving_address:
        return False
    if tx.confirmed_at is not None and tx.confirmed_at > raffle.expires_at:
        return False
    return True


def ingest(
    raffle: RaffleState,
    raw_transactions: Iterable[RawTransaction],
    *,
    now: Optional[datetime] = None,
    decimals: Optional[int] = None,
) -> IngestResult:
    """
    Кредитует новые депозиты в raffle (мутация на месте) и возвращает сводку.
    Порядок транзакций не влияет на итоговые агрегаты.
    """
    if raffle.status != RaffleStatus.LIVE:
        logger.info("Ingest skipped: raffle is not live", extra={"raffle_id": raffle.raffle_id})
        return IngestResult()

    check_invariant(raffle)
    observed_at = now or utcnow()
    seen = raffle.known_txids()
    result = IngestResult()

    for tx in raw_transactions:
        txid = (getattr(tx, "txid", None) or "").strip()
        if not txid:
            result.malformed += 1
            logger.warning("Ledger: skip transaction without txid", extra={"raffle_id": raffle.raffle_id})
            continue
        if txid in seen:
            result.duplicates += 1
            continue
        if not _is_eligible(raffle, tx):
            result.ignored += 1
            continue
        try:
            amount = amount_received(raffle, tx, decimals)
        except MalformedTransaction as exc:
            result.malformed += 1
            logger.warning(
                "Ledger: skip malformed transaction",
                extra={"raffle_id": raffle.raffle_id, "txid": txid, "error": str(exc)},
            )
            continue
        if amount <= 0:
            result.ignored += 1
            continue
        if not tx.sender:
            result.malformed += 1
            logger.warning(
                "Ledger: skip transaction without sender",
                extra={"raffle_id": raffle.raffle_id, "txid": txid},
            )
            continue

        credits = amount / raffle.credit_conversion
        raffle.deposits.append(
            DepositRecord(
                txid=txid,
                sender=tx.sender,
                amount=amount,
                credits_added=credits,
                observed_at=observed_at,
                confirmed_at=tx.confirmed_at,
            )
        )
        entry = raffle.entries.get(tx.sender)
        if entry is None:
            entry = EntryRecord(wallet_address=tx.sender, position=len(raffle.entries))
            raffle.entries[tx.sender] = entry
        entry.total_credits_added += credits
        entry.total_amount += amount
        confirmed = tx.confirmed_at or observed_at
        if entry.last_confirmed_at is None or confirmed > entry.last_confirmed_at:
            entry.last_confirmed_at = confirmed
        raffle.total_entries += credits
        raffle.current_entries += credits
        seen.add(txid)

        result.credited += 1
        result.credits_added += credits
        logger.info(
            "Ledger: credited deposit",
            extra={
                "raffle_id": raffle.raffle_id,
                "txid": txid,
                "wallet": tx.sender,
                "amount": str(amount),
                "credits": str(credits),
            },
        )

    check_invariant(raffle)
    return result


__all__ = [
    "IngestResult",
    "MalformedTransaction",
    "amount_received",
    "entries_sum",
    "rebuild_entries",
    "apply_deposits",
    "check_invariant",
    "ingest",
]
