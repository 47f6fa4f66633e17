# -*- coding: utf-8 -*-
# raffle_backend/app/crud/raffles_crud.py
# =============================================================================
# Назначение:
#   • Хранилище агрегата розыгрыша поверх SQLAlchemy async (контракт RaffleStore).
#   • Переводит ORM-строки (raffles + дочерние таблицы) в RaffleState и обратно.
#
# Канон/инварианты:
#   • save() = read-modify-write одного розыгрыша под FOR UPDATE и commit на
#     каждый вызов.
#   • total_entries, current_entries и записи участников не копируются из
#     вызывающего агрегата, а пересчитываются из объединённых депозитов.
#   • Депозиты, выплаты призов и шаги расчёта только добавляются (по ключу),
#     никогда не удаляются и не переписываются.
#   • Флаги prize_dispersed / generated_tokens_dispersed в БД не откатываются
#     в false, completed не возвращается в live; winners и draw_seed
#     пишутся только если ещё пусты.
#   • Колонку аренды меняют только claim/release: условный атомарный UPDATE
#     (compare-and-swap по моменту захвата), save() её не трогает. release
#     снимает только свою аренду.
#
# ИИ-защита:
#   • Конфликт уникальности при commit (гонка двух процессов) → rollback и
#     исключение наверх; данные не смешиваются.
# =============================================================================
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import Select, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.utils_core import ensure_utc, utcnow
from raffle_backend.app.models import (
    Raffle,
    RaffleDeposit,
    RaffleEntry,
    RafflePrizePayout,
    RaffleSettlementTransfer,
    RaffleWinner,
)
from raffle_backend.app.services import ledger_service
from raffle_backend.app.services.raffle_state import (
    AssetKind,
    DepositRecord,
    EntryRecord,
    LeaseClaim,
    PrizePayout,
    RaffleState,
    RaffleStatus,
    SettlementStep,
    SettlementTransfer,
)

logger = get_logger(__name__)

_FULL_LOAD = (
    selectinload(Raffle.deposits),
    selectinload(Raffle.entries),
    selectinload(Raffle.winners),
    selectinload(Raffle.prize_payouts),
    selectinload(Raffle.settlement_transfers),
)


def _deposit_record(d: RaffleDeposit) -> DepositRecord:
    return DepositRecord(
        txid=d.txid,
        sender=d.sender,
        amount=d.amount,
        credits_added=d.credits_added,
        observed_at=ensure_utc(d.observed_at),
        confirmed_at=ensure_utc(d.confirmed_at),
    )


def _to_state(row: Raffle) -> RaffleState:
    """ORM-строка → доменный агрегат."""
    return RaffleState(
        raffle_id=row.raffle_id,
        creator_address=row.creator_address,
        receiving_address=row.receiving_address,
        signing_key_ref=row.signing_key_ref,
        treasury_address=row.treasury_address,
        deposit_asset=AssetKind(row.deposit_asset),
        deposit_ticker=row.deposit_ticker,
        prize_asset=AssetKind(row.prize_asset),
        prize_ticker=row.prize_ticker,
        credit_conversion=row.credit_conversion,
        prize_amount=row.prize_amount,
        winners_requested=row.winners_requested,
        expires_at=ensure_utc(row.expires_at),
        created_at=ensure_utc(row.created_at),
        prize_display=row.prize_display,
        status=RaffleStatus(row.status),
        completed_at=ensure_utc(row.completed_at),
        total_entries=row.total_entries,
        current_entries=row.current_entries,
        deposits=[_deposit_record(d) for d in row.deposits],
        entries={
            e.wallet_address: EntryRecord(
                wallet_address=e.wallet_address,
                total_credits_added=e.total_credits_added,
                total_amount=e.total_amount,
                last_confirmed_at=ensure_utc(e.last_confirmed_at),
                position=e.position,
            )
            for e in row.entries
        },
        winners=[w.wallet_address for w in row.winners],
        draw_seed=row.draw_seed,
        prize_dispersed=row.prize_dispersed,
        prize_payouts={
            p.winner_address: PrizePayout(
                winner_address=p.winner_address,
                txid=p.txid,
                amount=p.amount,
                paid_at=ensure_utc(p.paid_at),
            )
            for p in row.prize_payouts
        },
        generated_tokens_dispersed=row.generated_tokens_dispersed,
        settlement_lease_acquired_at=ensure_utc(row.settlement_lease_acquired_at),
        settlement_amount=row.settlement_amount,
        settlement_transfers={
            SettlementStep(t.step): SettlementTransfer(
                step=SettlementStep(t.step),
                destination=t.destination,
                amount=t.amount,
                txid=t.txid,
                completed_at=ensure_utc(t.completed_at),
            )
            for t in row.settlement_transfers
        },
    )


class RafflesCRUD:
    """Хранилище розыгрышей для сервисов, роутов и планировщика."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _select_full(self) -> Select:
        return select(Raffle).options(*_FULL_LOAD).execution_options(populate_existing=True)

    async def _get_row(self, raffle_id: str, *, for_update: bool = False) -> Optional[Raffle]:
        stmt = self._select_full().where(Raffle.raffle_id == raffle_id)
        if for_update:
            stmt = stmt.with_for_update(of=Raffle)
        return await self.session.scalar(stmt)

    async def _commit(self) -> None:
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise

    # ------------------------------------------------------------------ чтение

    async def get(self, raffle_id: str) -> Optional[RaffleState]:
        row = await self._get_row(raffle_id)
        return _to_state(row) if row is not None else None

    async def list(self, creator: Optional[str] = None) -> List[RaffleState]:
        """Все розыгрыши (опционально одного создателя), больше кредитов выше."""
        stmt = self._select_full().order_by(Raffle.total_entries.desc(), Raffle.id.asc())
        if creator:
            stmt = stmt.where(Raffle.creator_address == creator)
        rows = await self.session.scalars(stmt)
        return [_to_state(r) for r in rows]

    async def list_needing_attention(self) -> List[RaffleState]:
        stmt = (
            self._select_full()
            .where(
                or_(
                    Raffle.status == RaffleStatus.LIVE.value,
                    Raffle.prize_dispersed.is_(False),
                    Raffle.generated_tokens_dispersed.is_(False),
                )
            )
            .order_by(Raffle.expires_at.asc(), Raffle.id.asc())
        )
        rows = await self.session.scalars(stmt)
        return [_to_state(r) for r in rows]

    # ------------------------------------------------------------------ запись

    async def create(self, raffle: RaffleState) -> RaffleState:
        row = Raffle(
            raffle_id=raffle.raffle_id,
            creator_address=raffle.creator_address,
            receiving_address=raffle.receiving_address,
            signing_key_ref=raffle.signing_key_ref,
            treasury_address=raffle.treasury_address,
            deposit_asset=raffle.deposit_asset.value,
            deposit_ticker=raffle.deposit_ticker,
            prize_asset=raffle.prize_asset.value,
            prize_ticker=raffle.prize_ticker,
            prize_amount=raffle.prize_amount,
            prize_display=raffle.prize_display,
            credit_conversion=raffle.credit_conversion,
            winners_requested=raffle.winners_requested,
            expires_at=raffle.expires_at,
            created_at=raffle.created_at,
            updated_at=utcnow(),
            status=raffle.status.value,
            total_entries=raffle.total_entries,
            current_entries=raffle.current_entries,
            prize_dispersed=False,
            generated_tokens_dispersed=False,
            deposits=[],
            entries=[],
            winners=[],
            prize_payouts=[],
            settlement_transfers=[],
        )
        self.session.add(row)
        await self._commit()
        logger.info("Raffle created", extra={"raffle_id": raffle.raffle_id})
        return raffle

    async def save(self, raffle: RaffleState) -> RaffleState:
        """
        Сливает агрегат в строки БД и коммитит. Строка розыгрыша читается
        под FOR UPDATE: параллельные save() одного розыгрыша идут по очереди.
        Реестр пересчитывается из объединённых депозитов и возвращается в raffle.
        """
        row = await self._get_row(raffle.raffle_id, for_update=True)
        if row is None:
            raise LookupError(f"raffle {raffle.raffle_id} does not exist")

        if row.status != RaffleStatus.COMPLETED.value:
            row.status = raffle.status.value
            row.completed_at = raffle.completed_at
        if row.draw_seed is None:
            row.draw_seed = raffle.draw_seed
        row.prize_dispersed = row.prize_dispersed or raffle.prize_dispersed
        row.generated_tokens_dispersed = row.generated_tokens_dispersed or raffle.generated_tokens_dispersed
        if row.settlement_amount is None:
            row.settlement_amount = raffle.settlement_amount
        row.updated_at = utcnow()

        known_txids = {d.txid for d in row.deposits}
        for dep in raffle.deposits:
            if dep.txid in known_txids:
                continue
            known_txids.add(dep.txid)
            row.deposits.append(
                RaffleDeposit(
                    txid=dep.txid,
                    sender=dep.sender,
                    amount=dep.amount,
                    credits_added=dep.credits_added,
                    observed_at=dep.observed_at,
                    confirmed_at=dep.confirmed_at,
                )
            )

        merged = [_deposit_record(d) for d in row.deposits]
        ledger_service.apply_deposits(raffle, merged)
        row.total_entries = raffle.total_entries
        row.current_entries = raffle.current_entries

        rows_by_wallet: Dict[str, RaffleEntry] = {e.wallet_address: e for e in row.entries}
        next_position = max((e.position for e in row.entries), default=-1) + 1
        for entry in raffle.ordered_entries():
            existing = rows_by_wallet.get(entry.wallet_address)
            if existing is None:
                row.entries.append(
                    RaffleEntry(
                        wallet_address=entry.wallet_address,
                        position=next_position,
                        total_credits_added=entry.total_credits_added,
                        total_amount=entry.total_amount,
                        last_confirmed_at=entry.last_confirmed_at,
                    )
                )
                next_position += 1
            else:
                existing.total_credits_added = entry.total_credits_added
                existing.total_amount = entry.total_amount
                existing.last_confirmed_at = entry.last_confirmed_at

        if not row.winners and raffle.winners:
            for position, wallet in enumerate(raffle.winners):
                row.winners.append(RaffleWinner(position=position, wallet_address=wallet))

        paid = {p.winner_address for p in row.prize_payouts}
        for payout in raffle.prize_payouts.values():
            if payout.winner_address in paid:
                continue
            row.prize_payouts.append(
                RafflePrizePayout(
                    winner_address=payout.winner_address,
                    txid=payout.txid,
                    amount=payout.amount,
                    paid_at=payout.paid_at,
                )
            )

        done_steps = {t.step for t in row.settlement_transfers}
        for transfer in raffle.settlement_transfers.values():
            if transfer.step.value in done_steps:
                continue
            row.settlement_transfers.append(
                RaffleSettlementTransfer(
                    step=transfer.step.value,
                    destination=transfer.destination,
                    amount=transfer.amount,
                    txid=transfer.txid,
                    completed_at=transfer.completed_at,
                )
            )

        await self._commit()
        return raffle

    # ------------------------------------------------------------------ аренда

    async def claim_settlement_lease(
        self,
        raffle_id: str,
        now: datetime,
        max_hold: timedelta,
    ) -> Optional[LeaseClaim]:
        """
        Захват аренды как compare-and-swap: читаем текущее значение, затем
        UPDATE ... WHERE аренда всё ещё равна прочитанному. Заменённое значение
        (просроченная аренда) возвращается в LeaseClaim.reclaimed_from.
        None: аренда занята, расчёт завершён или нас опередили.
        """
        current = (
            await self.session.execute(
                select(Raffle.settlement_lease_acquired_at, Raffle.generated_tokens_dispersed).where(
                    Raffle.raffle_id == raffle_id
                )
            )
        ).first()
        if current is None:
            await self.session.rollback()
            return None
        previous, settled = current
        if settled or (previous is not None and ensure_utc(previous) > now - max_hold):
            await self.session.rollback()
            return None

        if previous is None:
            lease_matches = Raffle.settlement_lease_acquired_at.is_(None)
        else:
            lease_matches = Raffle.settlement_lease_acquired_at == previous
        stmt = (
            update(Raffle)
            .where(
                Raffle.raffle_id == raffle_id,
                Raffle.generated_tokens_dispersed.is_(False),
                lease_matches,
            )
            .values(settlement_lease_acquired_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self._commit()
        if result.rowcount != 1:
            return None
        return LeaseClaim(acquired_at=now, reclaimed_from=ensure_utc(previous))

    async def release_settlement_lease(self, raffle_id: str, acquired_at: datetime) -> bool:
        """
        Снимает аренду, только если она всё ещё наша (захвачена в acquired_at).
        False: аренду уже перехватили, чужую не трогаем.
        """
        stmt = (
            update(Raffle)
            .where(
                Raffle.raffle_id == raffle_id,
                Raffle.settlement_lease_acquired_at == acquired_at,
            )
            .values(settlement_lease_acquired_at=None)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self._commit()
        return result.rowcount == 1


__all__ = ["RafflesCRUD"]
