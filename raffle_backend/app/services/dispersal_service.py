# -*- coding: utf-8 -*-
# raffle_backend/app/services/dispersal_service.py
# =============================================================================
# Raffle Engine: выплата призов и расчёт по собранным депозитам
# -----------------------------------------------------------------------------
# Назначение:
#   • disperse_prizes(): приз делится поровну между победителями и
#     отправляется из казначейства; каждому адресу ровно один платёж.
#   • settle(): расчёт по депозитам розыгрыша под арендой (lease):
#       - токен-розыгрыш: пополнить газ до 15 → комиссия 5% в казначейство →
#         остаток создателю → свип нативного актива выше 15 в казначейство;
#       - нативный розыгрыш: пополнить газ до 3 → свип выше 3 в казначейство.
#
# Канон/инварианты:
#   • Уже оплаченные победители пропускаются по адресу; prize_dispersed = true
#     только когда оплачены все и в этом проходе не было сбоев.
#   • Ошибка выплаты одному победителю не останавливает остальных.
#   • Аренда захватывается атомарно в хранилище ДО любого внешнего вызова и
#     освобождается на любом выходе (finally), причём снимается только своя
#     аренда. Просроченная аренда (старше SETTLEMENT_LEASE_MAX_HOLD_SEC)
#     считается брошенной и перехватывается; алерт уходит, только если захват
#     действительно заменил чужую аренду.
#   • Сумма расчёта берётся из одного источника (живой баланс токена на
#     адресе розыгрыша), фиксируется при первом запуске и сохраняется до
#     первой отправки.
#   • Каждый завершённый шаг сохраняется (SettlementTransfer): повтор после
#     частичного сбоя продолжает со следующего шага, ничего не пересылая.
#   • fee = d8(amount * 0.05), remainder = amount - fee (никогда наоборот).
#   • generated_tokens_dispersed: false → true один раз, обратно никогда.
#
# Запреты:
#   • Никаких ключей: только ссылки (signing_key_ref розыгрыша, TREASURY_KEY_REF).
# =============================================================================

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_UP, Decimal
from typing import Awaitable, Callable, List, Optional

from raffle_backend.app.core.config_core import Settings, get_settings
from raffle_backend.app.core.errors_core import GatewayError, PaymentError, RaffleStateError
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.utils_core import Q8, d8, utcnow
from raffle_backend.app.integrations.chain_gateway import ChainGateway
from raffle_backend.app.integrations.payment_executor import PaymentExecutor, TransferRequest
from raffle_backend.app.services.operator_alerts import OperatorAlerts
from raffle_backend.app.services.raffle_state import (
    SETTLEMENT_PLAN,
    AssetKind,
    PrizePayout,
    RaffleState,
    RaffleStatus,
    RaffleStore,
    SettlementStep,
    SettlementTransfer,
)

logger = get_logger(__name__)

# Исходы расчёта
SETTLE_DONE = "settled"
SETTLE_ALREADY = "already_settled"
SETTLE_LEASE_BUSY = "lease_busy"
SETTLE_FAILED = "failed"

Sleeper = Callable[[float], Awaitable[None]]
Clock = Callable[[], datetime]


@dataclass
class PrizeDispersalResult:
    sent: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: int = 0
    completed: bool = False


@dataclass
class SettlementResult:
    outcome: str
    steps_done: List[str] = field(default_factory=list)
    error: Optional[str] = None


class DispersalWorkflow:
    """Машина состояний выплат для завершённого розыгрыша."""

    def __init__(
        self,
        store: RaffleStore,
        executor: PaymentExecutor,
        gateway: ChainGateway,
        *,
        alerts: Optional[OperatorAlerts] = None,
        sleeper: Sleeper = asyncio.sleep,
        clock: Clock = utcnow,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.gateway = gateway
        self.alerts = alerts or OperatorAlerts()
        self._sleep = sleeper
        self._clock = clock
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------ призы

    async def disperse_prizes(self, raffle: RaffleState) -> PrizeDispersalResult:
        """
        Отправляет приз каждому победителю без записи о выплате.
        Повторный вызов безопасен: уже оплаченные адреса пропускаются.
        """
        if raffle.status != RaffleStatus.COMPLETED:
            raise RaffleStateError("Prizes can only be dispersed after the draw.")
        result = PrizeDispersalResult()
        if raffle.prize_dispersed:
            result.completed = True
            return result

        if not raffle.winners:
            # Участников не было: выплачивать некому
            raffle.prize_dispersed = True
            await self.store.save(raffle)
            logger.warning("No winners, prize dispersal closed vacuously", extra={"raffle_id": raffle.raffle_id})
            result.completed = True
            return result

        per_winner = d8(raffle.prize_amount / len(raffle.winners))
        for winner in raffle.winners:
            if winner in raffle.prize_payouts:
                result.skipped += 1
                continue
            request = TransferRequest(
                destination=winner,
                amount=per_winner,
                asset_ticker=raffle.prize_ticker,
                signing_key_ref=self.settings.TREASURY_KEY_REF,
                reference=f"{raffle.raffle_id}:prize:{winner}",
            )
            try:
                txid = await self.executor.send(request)
            except PaymentError as exc:
                result.failed.append(winner)
                logger.warning(
                    "Prize payout failed",
                    extra={"raffle_id": raffle.raffle_id, "winner": winner, "error": str(exc)},
                )
                continue
            raffle.prize_payouts[winner] = PrizePayout(
                winner_address=winner,
                txid=txid,
                amount=per_winner,
                paid_at=self._clock(),
            )
            await self.store.save(raffle)
            result.sent.append(winner)
            logger.info(
                "Prize paid",
                extra={"raffle_id": raffle.raffle_id, "winner": winner, "txid": txid, "amount": str(per_winner)},
            )

        all_paid = all(w in raffle.prize_payouts for w in raffle.winners)
        if all_paid and not result.failed:
            raffle.prize_dispersed = True
            await self.store.save(raffle)
            result.completed = True
            logger.info("Prize dispersal completed", extra={"raffle_id": raffle.raffle_id})
        return result

    # ------------------------------------------------------------------ расчёт

    def _reserve(self, raffle: RaffleState) -> Decimal:
        if raffle.deposit_asset == AssetKind.TOKEN:
            return self.settings.TOKEN_RAFFLE_MIN_NATIVE_RESERVE
        return self.settings.NATIVE_RAFFLE_MIN_NATIVE_RESERVE

    async def settle(self, raffle: RaffleState) -> SettlementResult:
        """
        Запускает/продолжает расчёт под арендой. Занятая аренда = пропуск шага
        (SETTLE_LEASE_BUSY), а не ошибка.
        """
        if raffle.status != RaffleStatus.COMPLETED:
            raise RaffleStateError("Settlement can only run after the draw.")
        if raffle.generated_tokens_dispersed:
            return SettlementResult(outcome=SETTLE_ALREADY)

        now = self._clock()
        max_hold = timedelta(seconds=self.settings.SETTLEMENT_LEASE_MAX_HOLD_SEC)

        claim = await self.store.claim_settlement_lease(raffle.raffle_id, now, max_hold)
        if claim is None:
            logger.info("Settlement lease busy, skipping", extra={"raffle_id": raffle.raffle_id})
            return SettlementResult(outcome=SETTLE_LEASE_BUSY)

        if claim.reclaimed_from is not None:
            logger.warning(
                "Reclaimed abandoned settlement lease",
                extra={"raffle_id": raffle.raffle_id, "acquired_at": claim.reclaimed_from.isoformat()},
            )
            await self.alerts.stale_lease_reclaimed(raffle.raffle_id, claim.reclaimed_from.isoformat())

        raffle.settlement_lease_acquired_at = claim.acquired_at
        logger.info("Settlement lease claimed", extra={"raffle_id": raffle.raffle_id})
        result = SettlementResult(outcome=SETTLE_FAILED)
        try:
            await self._run_plan(raffle, result)
            raffle.generated_tokens_dispersed = True
            await self.store.save(raffle)
            result.outcome = SETTLE_DONE
            logger.info("Settlement completed", extra={"raffle_id": raffle.raffle_id, "steps": result.steps_done})
        except (PaymentError, GatewayError) as exc:
            result.error = str(exc)
            logger.warning(
                "Settlement interrupted, will resume next tick",
                extra={"raffle_id": raffle.raffle_id, "error": str(exc), "steps": result.steps_done},
            )
        finally:
            released = await self.store.release_settlement_lease(raffle.raffle_id, claim.acquired_at)
            raffle.settlement_lease_acquired_at = None
            if released:
                logger.info("Settlement lease released", extra={"raffle_id": raffle.raffle_id})
            else:
                logger.warning(
                    "Settlement lease was reclaimed by another worker, left untouched",
                    extra={"raffle_id": raffle.raffle_id},
                )
        return result

    async def _run_plan(self, raffle: RaffleState, result: SettlementResult) -> None:
        if raffle.deposit_asset == AssetKind.TOKEN and raffle.settlement_amount is None:
            balance = await self.gateway.get_token_balance(raffle.receiving_address, raffle.deposit_ticker)
            raffle.settlement_amount = d8(balance)
            await self.store.save(raffle)
            logger.info(
                "Settlement amount fixed",
                extra={"raffle_id": raffle.raffle_id, "amount": str(raffle.settlement_amount)},
            )

        for step in SETTLEMENT_PLAN[raffle.deposit_asset]:
            if step in raffle.settlement_transfers:
                continue
            transfer = await self._execute_step(raffle, step)
            raffle.settlement_transfers[step] = transfer
            await self.store.save(raffle)
            result.steps_done.append(step.value)
            if transfer.txid is not None:
                await self._sleep(self.settings.SETTLEMENT_STEP_DELAY_SEC)

    def _fee_and_remainder(self, raffle: RaffleState) -> tuple[Decimal, Decimal]:
        amount = raffle.settlement_amount or Decimal(0)
        fee = d8(amount * self.settings.PROTOCOL_FEE_FRACTION)
        return fee, amount - fee

    async def _execute_step(self, raffle: RaffleState, step: SettlementStep) -> SettlementTransfer:
        reserve = self._reserve(raffle)
        native = self.settings.NATIVE_TICKER

        if step == SettlementStep.TOP_UP:
            balance = await self.gateway.get_native_balance(raffle.receiving_address)
            needed = (reserve - balance).quantize(Q8, rounding=ROUND_UP)
            return await self._send_step(
                raffle,
                step,
                destination=raffle.receiving_address,
                amount=needed,
                ticker=native,
                key_ref=self.settings.TREASURY_KEY_REF,
            )

        if step == SettlementStep.FEE:
            fee, _ = self._fee_and_remainder(raffle)
            return await self._send_step(
                raffle,
                step,
                destination=raffle.treasury_address,
                amount=fee,
                ticker=raffle.deposit_ticker,
                key_ref=raffle.signing_key_ref,
            )

        if step == SettlementStep.REMAINDER:
            _, remainder = self._fee_and_remainder(raffle)
            return await self._send_step(
                raffle,
                step,
                destination=raffle.creator_address,
                amount=remainder,
                ticker=raffle.deposit_ticker,
                key_ref=raffle.signing_key_ref,
            )

        balance = await self.gateway.get_native_balance(raffle.receiving_address)
        return await self._send_step(
            raffle,
            step,
            destination=raffle.treasury_address,
            amount=d8(balance - reserve),
            ticker=native,
            key_ref=raffle.signing_key_ref,
        )

    async def _send_step(
        self,
        raffle: RaffleState,
        step: SettlementStep,
        *,
        destination: str,
        amount: Decimal,
        ticker: str,
        key_ref: str,
    ) -> SettlementTransfer:
        """Один шаг: неположительная сумма завершает шаг без перевода."""
        if amount <= 0:
            logger.info(
                "Settlement step has nothing to send",
                extra={"raffle_id": raffle.raffle_id, "step": step.value},
            )
            return SettlementTransfer(
                step=step,
                destination=destination,
                amount=Decimal(0),
                txid=None,
                completed_at=self._clock(),
            )

        txid = await self.executor.send(
            TransferRequest(
                destination=destination,
                amount=amount,
                asset_ticker=ticker,
                signing_key_ref=key_ref,
                reference=f"{raffle.raffle_id}:{step.value}",
            )
        )
        logger.info(
            "Settlement step sent",
            extra={
                "raffle_id": raffle.raffle_id,
                "step": step.value,
                "destination": destination,
                "amount": str(amount),
                "asset": ticker,
                "txid": txid,
            },
        )
        return SettlementTransfer(
            step=step,
            destination=destination,
            amount=amount,
            txid=txid,
            completed_at=self._clock(),
        )


__all__ = [
    "SETTLE_DONE",
    "SETTLE_ALREADY",
    "SETTLE_LEASE_BUSY",
    "SETTLE_FAILED",
    "PrizeDispersalResult",
    "SettlementResult",
    "DispersalWorkflow",
]
# =============================================================================
# Пояснения «для чайника»:
#   • Призы платит казначейство (TREASURY_KEY_REF), депозиты розыгрыша
#     расходуются ключом самого розыгрыша (signing_key_ref).
#   • Пополнение газа идёт из казначейства на адрес розыгрыша.
#   • Если тик упал посередине расчёта, следующий тик начнёт с первого
#     незавершённого шага: уже отправленное повторно не уходит.
# =============================================================================
