# -*- coding: utf-8 -*-
# raffle_backend/app/services/reconciliation_service.py
# =============================================================================
# Raffle Engine: проход сверки (один тик планировщика)
# -----------------------------------------------------------------------------
# Назначение:
#   Раз в тик берёт все розыгрыши, требующие внимания, и для каждого по очереди:
#     1) live: забирает транзакции из шлюза и кредитует их в реестре;
#     2) live и истёк срок: финальный ingest, затем жеребьёвка → completed;
#     3) completed: выплата призов, затем расчёт по депозитам.
#   Состояние между тиками хранится только в записи розыгрыша.
#
# Канон/инварианты:
#   • Розыгрыши обрабатываются последовательно, не параллельно.
#   • Внутри розыгрыша: жеребьёвка строго до выплат призов; выплаты и расчёт
#     имеют свои флаги и могут чередоваться между тиками.
#   • Шлюз недоступен в момент истечения → жеребьёвка откладывается до
#     следующего тика (депозиты до expires_at не теряются).
#   • Нарушение инварианта реестра: розыгрыш пропускается в этом тике,
#     оператор получает алерт; данные не «чинятся».
#   • Ошибка одного розыгрыша не останавливает проход по остальным.
# =============================================================================

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from raffle_backend.app.core.config_core import Settings, get_settings
from raffle_backend.app.core.errors_core import GatewayError, LedgerInvariantError, PaymentError
from raffle_backend.app.core.logging_core import clear_log_context, get_logger, set_log_context
from raffle_backend.app.core.utils_core import utcnow
from raffle_backend.app.integrations.chain_gateway import ChainGateway
from raffle_backend.app.integrations.payment_executor import PaymentExecutor
from raffle_backend.app.services import ledger_service
from raffle_backend.app.services.dispersal_service import (
    SETTLE_DONE,
    SETTLE_LEASE_BUSY,
    Clock,
    DispersalWorkflow,
    Sleeper,
)
from raffle_backend.app.services.operator_alerts import OperatorAlerts
from raffle_backend.app.services.raffle_state import AssetKind, RaffleState, RaffleStatus, RaffleStore
from raffle_backend.app.services.winner_selection_service import NO_ENTRIES, close_raffle

logger = get_logger(__name__)


@dataclass
class TickReport:
    raffles_seen: int = 0
    deposits_credited: int = 0
    drawn: int = 0
    no_entries: int = 0
    prizes_completed: int = 0
    settled: int = 0
    lease_busy: int = 0
    transient_failures: int = 0
    invariant_violations: int = 0
    errors: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def deposit_ticker_for_gateway(raffle: RaffleState) -> Optional[str]:
    """None = нативный актив; для токенов тикер депозита."""
    return raffle.deposit_ticker if raffle.deposit_asset == AssetKind.TOKEN else None


class ReconciliationService:
    def __init__(
        self,
        store: RaffleStore,
        gateway: ChainGateway,
        executor: PaymentExecutor,
        *,
        alerts: Optional[OperatorAlerts] = None,
        sleeper: Sleeper = asyncio.sleep,
        clock: Clock = utcnow,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.alerts = alerts or OperatorAlerts()
        self._clock = clock
        self.workflow = DispersalWorkflow(
            store,
            executor,
            gateway,
            alerts=self.alerts,
            sleeper=sleeper,
            clock=clock,
            settings=settings or get_settings(),
        )

    async def run_once(self) -> TickReport:
        """Один проход по всем розыгрышам, требующим внимания."""
        report = TickReport()
        raffles = await self.store.list_needing_attention()
        for raffle in raffles:
            report.raffles_seen += 1
            set_log_context(raffle_id=raffle.raffle_id)
            try:
                await self.process_raffle(raffle, report)
            except LedgerInvariantError as exc:
                report.invariant_violations += 1
                await self.alerts.ledger_invariant_violated(raffle.raffle_id, exc.details)
            except (GatewayError, PaymentError) as exc:
                report.transient_failures += 1
                logger.warning("Raffle processing deferred to next tick", extra={"error": str(exc)})
            except Exception:
                report.errors += 1
                logger.exception("Raffle processing failed")
            finally:
                clear_log_context(raffle_only=True)

        logger.info("Reconciliation tick finished", extra={"report": report.as_dict()})
        return report

    async def process_raffle(self, raffle: RaffleState, report: Optional[TickReport] = None) -> RaffleState:
        report = report if report is not None else TickReport()
        ledger_service.check_invariant(raffle)

        if raffle.status == RaffleStatus.LIVE:
            now = self._clock()
            expired = raffle.is_expired(now)
            try:
                txs = await self.gateway.list_transactions(
                    raffle.receiving_address,
                    deposit_ticker_for_gateway(raffle),
                    known_txids=raffle.known_txids(),
                )
            except GatewayError:
                if expired:
                    logger.warning("Draw postponed: final deposit scan failed")
                raise
            ingest = ledger_service.ingest(raffle, txs, now=now)
            report.deposits_credited += ingest.credited
            if ingest.credited:
                await self.store.save(raffle)
            if not expired:
                return raffle

            outcome = close_raffle(raffle, now)
            await self.store.save(raffle)
            report.drawn += 1
            if outcome is NO_ENTRIES:
                report.no_entries += 1

        if raffle.status == RaffleStatus.COMPLETED:
            if not raffle.prize_dispersed:
                prizes = await self.workflow.disperse_prizes(raffle)
                if prizes.completed:
                    report.prizes_completed += 1
            if not raffle.generated_tokens_dispersed:
                settlement = await self.workflow.settle(raffle)
                if settlement.outcome == SETTLE_DONE:
                    report.settled += 1
                elif settlement.outcome == SETTLE_LEASE_BUSY:
                    report.lease_busy += 1
                elif settlement.error:
                    report.transient_failures += 1
        return raffle


__all__ = ["TickReport", "ReconciliationService", "deposit_ticker_for_gateway"]
