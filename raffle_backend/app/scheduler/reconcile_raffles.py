# ============================================================================
# Raffle Engine: scheduler.reconcile_raffles
# -----------------------------------------------------------------------------
# Назначение: тик сверки розыгрышей с advisory-локом и делегированием всей
# логики в ReconciliationService.
#
# Канон/инварианты:
#   • В кластере тик выполняет один процесс (pg_try_advisory_lock).
#   • Каждый тик получает свой tick_id в поле rid логов.
#   • Тик обходит все розыгрыши, требующие внимания, без фильтра по времени.
#
# ИИ-защиты/самовосстановление:
#   • Лок держится на отдельном соединении: commit'ы CRUD его не снимают.
#   • На SQLite (локально, тесты) лок не берётся.
#
# Запреты:
#   • Не двигает деньги напрямую: только через DispersalWorkflow сервиса сверки.
# ============================================================================
from __future__ import annotations

import asyncio
import uuid
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from ..core.database_core import get_engine, lifespan_session
from ..core.logging_core import clear_log_context, get_logger, set_log_context
from ..crud.raffles_crud import RafflesCRUD
from ..integrations.chain_gateway import HttpChainGateway
from ..integrations.payment_executor import HttpPaymentExecutor
from ..services.operator_alerts import OperatorAlerts
from ..services.reconciliation_service import ReconciliationService, TickReport

logger = get_logger(__name__)

_LOCK_KEY = 73_100


async def _try_lock(conn: AsyncConnection) -> bool:
    """Взять advisory-лок, чтобы тик шёл в единственном воркере."""

    result = await conn.execute(text("SELECT pg_try_advisory_lock(:k)").bindparams(k=_LOCK_KEY))
    return bool(result.scalar_one())


async def _unlock(conn: AsyncConnection) -> None:
    await conn.execute(text("SELECT pg_advisory_unlock(:k)").bindparams(k=_LOCK_KEY))


async def _reconcile() -> TickReport:
    async with lifespan_session() as session:
        service = ReconciliationService(
            RafflesCRUD(session),
            HttpChainGateway(),
            HttpPaymentExecutor(),
            alerts=OperatorAlerts(),
        )
        return await service.run_once()


async def run_once() -> Optional[TickReport]:
    """Один тик сверки. None, если лок держит другой процесс."""

    set_log_context(request_id=f"tick-{uuid.uuid4().hex[:12]}")
    try:
        engine = get_engine()
        if engine.dialect.name != "postgresql":
            return await _reconcile()

        async with engine.connect() as conn:
            if not await _try_lock(conn):
                logger.info("reconcile tick skipped: lock held")
                return None
            try:
                return await _reconcile()
            finally:
                await _unlock(conn)
                await conn.commit()
    finally:
        clear_log_context()


async def _serve() -> None:
    """Запускает SchedulerService и живёт, пока процесс не остановят."""

    from ..services.scheduler_service import SchedulerService

    scheduler = SchedulerService()
    scheduler.register_defaults()
    await scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()


def run_forever() -> None:
    """Точка входа процесса планировщика."""

    asyncio.run(_serve())


if __name__ == "__main__":
    run_forever()

# ============================================================================
# Пояснения «для чайника»:
#   • Процесс планировщика: python -m raffle_backend.app.scheduler.reconcile_raffles
#   • Каждый тик: ingest депозитов, жеребьёвка истёкших, выплаты, расчёт.
#   • Повторный тик безопасен: всё, что уже сделано, записано в розыгрыше.
# ============================================================================
