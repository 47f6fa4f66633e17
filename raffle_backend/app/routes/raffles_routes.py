# -*- coding: utf-8 -*-
# raffle_backend/app/routes/raffles_routes.py
# =============================================================================
# Назначение кода:
#   HTTP-ручки розыгрышей: создание, список (фильтр по создателю), карточка,
#   внеочередной ingest депозитов.
#
# Канон/инварианты:
#   • Роуты не содержат бизнес-логики: всё через services/raffles_service.py.
#   • Хранилище и шлюз приходят через Depends, чтобы их можно было подменить.
#   • Ссылка на ключ подписи в ответы не попадает (raffle_summary).
#   • Жеребьёвку и выплаты запускает только сверка, не HTTP.
# =============================================================================

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from raffle_backend.app.core.database_core import get_db
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.crud.raffles_crud import RafflesCRUD
from raffle_backend.app.integrations.chain_gateway import ChainGateway, HttpChainGateway
from raffle_backend.app.schemas.raffles_schemas import (
    ProcessDepositsOut,
    RaffleCreatedOut,
    RaffleCreateIn,
    RaffleDetailOut,
    RaffleListOut,
    RaffleOut,
)
from raffle_backend.app.services import raffles_service
from raffle_backend.app.services.raffle_state import RaffleStore

logger = get_logger(__name__)
router = APIRouter()


# -----------------------------------------------------------------------------
# Зависимости
# -----------------------------------------------------------------------------
async def get_store(db: AsyncSession = Depends(get_db)) -> RaffleStore:
    return RafflesCRUD(db)


def get_chain_gateway() -> ChainGateway:
    return HttpChainGateway()


def _out(raffle) -> RaffleOut:
    return RaffleOut.model_validate(raffles_service.raffle_summary(raffle))


# -----------------------------------------------------------------------------
# Ручки
# -----------------------------------------------------------------------------
@router.post("", response_model=RaffleCreatedOut, summary="Создать розыгрыш")
async def create_raffle(
    payload: RaffleCreateIn,
    store: RaffleStore = Depends(get_store),
    gateway: ChainGateway = Depends(get_chain_gateway),
) -> RaffleCreatedOut:
    raffle = await raffles_service.create_raffle(store, gateway, **payload.model_dump())
    return RaffleCreatedOut(raffle_id=raffle.raffle_id, raffle=_out(raffle))


@router.get("", response_model=RaffleListOut, summary="Список розыгрышей")
async def list_raffles(
    creator: Optional[str] = Query(None, description="Фильтр по кошельку создателя"),
    store: RaffleStore = Depends(get_store),
) -> RaffleListOut:
    raffles = await raffles_service.list_raffles(store, creator=creator)
    return RaffleListOut(raffles=[_out(r) for r in raffles])


@router.get("/{raffle_id}", response_model=RaffleDetailOut, summary="Карточка розыгрыша")
async def get_raffle(raffle_id: str, store: RaffleStore = Depends(get_store)) -> RaffleDetailOut:
    raffle = await raffles_service.get_raffle(store, raffle_id)
    return RaffleDetailOut(raffle=_out(raffle))


@router.post("/{raffle_id}/process", response_model=ProcessDepositsOut, summary="Обработать депозиты сейчас")
async def process_deposits(
    raffle_id: str,
    store: RaffleStore = Depends(get_store),
    gateway: ChainGateway = Depends(get_chain_gateway),
) -> ProcessDepositsOut:
    raffle, result = await raffles_service.process_deposits_now(store, gateway, raffle_id)
    logger.info(
        "Manual deposit processing",
        extra={"raffle_id": raffle_id, "credited": result.credited, "duplicates": result.duplicates},
    )
    return ProcessDepositsOut(
        credited=result.credited,
        duplicates=result.duplicates,
        ignored=result.ignored,
        malformed=result.malformed,
        credits_added=raffles_service.format_credits(result.credits_added),
        raffle=_out(raffle),
    )


__all__ = ["router", "get_store", "get_chain_gateway"]
