# -*- coding: utf-8 -*-
"""RafflesCRUD поверх SQLite (aiosqlite): слияние агрегата, монотонность, аренда."""
from __future__ import annotations

import asyncio
import copy
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from raffle_backend.app.crud.raffles_crud import RafflesCRUD
from raffle_backend.app.models import Base
from raffle_backend.app.services import ledger_service
from raffle_backend.app.services.raffle_state import RaffleStatus, SettlementStep, SettlementTransfer
from raffle_backend.app.services.winner_selection_service import close_raffle
from tests.conftest import NOW, make_raffle, native_tx

MAX_HOLD = timedelta(minutes=30)


@pytest.fixture
def run_db(tmp_path):
    """Запускает сценарий с двумя независимыми CRUD (две сессии) на свежей БД."""

    def _run(scenario):
        async def _main():
            engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'raffles.db'}")
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
            try:
                async with factory() as first, factory() as second:
                    return await scenario(RafflesCRUD(first), RafflesCRUD(second))
            finally:
                await engine.dispose()

        return asyncio.run(_main())

    return _run


def test_create_and_get_round_trip(run_db):
    async def scenario(crud, _):
        await crud.create(make_raffle(prize_display="Golden ticket"))
        return await crud.get("r-1")

    loaded = run_db(scenario)

    assert loaded.raffle_id == "r-1"
    assert loaded.prize_amount == Decimal("1000")
    assert loaded.credit_conversion == Decimal("100")
    assert loaded.expires_at == NOW + timedelta(hours=1)
    assert loaded.status == RaffleStatus.LIVE
    assert loaded.prize_display == "Golden ticket"
    assert loaded.deposits == [] and loaded.entries == {}


def test_save_merges_ledger_and_is_repeatable(run_db):
    async def scenario(crud, other):
        raffle = await crud.create(make_raffle())
        ledger_service.ingest(raffle, [native_tx("t1", "kaspa:alice", "300")], now=NOW)
        await crud.save(raffle)
        ledger_service.ingest(
            raffle,
            [native_tx("t1", "kaspa:alice", "300"), native_tx("t2", "kaspa:alice", "100")],
            now=NOW,
        )
        await crud.save(raffle)
        await crud.save(raffle)
        return await other.get("r-1")

    loaded = run_db(scenario)

    assert sorted(d.txid for d in loaded.deposits) == ["t1", "t2"]
    assert loaded.entries["kaspa:alice"].total_credits_added == Decimal("4")
    assert loaded.total_entries == loaded.current_entries == Decimal("4")
    ledger_service.check_invariant(loaded)


def test_concurrent_writers_keep_each_others_credits(run_db):
    async def scenario(crud, other):
        await crud.create(make_raffle())
        first = await crud.get("r-1")
        second = await other.get("r-1")

        ledger_service.ingest(first, [native_tx("tx-a", "kaspa:alice", "250")], now=NOW)
        await crud.save(first)
        ledger_service.ingest(second, [native_tx("tx-b", "kaspa:bob", "100")], now=NOW)
        await other.save(second)
        return second, await crud.get("r-1")

    writer, loaded = run_db(scenario)

    assert [d.txid for d in loaded.deposits] == ["tx-a", "tx-b"]
    assert loaded.total_entries == loaded.current_entries == Decimal("3.5")
    assert loaded.entries["kaspa:alice"].total_credits_added == Decimal("2.5")
    assert loaded.entries["kaspa:bob"].total_credits_added == Decimal("1")
    assert [e.wallet_address for e in loaded.ordered_entries()] == ["kaspa:alice", "kaspa:bob"]
    ledger_service.check_invariant(loaded)
    assert writer.total_entries == Decimal("3.5")
    assert set(writer.entries) == {"kaspa:alice", "kaspa:bob"}


def test_flags_and_winners_are_not_rolled_back(run_db):
    async def scenario(crud, other):
        raffle = await crud.create(make_raffle())
        ledger_service.ingest(raffle, [native_tx("t1", "kaspa:alice", "300")], now=NOW)
        stale = copy.deepcopy(raffle)
        close_raffle(raffle, NOW, seed="seed")
        raffle.prize_dispersed = True
        raffle.generated_tokens_dispersed = True
        await crud.save(raffle)

        stale.winners = ["kaspa:mallory"]
        await other.save(stale)
        return await crud.get("r-1")

    loaded = run_db(scenario)

    assert loaded.status == RaffleStatus.COMPLETED
    assert loaded.prize_dispersed is True
    assert loaded.generated_tokens_dispersed is True
    assert loaded.winners == ["kaspa:alice"]
    assert loaded.draw_seed == "seed"


def test_settlement_transfers_are_append_only(run_db):
    async def scenario(crud, _):
        raffle = await crud.create(make_raffle(status=RaffleStatus.COMPLETED))
        raffle.settlement_amount = Decimal("10")
        raffle.settlement_transfers[SettlementStep.TOP_UP] = SettlementTransfer(
            step=SettlementStep.TOP_UP, destination="kaspa:raffle", amount=Decimal("3"), txid="tx-1", completed_at=NOW
        )
        await crud.save(raffle)
        raffle.settlement_amount = Decimal("99")
        raffle.settlement_transfers[SettlementStep.TOP_UP].txid = "tx-2"
        await crud.save(raffle)
        return await crud.get("r-1")

    loaded = run_db(scenario)

    assert loaded.settlement_amount == Decimal("10")
    assert loaded.settlement_transfers[SettlementStep.TOP_UP].txid == "tx-1"


def test_settlement_lease_is_exclusive(run_db):
    async def scenario(crud, other):
        await crud.create(make_raffle(status=RaffleStatus.COMPLETED))
        first = await crud.claim_settlement_lease("r-1", NOW, MAX_HOLD)
        busy = await other.claim_settlement_lease("r-1", NOW + timedelta(minutes=1), MAX_HOLD)
        reclaimed = await other.claim_settlement_lease("r-1", NOW + MAX_HOLD + timedelta(seconds=1), MAX_HOLD)
        held = await crud.get("r-1")
        released = await other.release_settlement_lease("r-1", reclaimed.acquired_at)
        fresh = await crud.claim_settlement_lease("r-1", NOW + timedelta(hours=1), MAX_HOLD)
        return first, busy, reclaimed, held, released, fresh

    first, busy, reclaimed, held, released, fresh = run_db(scenario)

    assert first.acquired_at == NOW and first.reclaimed_from is None
    assert busy is None
    assert reclaimed.reclaimed_from == NOW
    assert held.settlement_lease_acquired_at == NOW + MAX_HOLD + timedelta(seconds=1)
    assert released is True
    assert fresh is not None and fresh.reclaimed_from is None


def test_stale_holder_cannot_release_a_reclaimed_lease(run_db):
    async def scenario(crud, other):
        await crud.create(make_raffle(status=RaffleStatus.COMPLETED))
        stale = await crud.claim_settlement_lease("r-1", NOW, MAX_HOLD)
        current = await other.claim_settlement_lease("r-1", NOW + MAX_HOLD + timedelta(minutes=1), MAX_HOLD)
        released = await crud.release_settlement_lease("r-1", stale.acquired_at)
        third = await crud.claim_settlement_lease("r-1", NOW + MAX_HOLD + timedelta(minutes=2), MAX_HOLD)
        return current, released, third, await other.get("r-1")

    current, released, third, loaded = run_db(scenario)

    assert released is False
    assert third is None
    assert loaded.settlement_lease_acquired_at == current.acquired_at


def test_settled_raffle_lease_cannot_be_claimed(run_db):
    async def scenario(crud, _):
        raffle = await crud.create(make_raffle(status=RaffleStatus.COMPLETED))
        raffle.generated_tokens_dispersed = True
        await crud.save(raffle)
        return await crud.claim_settlement_lease("r-1", NOW, MAX_HOLD)

    assert run_db(scenario) is None


def test_save_does_not_touch_lease(run_db):
    async def scenario(crud, other):
        raffle = await crud.create(make_raffle(status=RaffleStatus.COMPLETED))
        await other.claim_settlement_lease("r-1", NOW, MAX_HOLD)
        await crud.save(raffle)
        return await crud.get("r-1")

    assert run_db(scenario).settlement_lease_acquired_at == NOW


def test_listing(run_db):
    async def scenario(crud, _):
        small = await crud.create(make_raffle(raffle_id="small", receiving_address="kaspa:a"))
        big = await crud.create(make_raffle(raffle_id="big", receiving_address="kaspa:b", creator_address="kaspa:x"))
        done = await crud.create(make_raffle(raffle_id="done", receiving_address="kaspa:c"))
        ledger_service.ingest(small, [native_tx("t1", "kaspa:alice", "100", to="kaspa:a")], now=NOW)
        ledger_service.ingest(big, [native_tx("t2", "kaspa:alice", "900", to="kaspa:b")], now=NOW)
        await crud.save(small)
        await crud.save(big)
        close_raffle(done, NOW, seed="s")
        done.prize_dispersed = True
        done.generated_tokens_dispersed = True
        await crud.save(done)
        return (
            [r.raffle_id for r in await crud.list()],
            [r.raffle_id for r in await crud.list(creator="kaspa:x")],
            sorted(r.raffle_id for r in await crud.list_needing_attention()),
        )

    everything, by_creator, attention = run_db(scenario)

    assert everything[:2] == ["big", "small"]
    assert by_creator == ["big"]
    assert attention == ["big", "small"]
