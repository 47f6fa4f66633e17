# -*- coding: utf-8 -*-
"""Выплата призов и пошаговый расчёт под арендой."""
from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from raffle_backend.app.core.errors_core import RaffleStateError
from raffle_backend.app.services.dispersal_service import (
    SETTLE_ALREADY,
    SETTLE_DONE,
    SETTLE_FAILED,
    SETTLE_LEASE_BUSY,
    DispersalWorkflow,
)
from raffle_backend.app.services.operator_alerts import EVENT_STALE_LEASE
from raffle_backend.app.services.raffle_state import AssetKind, RaffleStatus, SettlementStep
from tests.conftest import CREATOR, NOW, RAFFLE_KEY, RECEIVING, TREASURY, InMemoryRaffleStore, make_raffle


def completed_raffle(**overrides):
    data = dict(status=RaffleStatus.COMPLETED, completed_at=NOW, draw_seed="seed", winners=["kaspa:alice"])
    data.update(overrides)
    return make_raffle(**data)


def token_raffle(**overrides):
    data = dict(deposit_asset=AssetKind.TOKEN, deposit_ticker="NACHO")
    data.update(overrides)
    return completed_raffle(**data)


@pytest.fixture
def make_workflow(executor, gateway, alerts, clock, sleeper):
    def _make(store):
        return DispersalWorkflow(store, executor, gateway, alerts=alerts, sleeper=sleeper, clock=clock)

    return _make


class TestPrizeDispersal:
    def test_prize_split_evenly_and_paid_from_treasury(self, make_workflow, executor):
        raffle = completed_raffle(winners=["kaspa:alice", "kaspa:bob"], prize_amount=Decimal("1000"))
        store = InMemoryRaffleStore(raffle)

        result = asyncio.run(make_workflow(store).disperse_prizes(raffle))

        assert result.completed is True
        assert sorted(result.sent) == ["kaspa:alice", "kaspa:bob"]
        assert [r.amount for r in executor.requests] == [Decimal("500"), Decimal("500")]
        assert {r.signing_key_ref for r in executor.requests} == {"treasury"}
        assert {r.asset_ticker for r in executor.requests} == {"KAS"}
        assert store.stored("r-1").prize_dispersed is True
        assert set(store.stored("r-1").prize_payouts) == {"kaspa:alice", "kaspa:bob"}

    def test_uneven_split_rounds_down(self, make_workflow, executor):
        raffle = completed_raffle(winners=["a", "b", "c"], prize_amount=Decimal("1"))
        asyncio.run(make_workflow(InMemoryRaffleStore(raffle)).disperse_prizes(raffle))

        assert {r.amount for r in executor.requests} == {Decimal("0.33333333")}

    def test_failed_winner_is_retried_without_double_paying_others(self, make_workflow, executor):
        raffle = completed_raffle(winners=["kaspa:alice", "kaspa:bob"])
        store = InMemoryRaffleStore(raffle)
        workflow = make_workflow(store)
        executor.fail_destinations = {"kaspa:bob"}

        first = asyncio.run(workflow.disperse_prizes(raffle))
        assert first.completed is False
        assert first.failed == ["kaspa:bob"]
        assert store.stored("r-1").prize_dispersed is False
        assert set(store.stored("r-1").prize_payouts) == {"kaspa:alice"}

        executor.fail_destinations = set()
        reloaded = asyncio.run(store.get("r-1"))
        second = asyncio.run(workflow.disperse_prizes(reloaded))

        assert second.completed is True
        assert second.skipped == 1
        assert len(executor.sent_to("kaspa:alice")) == 1
        assert len(executor.sent_to("kaspa:bob")) == 1
        assert store.stored("r-1").prize_dispersed is True

    def test_repeat_after_completion_sends_nothing(self, make_workflow, executor):
        raffle = completed_raffle()
        store = InMemoryRaffleStore(raffle)
        workflow = make_workflow(store)
        asyncio.run(workflow.disperse_prizes(raffle))
        asyncio.run(workflow.disperse_prizes(asyncio.run(store.get("r-1"))))

        assert len(executor.requests) == 1

    def test_no_winners_closes_dispersal_without_transfers(self, make_workflow, executor):
        raffle = completed_raffle(winners=[])
        store = InMemoryRaffleStore(raffle)

        result = asyncio.run(make_workflow(store).disperse_prizes(raffle))

        assert result.completed is True
        assert executor.requests == []
        assert store.stored("r-1").prize_dispersed is True

    def test_live_raffle_cannot_pay_prizes(self, make_workflow):
        raffle = make_raffle()
        with pytest.raises(RaffleStateError):
            asyncio.run(make_workflow(InMemoryRaffleStore(raffle)).disperse_prizes(raffle))


class TestSettlement:
    def test_token_raffle_runs_all_steps(self, make_workflow, executor, gateway, sleeper):
        gateway.token_balance = Decimal("1000")
        gateway.native_balance = Decimal("2")
        raffle = token_raffle()
        store = InMemoryRaffleStore(raffle)

        result = asyncio.run(make_workflow(store).settle(raffle))

        assert result.outcome == SETTLE_DONE
        top_up, fee, remainder = executor.requests
        assert (top_up.destination, top_up.amount, top_up.asset_ticker, top_up.signing_key_ref) == (
            RECEIVING,
            Decimal("13"),
            "KAS",
            "treasury",
        )
        assert (fee.destination, fee.amount, fee.asset_ticker, fee.signing_key_ref) == (
            TREASURY,
            Decimal("50"),
            "NACHO",
            RAFFLE_KEY,
        )
        assert (remainder.destination, remainder.amount) == (CREATOR, Decimal("950"))
        assert fee.amount + remainder.amount == Decimal("1000")
        assert sleeper.calls == [10.0, 10.0, 10.0]

        stored = store.stored("r-1")
        assert stored.generated_tokens_dispersed is True
        assert stored.settlement_lease_acquired_at is None
        assert stored.settlement_amount == Decimal("1000")
        assert stored.settlement_transfers[SettlementStep.SWEEP].txid is None

    def test_native_raffle_sweeps_above_reserve(self, make_workflow, executor, gateway, sleeper):
        gateway.native_balance = Decimal("250")
        raffle = completed_raffle()
        store = InMemoryRaffleStore(raffle)

        result = asyncio.run(make_workflow(store).settle(raffle))

        assert result.outcome == SETTLE_DONE
        assert result.steps_done == ["top_up", "sweep"]
        (sweep,) = executor.requests
        assert (sweep.destination, sweep.amount, sweep.asset_ticker) == (TREASURY, Decimal("247"), "KAS")
        assert sleeper.calls == [10.0]

    def test_fee_below_smallest_unit_is_skipped(self, make_workflow, executor, gateway):
        gateway.token_balance = Decimal("0.00000019")
        gateway.native_balance = Decimal("20")
        raffle = token_raffle()
        store = InMemoryRaffleStore(raffle)

        asyncio.run(make_workflow(store).settle(raffle))

        token_transfers = [(r.destination, r.amount) for r in executor.requests if r.asset_ticker == "NACHO"]
        assert token_transfers == [(CREATOR, Decimal("0.00000019"))]
        assert store.stored("r-1").settlement_transfers[SettlementStep.FEE].txid is None

    def test_interrupted_settlement_resumes_from_next_step(self, make_workflow, executor, gateway):
        gateway.token_balance = Decimal("1000")
        gateway.native_balance = Decimal("2")
        raffle = token_raffle()
        store = InMemoryRaffleStore(raffle)
        workflow = make_workflow(store)
        executor.fail_after = 2

        first = asyncio.run(workflow.settle(raffle))
        assert first.outcome == SETTLE_FAILED
        assert first.error
        stored = store.stored("r-1")
        assert set(stored.settlement_transfers) == {SettlementStep.TOP_UP, SettlementStep.FEE}
        assert stored.settlement_lease_acquired_at is None
        assert stored.generated_tokens_dispersed is False

        executor.fail_after = None
        gateway.token_balance = Decimal("0")
        second = asyncio.run(workflow.settle(asyncio.run(store.get("r-1"))))

        assert second.outcome == SETTLE_DONE
        assert second.steps_done == ["remainder", "sweep"]
        assert len(executor.sent_to(TREASURY)) == 1
        assert executor.sent_to(CREATOR)[0].amount == Decimal("950")

    def test_balance_lookup_failure_keeps_raffle_unsettled(self, make_workflow, executor, gateway):
        gateway.fail_balances = True
        raffle = token_raffle()
        store = InMemoryRaffleStore(raffle)

        result = asyncio.run(make_workflow(store).settle(raffle))

        assert result.outcome == SETTLE_FAILED
        assert executor.requests == []
        assert store.stored("r-1").settlement_lease_acquired_at is None

    def test_busy_lease_skips_without_sending(self, make_workflow, executor, clock):
        raffle = token_raffle()
        store = InMemoryRaffleStore(raffle)
        asyncio.run(store.claim_settlement_lease("r-1", clock() - timedelta(minutes=1), timedelta(minutes=30)))

        result = asyncio.run(make_workflow(store).settle(raffle))

        assert result.outcome == SETTLE_LEASE_BUSY
        assert executor.requests == []

    def test_abandoned_lease_is_reclaimed_and_reported(self, make_workflow, gateway, alerts, clock):
        gateway.native_balance = Decimal("10")
        raffle = completed_raffle()
        store = InMemoryRaffleStore(raffle)
        asyncio.run(store.claim_settlement_lease("r-1", clock() - timedelta(hours=2), timedelta(minutes=30)))

        result = asyncio.run(make_workflow(store).settle(asyncio.run(store.get("r-1"))))

        assert result.outcome == SETTLE_DONE
        assert [event for event, _ in alerts.events] == [EVENT_STALE_LEASE]

    def test_lease_released_after_snapshot_is_not_reported(self, make_workflow, gateway, alerts, clock):
        gateway.native_balance = Decimal("10")
        store = InMemoryRaffleStore(completed_raffle())
        claim = asyncio.run(store.claim_settlement_lease("r-1", clock() - timedelta(hours=2), timedelta(minutes=30)))
        snapshot = asyncio.run(store.get("r-1"))
        asyncio.run(store.release_settlement_lease("r-1", claim.acquired_at))

        result = asyncio.run(make_workflow(store).settle(snapshot))

        assert result.outcome == SETTLE_DONE
        assert alerts.events == []
        assert store.stored("r-1").settlement_lease_acquired_at is None

    def test_stale_release_keeps_reclaimed_lease(self, clock):
        store = InMemoryRaffleStore(completed_raffle())
        hold = timedelta(minutes=30)
        stale = asyncio.run(store.claim_settlement_lease("r-1", clock() - timedelta(hours=2), hold))
        current = asyncio.run(store.claim_settlement_lease("r-1", clock(), hold))

        assert asyncio.run(store.release_settlement_lease("r-1", stale.acquired_at)) is False
        assert store.stored("r-1").settlement_lease_acquired_at == current.acquired_at
        assert current.reclaimed_from == stale.acquired_at

    def test_settled_raffle_is_not_settled_again(self, make_workflow, executor):
        raffle = token_raffle(generated_tokens_dispersed=True)

        result = asyncio.run(make_workflow(InMemoryRaffleStore(raffle)).settle(raffle))

        assert result.outcome == SETTLE_ALREADY
        assert executor.requests == []
