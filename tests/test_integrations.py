# -*- coding: utf-8 -*-
"""HTTP-клиенты: шлюз блокчейна, исполнитель платежей, алерты (httpx.MockTransport)."""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from raffle_backend.app.core.errors_core import GatewayError, PaymentError
from raffle_backend.app.integrations.chain_gateway import HttpChainGateway
from raffle_backend.app.integrations.payment_executor import HttpPaymentExecutor, TransferRequest
from raffle_backend.app.services.operator_alerts import OperatorAlerts
from tests.conftest import RECEIVING

BLOCK_MS = 1_760_788_800_000


def gateway_with(handler, **kwargs) -> HttpChainGateway:
    return HttpChainGateway(
        chain_api_url="https://chain.test",
        token_api_url="https://tokens.test/v1",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def native_item(txid: str) -> dict:
    return {
        "hash": txid,
        "is_accepted": True,
        "block_time": BLOCK_MS,
        "inputs": [{"previous_outpoint_address": "kaspa:alice"}],
        "outputs": [{"script_public_key_address": RECEIVING, "amount": 100_000_000}],
    }


def token_item(txid: str) -> dict:
    return {"hashRev": txid, "from": "kaspa:alice", "to": RECEIVING, "amt": "1", "op": "transfer", "opAccept": "1"}


class TestChainGateway:
    def test_native_transactions_are_parsed(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(
                200,
                json=[
                    {
                        "hash": "abc",
                        "is_accepted": True,
                        "block_time": BLOCK_MS,
                        "inputs": [{"previous_outpoint_address": "kaspa:alice"}],
                        "outputs": [
                            {"script_public_key_address": RECEIVING, "amount": 25_000_000_000},
                            {"script_public_key_address": "kaspa:alice", "amount": 100},
                        ],
                    },
                    {"hash": "pending", "is_accepted": False, "outputs": []},
                    {"is_accepted": True, "outputs": []},
                ],
            )

        txs = asyncio.run(gateway_with(handler).list_transactions(RECEIVING))

        assert seen["path"] == f"/addresses/{RECEIVING}/full-transactions"
        assert seen["params"]["resolve_previous_outpoints"] == "light"
        (tx,) = txs
        assert tx.txid == "abc"
        assert tx.sender == "kaspa:alice"
        assert tx.outputs[0].address == RECEIVING
        assert tx.outputs[0].amount == 25_000_000_000
        assert tx.confirmed_at == datetime.fromtimestamp(BLOCK_MS / 1000, tz=timezone.utc)

    def test_native_history_is_read_page_by_page(self):
        pages = {0: [native_item("t4"), native_item("t3")], 2: [native_item("t2"), native_item("t1")], 4: []}
        offsets = []

        def handler(request: httpx.Request) -> httpx.Response:
            offset = int(request.url.params["offset"])
            offsets.append(offset)
            return httpx.Response(200, json=pages[offset])

        txs = asyncio.run(gateway_with(handler, page_limit=2).list_transactions(RECEIVING))

        assert [tx.txid for tx in txs] == ["t4", "t3", "t2", "t1"]
        assert offsets == [0, 2, 4]

    def test_native_paging_stops_at_known_transaction(self):
        offsets = []

        def handler(request: httpx.Request) -> httpx.Response:
            offsets.append(int(request.url.params["offset"]))
            return httpx.Response(200, json=[native_item("t4"), native_item("t3")])

        gw = gateway_with(handler, page_limit=2)
        txs = asyncio.run(gw.list_transactions(RECEIVING, known_txids={"t3"}))

        assert [tx.txid for tx in txs] == ["t4", "t3"]
        assert offsets == [0]

    def test_token_history_follows_next_cursor(self):
        cursors = []

        def handler(request: httpx.Request) -> httpx.Response:
            cursor = request.url.params.get("next")
            cursors.append(cursor)
            if cursor is None:
                return httpx.Response(200, json={"message": "successful", "next": "c1", "result": [token_item("h2")]})
            return httpx.Response(200, json={"message": "successful", "next": None, "result": [token_item("h1")]})

        ops = asyncio.run(gateway_with(handler).list_transactions(RECEIVING, "NACHO"))

        assert [op.txid for op in ops] == ["h2", "h1"]
        assert cursors == [None, "c1"]

    def test_history_longer_than_page_cap_is_an_error(self):
        handler = lambda request: httpx.Response(200, json=[native_item("a"), native_item("b")])  # noqa: E731

        with pytest.raises(GatewayError):
            asyncio.run(gateway_with(handler, page_limit=2, max_pages=3).list_transactions(RECEIVING))

    def test_token_operations_are_parsed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/krc20/oplist"
            assert request.url.params["tick"] == "NACHO"
            return httpx.Response(
                200,
                json={
                    "message": "successful",
                    "result": [
                        {
                            "hashRev": "h1",
                            "from": "kaspa:alice",
                            "to": RECEIVING,
                            "amt": "50000000000",
                            "op": "TRANSFER",
                            "opAccept": "1",
                            "mtsAdd": str(BLOCK_MS),
                        },
                        {"hashRev": "h2", "from": "kaspa:bob", "to": RECEIVING, "amt": "1", "opAccept": "-1"},
                    ],
                },
            )

        (op,) = asyncio.run(gateway_with(handler).list_transactions(RECEIVING, "nacho"))

        assert op.txid == "h1"
        assert op.op_kind == "transfer"
        assert op.outputs[0].amount == "50000000000"

    def test_unexpected_token_payload_raises(self):
        handler = lambda request: httpx.Response(200, json={"message": "rate limited"})  # noqa: E731
        with pytest.raises(GatewayError):
            asyncio.run(gateway_with(handler).list_transactions(RECEIVING, "NACHO"))

    def test_error_status_raises_gateway_error(self):
        handler = lambda request: httpx.Response(503, text="down")  # noqa: E731
        with pytest.raises(GatewayError) as err:
            asyncio.run(gateway_with(handler).list_transactions(RECEIVING))
        assert err.value.details == {"status": 503}

    def test_balances_are_converted_from_base_units(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/balance"):
                return httpx.Response(200, json={"address": RECEIVING, "balance": 150_000_000})
            return httpx.Response(200, json={"result": [{"balance": "250000000"}]})

        gw = gateway_with(handler)
        assert asyncio.run(gw.get_native_balance(RECEIVING)) == Decimal("1.5")
        assert asyncio.run(gw.get_token_balance(RECEIVING, "NACHO")) == Decimal("2.5")

    def test_missing_token_balance_is_zero(self):
        handler = lambda request: httpx.Response(200, json={"result": []})  # noqa: E731
        assert asyncio.run(gateway_with(handler).get_token_balance(RECEIVING, "NACHO")) == Decimal(0)

    @pytest.mark.parametrize(
        ("response", "expected"),
        [
            (httpx.Response(200, json={"result": [{"tick": "NACHO", "state": "finished"}]}), True),
            (httpx.Response(200, json={"result": [{"tick": "NACHO", "state": "deployed"}]}), False),
            (httpx.Response(200, json={"result": []}), False),
            (httpx.Response(500), False),
        ],
    )
    def test_token_deployment_check(self, response, expected):
        assert asyncio.run(gateway_with(lambda request: response).token_is_deployed("nacho")) is expected


class TestPaymentExecutor:
    def _request(self, amount="1.5") -> TransferRequest:
        return TransferRequest(
            destination="kaspa:winner",
            amount=Decimal(amount),
            asset_ticker="KAS",
            signing_key_ref="treasury",
            reference="r-1:prize:kaspa:winner",
        )

    def test_transfer_posts_body_and_returns_txid(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["key"] = request.headers.get("X-API-Key")
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"txid": "tx-99"})

        executor = HttpPaymentExecutor(
            base_url="https://signer.test",
            api_key="secret-key",
            transport=httpx.MockTransport(handler),
        )
        txid = asyncio.run(executor.send(self._request()))

        assert txid == "tx-99"
        assert captured["url"] == "https://signer.test/v1/transfers"
        assert captured["key"] == "secret-key"
        assert captured["body"] == {
            "destination": "kaspa:winner",
            "amount": "1.5",
            "asset": "KAS",
            "keyRef": "treasury",
            "reference": "r-1:prize:kaspa:winner",
        }

    @pytest.mark.parametrize(
        "response",
        [httpx.Response(400, json={"error": "insufficient funds"}), httpx.Response(200, json={})],
    )
    def test_rejected_or_incomplete_response_raises(self, response):
        executor = HttpPaymentExecutor(base_url="https://signer.test", transport=httpx.MockTransport(lambda r: response))
        with pytest.raises(PaymentError):
            asyncio.run(executor.send(self._request()))

    def test_non_positive_amount_is_never_sent(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        executor = HttpPaymentExecutor(base_url="https://signer.test", transport=httpx.MockTransport(handler))
        with pytest.raises(PaymentError):
            asyncio.run(executor.send(self._request("0.000000001")))

    def test_unreachable_executor_raises_payment_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        executor = HttpPaymentExecutor(base_url="https://signer.test", transport=httpx.MockTransport(handler))
        with pytest.raises(PaymentError):
            asyncio.run(executor.send(self._request()))


class TestOperatorAlerts:
    def test_alert_is_sent_to_telegram(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True})

        alerts = OperatorAlerts(bot_token="123456:abc", chat_id="42", transport=httpx.MockTransport(handler))
        sent = asyncio.run(alerts.ledger_invariant_violated("r-1", {"total_entries": "1"}))

        assert sent is True
        assert captured["path"] == "/bot123456:abc/sendMessage"
        assert captured["body"]["chat_id"] == "42"
        assert "r-1" in captured["body"]["text"]

    def test_telegram_failure_does_not_raise(self):
        alerts = OperatorAlerts(
            bot_token="123456:abc",
            chat_id="42",
            transport=httpx.MockTransport(lambda request: httpx.Response(502)),
        )
        assert asyncio.run(alerts.stale_lease_reclaimed("r-1", "2026-10-18T10:00:00+00:00")) is False

    def test_disabled_alerts_only_log(self):
        alerts = OperatorAlerts(bot_token="", chat_id="")
        assert alerts.enabled is False
        assert asyncio.run(alerts.notify("TEST", "message")) is False
