# -*- coding: utf-8 -*-
# raffle_backend/app/integrations/chain_gateway.py
# =============================================================================
# Raffle Engine: шлюз блокчейна (чтение транзакций и балансов)
# -----------------------------------------------------------------------------
# Назначение:
#   • Забирает подтверждённые входящие транзакции по адресу розыгрыша:
#       - нативный актив: REST API сети (full-transactions с выходами);
#       - токены: индексатор токенов (список операций по адресу и тикеру).
#   • Отдаёт нативный и токенный балансы адреса и статус токена по тикеру.
#   • Преобразует ответы в DTO RawTransaction; суммы остаются в базовых
#     единицах как пришли, их перевод и проверку делает реестр.
#
# Канон/инварианты:
#   • Шлюз eventually consistent и возвращает дубли между опросами:
#     дедупликация живёт в реестре, не здесь.
#   • Неподтверждённые транзакции сюда не попадают.
#   • История читается постранично (offset у сети, курсор next у индексатора)
#     до конца или до страницы с уже учтённым txid; длиннее CHAIN_TX_MAX_PAGES
#     страниц → GatewayError, частичный список не отдаётся.
#
# ИИ-защиты/самовосстановление:
#   • Таймауты httpx; сетевые ошибки и не-2xx → GatewayError (повтор на след. тике).
#   • Битые элементы списка пропускаются с предупреждением, остальные идут дальше.
#
# Запреты:
#   • Модуль не двигает деньги и не хранит ключи.
# =============================================================================
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Collection, Iterable, List, Optional, Protocol

import httpx

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.errors_core import GatewayError
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.utils_core import base_units_to_display, from_unix_ms

logger = get_logger(__name__)
settings = get_settings()

OP_TRANSFER = "transfer"


@dataclass(slots=True)
class TxOutput:
    """Один выход транзакции: адрес получателя и сумма в базовых единицах."""

    address: str
    amount: Any


@dataclass(slots=True)
class RawTransaction:
    """
    DTO входящей транзакции.

    outputs содержит все выходы (нативные транзакции могут расходиться на
    несколько получателей); для токенной операции выход один.
    """

    txid: str
    sender: Optional[str]
    outputs: List[TxOutput] = field(default_factory=list)
    op_kind: str = OP_TRANSFER
    confirmed_at: Optional[datetime] = None


class ChainGateway(Protocol):
    async def list_transactions(
        self,
        address: str,
        ticker: Optional[str] = None,
        *,
        known_txids: Optional[Collection[str]] = None,
    ) -> List[RawTransaction]: ...

    async def get_native_balance(self, address: str) -> Decimal: ...

    async def get_token_balance(self, address: str, ticker: str) -> Decimal: ...

    async def token_is_deployed(self, ticker: str) -> bool: ...


class HttpChainGateway:
    """
    Клиент REST API сети и индексатора токенов.

    ticker=None в list_transactions означает нативный актив.
    """

    def __init__(
        self,
        *,
        chain_api_url: Optional[str] = None,
        token_api_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        page_limit: Optional[int] = None,
        max_pages: Optional[int] = None,
        decimals: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.chain_api_url = (chain_api_url or settings.CHAIN_API_URL).rstrip("/")
        self.token_api_url = (token_api_url or settings.TOKEN_API_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.CHAIN_API_TIMEOUT_SEC
        self.page_limit = page_limit or settings.CHAIN_TX_PAGE_LIMIT
        self.max_pages = max_pages or settings.CHAIN_TX_MAX_PAGES
        self.decimals = settings.BASE_UNIT_DECIMALS if decimals is None else decimals
        self._transport = transport

    async def _request_json(self, url: str, params: Optional[dict[str, Any]] = None) -> Any:
        """GET с таймаутом; JSON или GatewayError."""
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.get(url, params=params, headers={"Accept": "application/json"})
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "[ChainGateway] bad status",
                extra={"url": url, "status": exc.response.status_code},
            )
            raise GatewayError(
                "Chain gateway returned an error status.",
                details={"status": exc.response.status_code},
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("[ChainGateway] request failed", extra={"url": url, "error": str(exc)})
            raise GatewayError("Chain gateway request failed.") from exc

    # ------------------------------------------------------------------ транзакции

    async def list_transactions(
        self,
        address: str,
        ticker: Optional[str] = None,
        *,
        known_txids: Optional[Collection[str]] = None,
    ) -> List[RawTransaction]:
        """
        Все подтверждённые транзакции по адресу, страница за страницей (новые
        первыми). Листание останавливается на странице, где встретился уже
        учтённый txid, или в конце истории.
        """
        known = known_txids or ()
        if ticker:
            return await self._list_token_operations(address, ticker.strip().upper(), known)
        return await self._list_native_transactions(address, known)

    async def _list_native_transactions(self, address: str, known: Collection[str]) -> List[RawTransaction]:
        url = f"{self.chain_api_url}/addresses/{address}/full-transactions"
        out: List[RawTransaction] = []
        offset = 0
        for _ in range(self.max_pages):
            payload = await self._request_json(
                url,
                {"limit": self.page_limit, "offset": offset, "resolve_previous_outpoints": "light"},
            )
            items: List[dict[str, Any]] = payload if isinstance(payload, list) else []
            page = self._parse_many(items, self._parse_native_tx)
            out.extend(page)
            if len(items) < self.page_limit or any(tx.txid in known for tx in page):
                return out
            offset += len(items)
        raise self._too_many_pages(address)

    async def _list_token_operations(self, address: str, ticker: str, known: Collection[str]) -> List[RawTransaction]:
        url = f"{self.token_api_url}/krc20/oplist"
        out: List[RawTransaction] = []
        cursor: Optional[str] = None
        for _ in range(self.max_pages):
            params: dict[str, Any] = {"address": address, "tick": ticker}
            if cursor:
                params["next"] = cursor
            payload = await self._request_json(url, params)
            if not isinstance(payload, dict) or payload.get("message") != "successful":
                raise GatewayError("Token indexer returned an unexpected payload.")
            items = payload.get("result") or []
            page = self._parse_many(items, self._parse_token_op)
            out.extend(page)
            cursor = payload.get("next") or None
            if not cursor or not items or any(tx.txid in known for tx in page):
                return out
        raise self._too_many_pages(address)

    def _too_many_pages(self, address: str) -> GatewayError:
        logger.error(
            "[ChainGateway] transaction history exceeds page cap",
            extra={"address": address, "max_pages": self.max_pages, "page_limit": self.page_limit},
        )
        return GatewayError(
            "Chain gateway history is longer than the page cap.",
            details={"max_pages": self.max_pages},
        )

    def _parse_many(self, items: Iterable[dict[str, Any]], parser) -> List[RawTransaction]:
        out: List[RawTransaction] = []
        for item in items:
            try:
                tx = parser(item)
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                logger.warning(
                    "[ChainGateway] skip item",
                    extra={"error": str(exc), "raw": str(item)[:512]},
                )
                continue
            if tx is not None:
                out.append(tx)
        return out

    @staticmethod
    def _parse_native_tx(item: dict[str, Any]) -> Optional[RawTransaction]:
        """Нативная транзакция; неподтверждённые (is_accepted=false) отбрасываются."""
        if item.get("is_accepted") is False:
            return None
        txid = str(item.get("hash") or item.get("transaction_id") or "")
        if not txid:
            raise ValueError("transaction without hash")
        outputs = [
            TxOutput(address=str(o.get("script_public_key_address") or ""), amount=o.get("amount"))
            for o in (item.get("outputs") or [])
        ]
        inputs = item.get("inputs") or []
        sender = None
        if inputs:
            sender = inputs[0].get("previous_outpoint_address") or None
        return RawTransaction(
            txid=txid,
            sender=sender,
            outputs=outputs,
            op_kind=OP_TRANSFER,
            confirmed_at=from_unix_ms(item.get("block_time")),
        )

    @staticmethod
    def _parse_token_op(item: dict[str, Any]) -> Optional[RawTransaction]:
        """Операция токена; отклонённые индексатором (opAccept != 1) отбрасываются."""
        if str(item.get("opAccept", "1")) != "1":
            return None
        txid = str(item.get("hashRev") or "")
        if not txid:
            raise ValueError("operation without hashRev")
        return RawTransaction(
            txid=txid,
            sender=item.get("from") or None,
            outputs=[TxOutput(address=str(item.get("to") or ""), amount=item.get("amt"))],
            op_kind=str(item.get("op") or "").lower(),
            confirmed_at=from_unix_ms(item.get("mtsAdd")),
        )

    # ------------------------------------------------------------------ балансы

    async def get_native_balance(self, address: str) -> Decimal:
        payload = await self._request_json(f"{self.chain_api_url}/addresses/{address}/balance")
        try:
            return base_units_to_display(payload["balance"], self.decimals)
        except (KeyError, TypeError, ValueError) as exc:
            raise GatewayError("Malformed native balance payload.") from exc

    async def get_token_balance(self, address: str, ticker: str) -> Decimal:
        tick = ticker.strip().upper()
        payload = await self._request_json(f"{self.token_api_url}/krc20/address/{address}/token/{tick}")
        result = (payload or {}).get("result") or []
        if not result:
            return Decimal(0)
        try:
            return base_units_to_display(result[0]["balance"], self.decimals)
        except (KeyError, TypeError, ValueError) as exc:
            raise GatewayError("Malformed token balance payload.") from exc

    async def token_is_deployed(self, ticker: str) -> bool:
        """Тикер существует и эмиссия завершена (state == finished)."""
        tick = ticker.strip().upper()
        try:
            payload = await self._request_json(f"{self.token_api_url}/krc20/token/{tick}")
        except GatewayError:
            logger.warning("[ChainGateway] token info unavailable", extra={"ticker": tick})
            return False
        result = (payload or {}).get("result") or []
        if not result:
            return False
        return str(result[0].get("state") or "").lower() == "finished"


__all__ = [
    "OP_TRANSFER",
    "TxOutput",
    "RawTransaction",
    "ChainGateway",
    "HttpChainGateway",
]


# =============================================================================
# Пояснения «для чайника»:
#   • Модуль только читает сеть; деньги двигает payment_executor.
#   • Список транзакций каждый раз дочитывается до уже известных: дубли
#     нормальны, реестр отсекает их по txid.
#   • Суммы в RawTransaction в базовых единицах (строка/число как в API);
#     балансы сразу переводятся в отображаемые единицы.
# =============================================================================
