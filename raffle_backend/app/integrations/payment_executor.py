# -*- coding: utf-8 -*-
# raffle_backend/app/integrations/payment_executor.py
# =============================================================================
# Raffle Engine: исполнитель платежей (подпись и отправка переводов)
# -----------------------------------------------------------------------------
# Назначение:
#   • Отправляет один перевод (адрес, сумма в отображаемых единицах, тикер,
#     ссылка на ключ) во внешний сервис подписи и возвращает txid.
#   • Движок видит сервис как непрозрачный медленный вызов (секунды, до двух
#     минут), который может упасть.
#
# Канон/инварианты:
#   • Сумма передаётся строкой Decimal (8 знаков, ROUND_DOWN), без float.
#   • Успех = 2xx и непустой txid в ответе. Всё прочее → PaymentError.
#
# Запреты:
#   • Модуль не хранит и не выводит ключи: только key_ref.
#   • Никаких повторов внутри вызова: повтор делает следующий тик сверки.
# =============================================================================
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import httpx

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.errors_core import PaymentError
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.utils_core import d8, format_decimal_str

logger = get_logger(__name__)
settings = get_settings()


@dataclass(slots=True, frozen=True)
class TransferRequest:
    destination: str
    amount: Decimal
    asset_ticker: str
    signing_key_ref: str
    # Для аудита на стороне сервиса подписи
    reference: Optional[str] = None


class PaymentExecutor(Protocol):
    async def send(self, request: TransferRequest) -> str: ...


class HttpPaymentExecutor:
    """
    HTTP-клиент сервиса подписи:

        POST {base}/v1/transfers
        {"destination", "amount", "asset", "keyRef", "reference"}
        → {"txid": "..."}
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.PAYMENT_EXECUTOR_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.PAYMENT_EXECUTOR_API_KEY
        self.timeout_seconds = timeout_seconds or settings.PAYMENT_EXECUTOR_TIMEOUT_SEC
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    async def send(self, request: TransferRequest) -> str:
        amount = d8(request.amount)
        if amount <= 0:
            raise PaymentError("Transfer amount must be positive.", details={"amount": str(amount)})

        body: Dict[str, Any] = {
            "destination": request.destination,
            "amount": format_decimal_str(amount),
            "asset": request.asset_ticker,
            "keyRef": request.signing_key_ref,
        }
        if request.reference:
            body["reference"] = request.reference

        log_extra = {
            "destination": request.destination,
            "amount": str(amount),
            "asset": request.asset_ticker,
            "reference": request.reference,
        }
        logger.info("[PaymentExecutor] sending transfer", extra=log_extra)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    f"{self.base_url}/v1/transfers",
                    json=body,
                    headers=self._headers(),
                )
        except httpx.HTTPError as exc:
            logger.warning("[PaymentExecutor] transport error", extra={**log_extra, "error": str(exc)})
            raise PaymentError("Payment executor is unreachable.") from exc

        if response.status_code >= 300:
            logger.warning(
                "[PaymentExecutor] rejected transfer",
                extra={**log_extra, "status": response.status_code},
            )
            raise PaymentError(
                "Payment executor rejected the transfer.",
                details={"status": response.status_code},
            )

        try:
            txid = str((response.json() or {}).get("txid") or "")
        except ValueError:
            txid = ""
        if not txid:
            raise PaymentError("Payment executor response has no txid.")

        logger.info("[PaymentExecutor] transfer sent", extra={**log_extra, "txid": txid})
        return txid


__all__ = ["TransferRequest", "PaymentExecutor", "HttpPaymentExecutor"]
