# -*- coding: utf-8 -*-
# raffle_backend/app/core/errors_core.py
# =============================================================================
# Назначение кода:
#   • Единый слой доменных исключений движка розыгрышей.
#   • Канонические коды ошибок для API и логов.
#   • Унифицированные JSON-ответы для FastAPI.
#
# Канон / инварианты:
#   • Таксономия ошибок движка:
#       1) временные сбои внешних вызовов (GatewayError, PaymentError):
#          повторяются на следующем тике, флаги остаются false;
#       2) битые данные из шлюза: пропускаются поштучно, здесь не живут;
#       3) нарушение инварианта реестра (LedgerInvariantError): фатально
#          для розыгрыша в текущем тике, уходит оператору;
#       4) занятая аренда расчёта: это НЕ исключение, а пропуск шага.
#   • Клиенту никогда не утекают технические детали (stack trace, DSN, ключи).
#
# Запреты:
#   • Не включать сюда бизнес-логику.
#   • Не логировать здесь секреты.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, cast

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from raffle_backend.app.core.logging_core import get_logger

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Базовая доменная ошибка
# -----------------------------------------------------------------------------
@dataclass(eq=False)
class RaffleError(Exception):
    """
    Базовое доменное исключение.

    Поля:
      • code         : стабильный машинный код ошибки (snake_case).
      • message      : короткое безопасное сообщение для клиента.
      • http_status  : HTTP код по умолчанию.
      • details      : безопасные детали (без секретов), опционально.
    """

    code: str
    message: str
    http_status: int = status.HTTP_400_BAD_REQUEST
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """Готовит JSON-ответ для клиента."""
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# -----------------------------------------------------------------------------
# Ошибки API / состояния
# -----------------------------------------------------------------------------
class NotFoundError(RaffleError):
    """Розыгрыш не найден."""

    def __init__(
        self,
        message: str = "Raffle not found.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="not_found",
            message=message,
            http_status=status.HTTP_404_NOT_FOUND,
            details=details or {},
        )


class ValidationError(RaffleError):
    """Некорректные входные данные при создании/запросе розыгрыша."""

    def __init__(
        self,
        message: str = "Invalid data.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="validation_error",
            message=message,
            http_status=422,
            details=details or {},
        )


class RaffleStateError(RaffleError):
    """Операция недопустима в текущем статусе розыгрыша."""

    def __init__(
        self,
        message: str = "Operation not allowed in current raffle state.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="raffle_state_error",
            message=message,
            http_status=status.HTTP_409_CONFLICT,
            details=details or {},
        )


# -----------------------------------------------------------------------------
# Ошибки движка
# -----------------------------------------------------------------------------
class LedgerInvariantError(RaffleError):
    """
    Агрегаты реестра кредитов разошлись:
    totalEntries / currentEntries / сумма EntryRecord.
    Никогда не «исправляется» молча.
    """

    def __init__(
        self,
        message: str = "Ledger aggregates mismatch.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="ledger_invariant_violation",
            message=message,
            http_status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details or {},
        )


class GatewayError(RaffleError):
    """Шлюз блокчейна недоступен или ответил ошибкой (временный сбой)."""

    def __init__(
        self,
        message: str = "Chain gateway unavailable.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="gateway_error",
            message=message,
            http_status=status.HTTP_502_BAD_GATEWAY,
            details=details or {},
        )


class PaymentError(RaffleError):
    """Исполнитель платежей не смог отправить перевод (временный сбой)."""

    def __init__(
        self,
        message: str = "Payment executor failed.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="payment_error",
            message=message,
            http_status=status.HTTP_502_BAD_GATEWAY,
            details=details or {},
        )


# -----------------------------------------------------------------------------
# Нормализация исключений → (status_code, payload)
# -----------------------------------------------------------------------------
def normalize_exception(exc: BaseException) -> Tuple[int, Dict[str, Any]]:
    """
    Приводит произвольное исключение к каноническому HTTP-ответу.

    Правила:
      • RaffleError      → свой http_status + to_payload();
      • HTTPException    → status_code + {"error": "http_error", ...};
      • любая другая     → 500 + {"error": "internal_error"} без деталей.
    """
    if isinstance(exc, RaffleError):
        return exc.http_status, exc.to_payload()

    if isinstance(exc, HTTPException):
        details: Dict[str, Any] = {}
        if isinstance(exc.detail, str):
            msg = exc.detail
        elif isinstance(exc.detail, dict):
            details = cast(Dict[str, Any], exc.detail)
            msg = details.get("message") or details.get("detail") or "HTTP error."
        else:
            msg = "HTTP error."
        payload: Dict[str, Any] = {"error": "http_error", "message": msg}
        if details:
            payload["details"] = details
        return exc.status_code, payload

    logger.error("Unhandled exception", extra={"error_type": type(exc).__name__})
    return (
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {"error": "internal_error", "message": "Internal server error."},
    )


# -----------------------------------------------------------------------------
# FastAPI-хендлеры исключений
# -----------------------------------------------------------------------------
async def raffle_error_handler(request: Request, exc: RaffleError) -> JSONResponse:
    status_code, payload = normalize_exception(exc)
    logger.warning(
        "RaffleError handled",
        extra={"path": request.url.path, "error": exc.code, "status": status_code},
    )
    return JSONResponse(status_code=status_code, content=payload)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Последний рубеж: клиенту отдаём только internal_error."""
    status_code, payload = normalize_exception(exc)
    logger.error(
        "Unhandled exception handled by generic handler",
        extra={"path": request.url.path, "status": status_code, "exc_type": type(exc).__name__},
    )
    return JSONResponse(status_code=status_code, content=payload)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Подключает обработчики исключений. Вызывать один раз в create_app():
        app = FastAPI(...)
        register_exception_handlers(app)
    """
    app.add_exception_handler(RaffleError, raffle_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
    logger.info("Exception handlers registered for RaffleError/Exception")


__all__ = [
    "RaffleError",
    "NotFoundError",
    "ValidationError",
    "RaffleStateError",
    "LedgerInvariantError",
    "GatewayError",
    "PaymentError",
    "normalize_exception",
    "register_exception_handlers",
]
# =============================================================================
# Пояснения «для чайника»:
#   • В сервисах бросайте наследников RaffleError, а не HTTPException:
#     API увидит стабильный error-код и безопасное сообщение.
#   • GatewayError/PaymentError означают «попробуем на следующем тике».
#   • LedgerInvariantError означает «стоп, нужен человек»: сверка пропускает
#     розыгрыш и отправляет алерт оператору.
# =============================================================================
