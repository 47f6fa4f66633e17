# -*- coding: utf-8 -*-
# raffle_backend/app/core/logging_core.py
# =============================================================================
# Назначение кода:
#   Централизованная настройка логирования движка розыгрышей:
#   • формат и хэндлеры;
#   • контекст корреляции (request_id / tick_id, raffle_id);
#   • защита от утечек секретов;
#   • утилиты для сервисов и планировщика.
#
# Канон / инварианты:
#   • Единый стиль логов во всём приложении:
#       - prod: JSON (python-json-logger),
#       - dev/local: человекочитаемый формат.
#   • Логи не имеют права «ронять» приложение.
#   • Каждая запись несёт поля env, svc, rid, rfl.
#
# ИИ-защита:
#   • Фильтр маскирует значения секретов (API-ключи, токены, DSN).
#   • Корреляция через contextvars: тики и запросы не смешиваются.
#
# Запреты:
#   • Никакого логирования ключей подписи и их ссылок в открытом виде.
#   • Никаких сетевых/блокирующих операций в форматерах/фильтрах.
# =============================================================================

from __future__ import annotations

import contextvars
import logging
import sys
import uuid
from typing import Any, Awaitable, Callable, Dict, Mapping, MutableMapping, Optional, Tuple

from pythonjsonlogger.json import JsonFormatter

from raffle_backend.app.core.config_core import get_settings

ASGIApp = Callable[
    [Mapping[str, Any], Callable[..., Awaitable[Any]], Callable[..., Awaitable[Any]]],
    Awaitable[Any],
]


# -----------------------------------------------------------------------------
# Контекст корреляции (contextvars)
# -----------------------------------------------------------------------------
_rid_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "rid",
    default=None,
)  # request_id или tick_id
_rfl_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "rfl",
    default=None,
)  # raffle_id


def set_log_context(
    *,
    request_id: Optional[str] = None,
    raffle_id: Optional[str] = None,
) -> None:
    """
    Присвоить контекст корреляции текущему асинхронному потоку.

    Middleware ставит request_id, планировщик ставит tick_id в то же поле,
    сверка ставит raffle_id перед обработкой каждого розыгрыша.
    """
    if request_id is not None:
        _rid_var.set(str(request_id))
    if raffle_id is not None:
        _rfl_var.set(str(raffle_id))


def clear_log_context(*, raffle_only: bool = False) -> None:
    """Очистить контекст корреляции (после запроса/тика/розыгрыша)."""
    _rfl_var.set(None)
    if not raffle_only:
        _rid_var.set(None)


# -----------------------------------------------------------------------------
# Фильтры логирования
# -----------------------------------------------------------------------------
class ContextFilter(logging.Filter):
    """
    Впрыскивает в запись логера структурированные поля:
      • env: нормализованная среда (local/dev/prod);
      • svc: имя сервиса (PROJECT_NAME);
      • rid: request_id / tick_id;
      • rfl: raffle_id (если обрабатывается конкретный розыгрыш).
    """

    def __init__(self, env: str, service: str) -> None:
        super().__init__()
        self._env = env
        self._svc = service

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "env"):
            record.env = self._env
        if not hasattr(record, "svc"):
            record.svc = self._svc
        if not hasattr(record, "rid"):
            record.rid = _rid_var.get() or "-"
        if not hasattr(record, "rfl"):
            record.rfl = _rfl_var.get() or "-"
        return True


class RedactingFilter(logging.Filter):
    """
    Маскирует значения секретов из настроек в сообщении и аргументах.
    Ошибки внутри фильтра не блокируют логирование.
    """

    MASK = "****"
    SECRET_KEYS: Tuple[str, ...] = (
        "DATABASE_URL",
        "PAYMENT_EXECUTOR_API_KEY",
        "ALERT_TELEGRAM_BOT_TOKEN",
        "TREASURY_KEY_REF",
    )

    def __init__(self, settings_obj: object) -> None:
        super().__init__()
        self._secrets: list[str] = []
        for key in self.SECRET_KEYS:
            val = getattr(settings_obj, key, None)
            # Слишком короткие значения дали бы ложные срабатывания
            if val and isinstance(val, str) and len(val) >= 6:
                self._secrets.append(val)

    def _redact_text(self, text: str) -> str:
        if not text:
            return text
        redacted = text
        for secret in self._secrets:
            if secret in redacted:
                redacted = redacted.replace(secret, self.MASK)
        return redacted

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            if isinstance(record.msg, str):
                record.msg = self._redact_text(record.msg)
            if isinstance(record.args, tuple):
                record.args = tuple(
                    self._redact_text(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )
        except Exception:  # pragma: no cover
            pass
        return True


# -----------------------------------------------------------------------------
# Форматеры
# -----------------------------------------------------------------------------
class DevFormatter(logging.Formatter):
    """
    Человекочитаемый формат для local/dev.

    Пример строки:
    2026-05-01 12:00:00 | INFO     | Raffle Engine | raffle_backend... | rid=... rfl=... | msg
    """

    def __init__(self) -> None:
        super().__init__(
            fmt=(
                "%(asctime)s | %(levelname)-8s | %(svc)s | %(name)s | "
                "rid=%(rid)s rfl=%(rfl)s | %(message)s"
            ),
            datefmt="%Y-%m-%d %H:%M:%S",
        )


class _RaffleJsonFormatter(JsonFormatter):
    """JSON-строка с фиксированными ключами верхнего уровня и extra-полями."""

    _RENAME = {
        "asctime": "time",
        "levelname": "level",
        "svc": "service",
        "name": "logger",
        "message": "msg",
    }

    def process_log_record(self, log_data: Dict[str, Any]) -> Dict[str, Any]:
        base = super().process_log_record(log_data)
        out: Dict[str, Any] = {}
        for key, value in base.items():
            out[self._RENAME.get(key, key)] = value
        return out


def _make_json_formatter() -> logging.Formatter:
    """
    JSON-форматер для prod.

    Структура:
        {"time", "level", "service", "logger", "env", "rid", "rfl", "msg", ...extra}
    """
    fmt = "%(asctime)s %(levelname)s %(svc)s %(name)s %(env)s %(rid)s %(rfl)s %(message)s"
    return _RaffleJsonFormatter(fmt=fmt)


# -----------------------------------------------------------------------------
# Инициализация логирования
# -----------------------------------------------------------------------------
def setup_logging() -> None:
    """
    Полностью настраивает логирование:
      • root-логгер, формат, уровни;
      • фильтры контекста и маскирования;
      • uvicorn/fastapi-логгеры идут в root (единый формат);
      • SQLAlchemy-логгер в режиме DEBUG.
    """
    settings = get_settings()
    env = settings.env_normalized
    debug = bool(settings.DEBUG)
    service = settings.PROJECT_NAME

    root = logging.getLogger()
    root.handlers.clear()
    level = logging.DEBUG if debug else logging.INFO
    root.setLevel(level)

    ctx_filter = ContextFilter(env=env, service=service)
    redact_filter = RedactingFilter(settings_obj=settings)

    console_handler = logging.StreamHandler(sys.stdout)
    if env in ("local", "dev"):
        formatter: logging.Formatter = DevFormatter()
    else:
        formatter = _make_json_formatter()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(ctx_filter)
    console_handler.addFilter(redact_filter)
    root.addHandler(console_handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        lg = logging.getLogger(name)
        lg.handlers.clear()
        lg.setLevel(level)
        lg.propagate = True

    # httpx пишет каждую попытку запроса на INFO: оставляем только предупреждения
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if debug:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

    logging.getLogger(__name__).info(
        "Logging initialized",
        extra={"details": {"env": env, "debug": debug, "level": logging.getLevelName(level)}},
    )


def get_logger(name: Optional[str] = None, **extra: Any) -> logging.Logger:
    """
    Получить логгер по имени и (опционально) привязать дополнительные поля
    через LoggerAdapter.

    Пример:
        log = get_logger(__name__, component="ledger")
    """
    base = logging.getLogger(name)
    if not extra:
        return base
    return logging.LoggerAdapter(base, extra)  # type: ignore[return-value]


# -----------------------------------------------------------------------------
# ASGI-middleware для корреляции
# -----------------------------------------------------------------------------
class CorrelationIdMiddleware:
    """
    Берёт X-Request-ID из заголовков (или генерирует UUID4 hex), кладёт его
    в contextvars и возвращает клиенту тем же заголовком.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(
        self,
        scope: Mapping[str, Any],
        receive: Callable[..., Awaitable[Any]],
        send: Callable[..., Awaitable[Any]],
    ) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        raw_headers: MutableMapping[bytes, bytes] = dict(scope.get("headers") or [])
        headers: Dict[str, str] = {
            key.decode().lower(): value.decode() for key, value in raw_headers.items()
        }
        rid = headers.get("x-request-id") or uuid.uuid4().hex
        set_log_context(request_id=rid)

        async def send_wrapper(message: Mapping[str, Any]) -> None:
            if message.get("type") == "http.response.start":
                headers_list: list[Tuple[bytes, bytes]] = list(message.get("headers") or [])
                headers_list.append((b"x-request-id", rid.encode("utf-8")))
                new_message: Dict[str, Any] = dict(message)
                new_message["headers"] = headers_list
                await send(new_message)
                return
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            clear_log_context()


# -----------------------------------------------------------------------------
# Автоконфигурация при импорте
# -----------------------------------------------------------------------------
setup_logging()

__all__ = [
    "setup_logging",
    "get_logger",
    "set_log_context",
    "clear_log_context",
    "CorrelationIdMiddleware",
    "ContextFilter",
    "RedactingFilter",
]
# =============================================================================
# Пояснения «для чайника»:
#   • В dev/local логи читаемые; в prod это JSON с ключами env/rid/rfl.
#   • rid связывает все строки одного HTTP-запроса или одного тика сверки.
#   • rfl показывает, какой розыгрыш обрабатывался, когда появилась строка.
#   • Секреты из настроек автоматически заменяются на "****".
# =============================================================================
