# ==============================================================================
# Raffle Engine: FastAPI application factory
# ------------------------------------------------------------------------------
# Назначение: создаёт и конфигурирует FastAPI-приложение, подключает
# middleware корреляции, CORS, обработчики доменных ошибок и роутеры.
#
# Канон/инварианты:
#   • create_app() повторяема: можно вызывать несколько раз (тесты).
#   • HTTP-слой не запускает сверку и не двигает деньги.
#
# Запреты:
#   • Не запускает планировщик: он живёт отдельным процессом
#     (raffle_backend.app.scheduler.reconcile_raffles).
# ==============================================================================
from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config_core import get_settings
from .core.database_core import db_ping
from .core.errors_core import register_exception_handlers
from .core.logging_core import CorrelationIdMiddleware, get_logger
from .routes import raffles_routes

logger = get_logger(__name__)


def create_app() -> FastAPI:
    """Создать FastAPI-приложение движка розыгрышей."""

    settings = get_settings()
    app = FastAPI(title=settings.PROJECT_NAME, version=settings.APP_VERSION)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)
    register_exception_handlers(app)

    prefix = settings.API_PREFIX.rstrip("/")
    app.include_router(raffles_routes.router, prefix=f"{prefix}/raffles", tags=["raffles"])

    @app.get("/health", tags=["health"])
    async def health() -> Dict[str, Any]:
        """Живость сервиса и доступность БД."""

        db_ok = await db_ping()
        return {"status": "ok" if db_ok else "degraded", "db": db_ok, **settings.debug_dump()}

    logger.info("FastAPI app initialised")
    return app


__all__ = ["create_app"]
# ==============================================================================
# Пояснения «для чайника»:
#   • Ручки розыгрышей живут под {API_PREFIX}/raffles (по умолчанию /api/raffles).
#   • /health показывает статус БД и безопасный дамп настроек.
#   • Сверка депозитов и выплаты запускаются отдельным процессом планировщика.
# ==============================================================================
