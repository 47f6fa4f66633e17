# -*- coding: utf-8 -*-
# raffle_backend/app/core/config_core.py
# =============================================================================
# Назначение:
#   • Единый конфигурационный модуль движка розыгрышей (FastAPI + SQLAlchemy async).
#   • Канонический источник всех настроек: БД, шлюз блокчейна, исполнитель
#     платежей, казначейство, резервы газа, планировщик, алерты оператору.
#
# Канон / инварианты:
#   1) Протокольная комиссия фиксирована: 5% от суммы расчёта.
#      Любая попытка изменить её через ENV игнорируется с предупреждением.
#   2) Все денежные величины живут в «отображаемых» единицах актива,
#      переведённых из базовых единиц через BASE_UNIT_DECIMALS (обычно 10^8).
#   3) Резерв нативного актива на адресе розыгрыша: 15 для токен-розыгрышей,
#      3 для нативных. Резерв не может быть отрицательным.
#   4) Аренда расчёта (lease) имеет максимальное время удержания, после
#      которого считается брошенной и может быть перехвачена.
#
# Самодиагностика:
#   • configure_decimal_context() настраивает Decimal (ROUND_DOWN + запас точности).
#   • initialize_runtime() проверяет DSN и печатает предупреждения по секретам
#     и адресу казначейства.
# =============================================================================

from __future__ import annotations

from decimal import Decimal, ROUND_DOWN, getcontext
from functools import lru_cache
from typing import Annotated, Dict, Iterable, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

CANON_PROTOCOL_FEE = Decimal("0.05")


# =============================================================================
# Вспомогательные утилиты (локальные, без сетевых вызовов)
# =============================================================================


def _parse_csv(value: object) -> List[str]:
    """Преобразует CSV-строку 'a,b,c' в ['a', 'b', 'c'] (пробелы обрезаются)."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(x).strip() for x in value if str(x).strip()]
    s = str(value).strip()
    if not s:
        return []
    return [item.strip() for item in s.split(",") if item.strip()]


def _unique(items: Iterable[str]) -> List[str]:
    """Возвращает элементы без повторов, сохраняя порядок первого появления."""
    out: List[str] = []
    for item in items:
        if item not in out:
            out.append(item)
    return out


# =============================================================================
# Док-описания полей
# =============================================================================


class _Doc:
    # Приложение
    PROJECT_NAME = "Имя проекта (отображается в Swagger/health)."
    ENV = "Окружение: production/dev/local (нормализуется в prod/dev/local)."
    DEBUG = "Расширенные логи и трассировки (только для dev/local)."
    APP_VERSION = "Версия приложения (попадает в /health)."
    APP_HOST = "Адрес для uvicorn (обычно 0.0.0.0)."
    APP_PORT = "Порт для uvicorn."
    API_PREFIX = "Префикс REST API, например /api."

    # БД
    DATABASE_URL = (
        "DSN PostgreSQL. Будет автоматически приведён к async (postgresql+asyncpg://)."
    )
    DB_POOL_SIZE = "Размер пула соединений SQLAlchemy."
    DB_MAX_OVERFLOW = "Дополнительные соединения в пике."
    DB_SCHEMA_RAFFLES = "Схема таблиц розыгрышей (пусто = схема по умолчанию)."

    # Шлюз блокчейна
    CHAIN_API_URL = "Базовый URL REST API нативной сети (транзакции, балансы)."
    TOKEN_API_URL = "Базовый URL индексатора токенов (список операций, балансы)."
    CHAIN_API_TIMEOUT_SEC = "Таймаут запросов к шлюзу блокчейна (сек)."
    CHAIN_TX_PAGE_LIMIT = "Размер одной страницы истории транзакций."
    CHAIN_TX_MAX_PAGES = "Максимум страниц истории за один опрос адреса."

    # Исполнитель платежей
    PAYMENT_EXECUTOR_URL = "URL сервиса подписи и отправки переводов."
    PAYMENT_EXECUTOR_API_KEY = "API-ключ сервиса подписи."
    PAYMENT_EXECUTOR_TIMEOUT_SEC = "Таймаут одного перевода (сек, до двух минут)."

    # Активы и казначейство
    NATIVE_TICKER = "Тикер нативного актива сети (газ)."
    BASE_UNIT_DECIMALS = "Показатель базовых единиц на единицу отображения (обычно 8)."
    TREASURY_ADDRESS = "Адрес казначейства (комиссии, свипы, пополнение газа)."
    TREASURY_KEY_REF = "Ссылка на ключ подписи казначейства (ключ хранит исполнитель)."
    PROTOCOL_FEE_FRACTION = "Доля протокольной комиссии (жёстко 0.05)."
    TOKEN_RAFFLE_MIN_NATIVE_RESERVE = "Мин. резерв нативного актива для токен-розыгрыша."
    NATIVE_RAFFLE_MIN_NATIVE_RESERVE = "Мин. резерв нативного актива для нативного розыгрыша."
    SETTLEMENT_STEP_DELAY_SEC = "Пауза после каждой отправки на распространение (сек)."
    SETTLEMENT_LEASE_MAX_HOLD_SEC = "Максимальное удержание аренды расчёта (сек)."
    LEDGER_TOLERANCE = "Допуск сверки агрегатов реестра кредитов."

    # Розыгрыши
    RAFFLE_MAX_DURATION_DAYS = "Максимальная длительность розыгрыша (дней)."
    RAFFLE_MAX_WINNERS = "Максимальное число победителей в одном розыгрыше."

    # Планировщик
    SCHEDULER_TICK_SECONDS = "Единый тик сверки (сек). Рекомендуется 60."
    SCHEDULER_TICK_TIMEOUT_SEC = "Порог предупреждения о затянувшемся проходе сверки (сек); проход не прерывается."

    # Алерты
    ALERT_TELEGRAM_BOT_TOKEN = "Токен Telegram-бота для алертов оператору."
    ALERT_TELEGRAM_CHAT_ID = "Чат оператора для алертов."

    # Веб
    CORS_ORIGINS = "Список разрешённых Origin (CSV)."


# =============================================================================
# Настройки приложения (единственный источник истины)
# =============================================================================


class Settings(BaseSettings):
    """
    Контейнер переменных окружения движка розыгрышей.

    Важное:
      • Секреты берём только из ENV; ключи подписи здесь не хранятся,
        только непрозрачные ссылки на них.
      • Комиссия протокола закреплена здесь и проверяется валидатором.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # --------------------------- БАЗОВЫЕ НАСТРОЙКИ ---------------------------
    PROJECT_NAME: str = Field("Raffle Engine", description=_Doc.PROJECT_NAME)
    ENV: str = Field("production", description=_Doc.ENV)
    DEBUG: bool = Field(False, description=_Doc.DEBUG)
    APP_VERSION: str = Field("1.0.0", description=_Doc.APP_VERSION)
    APP_HOST: str = Field("0.0.0.0", description=_Doc.APP_HOST)
    APP_PORT: int = Field(8000, description=_Doc.APP_PORT)
    API_PREFIX: str = Field("/api", description=_Doc.API_PREFIX)

    # --------------------------------- БАЗА ----------------------------------
    DATABASE_URL: Optional[str] = Field(None, description=_Doc.DATABASE_URL)
    DB_POOL_SIZE: int = Field(10, description=_Doc.DB_POOL_SIZE)
    DB_MAX_OVERFLOW: int = Field(10, description=_Doc.DB_MAX_OVERFLOW)
    DB_SCHEMA_RAFFLES: str = Field("raffles", description=_Doc.DB_SCHEMA_RAFFLES)

    # ---------------------------- ШЛЮЗ БЛОКЧЕЙНА -----------------------------
    CHAIN_API_URL: str = Field("https://api.kaspa.org", description=_Doc.CHAIN_API_URL)
    TOKEN_API_URL: str = Field(
        "https://api.kasplex.org/v1",
        description=_Doc.TOKEN_API_URL,
    )
    CHAIN_API_TIMEOUT_SEC: float = Field(20.0, description=_Doc.CHAIN_API_TIMEOUT_SEC)
    CHAIN_TX_PAGE_LIMIT: int = Field(50, description=_Doc.CHAIN_TX_PAGE_LIMIT)
    CHAIN_TX_MAX_PAGES: int = Field(200, description=_Doc.CHAIN_TX_MAX_PAGES)

    # ------------------------- ИСПОЛНИТЕЛЬ ПЛАТЕЖЕЙ --------------------------
    PAYMENT_EXECUTOR_URL: str = Field(
        "http://localhost:8100",
        description=_Doc.PAYMENT_EXECUTOR_URL,
    )
    PAYMENT_EXECUTOR_API_KEY: Optional[str] = Field(
        None,
        description=_Doc.PAYMENT_EXECUTOR_API_KEY,
    )
    PAYMENT_EXECUTOR_TIMEOUT_SEC: float = Field(
        150.0,
        description=_Doc.PAYMENT_EXECUTOR_TIMEOUT_SEC,
    )

    # ------------------------- АКТИВЫ / КАЗНАЧЕЙСТВО -------------------------
    NATIVE_TICKER: str = Field("KAS", description=_Doc.NATIVE_TICKER)
    BASE_UNIT_DECIMALS: int = Field(8, description=_Doc.BASE_UNIT_DECIMALS)
    TREASURY_ADDRESS: str = Field("", description=_Doc.TREASURY_ADDRESS)
    TREASURY_KEY_REF: str = Field("treasury", description=_Doc.TREASURY_KEY_REF)
    PROTOCOL_FEE_FRACTION: Decimal = Field(
        CANON_PROTOCOL_FEE,
        description=_Doc.PROTOCOL_FEE_FRACTION,
    )
    TOKEN_RAFFLE_MIN_NATIVE_RESERVE: Decimal = Field(
        Decimal("15"),
        description=_Doc.TOKEN_RAFFLE_MIN_NATIVE_RESERVE,
    )
    NATIVE_RAFFLE_MIN_NATIVE_RESERVE: Decimal = Field(
        Decimal("3"),
        description=_Doc.NATIVE_RAFFLE_MIN_NATIVE_RESERVE,
    )
    SETTLEMENT_STEP_DELAY_SEC: float = Field(
        10.0,
        description=_Doc.SETTLEMENT_STEP_DELAY_SEC,
    )
    SETTLEMENT_LEASE_MAX_HOLD_SEC: int = Field(
        1800,
        description=_Doc.SETTLEMENT_LEASE_MAX_HOLD_SEC,
    )
    LEDGER_TOLERANCE: Decimal = Field(
        Decimal("1e-12"),
        description=_Doc.LEDGER_TOLERANCE,
    )

    # -------------------------------- РОЗЫГРЫШИ ------------------------------
    RAFFLE_MAX_DURATION_DAYS: int = Field(5, description=_Doc.RAFFLE_MAX_DURATION_DAYS)
    RAFFLE_MAX_WINNERS: int = Field(100, description=_Doc.RAFFLE_MAX_WINNERS)

    # ------------------------------- ПЛАНИРОВЩИК -----------------------------
    SCHEDULER_TICK_SECONDS: int = Field(60, description=_Doc.SCHEDULER_TICK_SECONDS)
    SCHEDULER_TICK_TIMEOUT_SEC: int = Field(
        3600,
        description=_Doc.SCHEDULER_TICK_TIMEOUT_SEC,
    )

    # ---------------------------------- АЛЕРТЫ -------------------------------
    ALERT_TELEGRAM_BOT_TOKEN: Optional[str] = Field(
        None,
        description=_Doc.ALERT_TELEGRAM_BOT_TOKEN,
    )
    ALERT_TELEGRAM_CHAT_ID: Optional[str] = Field(
        None,
        description=_Doc.ALERT_TELEGRAM_CHAT_ID,
    )

    # ----------------------------------- ВЕБ ---------------------------------
    CORS_ORIGINS: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        description=_Doc.CORS_ORIGINS,
    )

    # =========================== ВАЛИДАТОРЫ ==================================

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _v_cors_origins(cls, value: object) -> List[str]:
        return _unique(_parse_csv(value))

    @field_validator("PROTOCOL_FEE_FRACTION", mode="before")
    @classmethod
    def _v_fix_fee(cls, value: object) -> Decimal:
        """
        Канон: комиссия протокола ровно 5%.
        Любое значение из ENV будет проигнорировано, но мы напечатаем предупреждение.
        """
        try:
            raw = Decimal(str(value))
        except Exception:
            raw = CANON_PROTOCOL_FEE
        if raw != CANON_PROTOCOL_FEE:
            print(
                "[WARN] PROTOCOL_FEE_FRACTION переопределён в ENV, "
                "но канон фиксирует 0.05. Применяем 0.05.",
            )
        return CANON_PROTOCOL_FEE

    @field_validator(
        "TOKEN_RAFFLE_MIN_NATIVE_RESERVE",
        "NATIVE_RAFFLE_MIN_NATIVE_RESERVE",
    )
    @classmethod
    def _v_reserves(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("резерв нативного актива не может быть отрицательным")
        return value

    @field_validator("BASE_UNIT_DECIMALS")
    @classmethod
    def _v_decimals(cls, value: int) -> int:
        if not 0 <= value <= 18:
            raise ValueError("BASE_UNIT_DECIMALS должен быть в диапазоне 0..18")
        return value

    @field_validator(
        "SCHEDULER_TICK_SECONDS",
        "SETTLEMENT_LEASE_MAX_HOLD_SEC",
        "RAFFLE_MAX_DURATION_DAYS",
        "RAFFLE_MAX_WINNERS",
        "CHAIN_TX_PAGE_LIMIT",
        "CHAIN_TX_MAX_PAGES",
    )
    @classmethod
    def _v_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("значение должно быть > 0")
        return value

    # =========================== Удобные свойства/методы =====================

    @property
    def env_normalized(self) -> str:
        """Нормализует ENV к одному из: prod/dev/local."""
        value = (self.ENV or "").strip().lower()
        if value.startswith("prod"):
            return "prod"
        if value.startswith("dev"):
            return "dev"
        if value.startswith("loc") or value.startswith("test"):
            return "local"
        return "prod"

    @property
    def is_prod(self) -> bool:
        return self.env_normalized == "prod"

    @property
    def db_schema(self) -> Optional[str]:
        """Схема таблиц или None (SQLite и схема по умолчанию)."""
        schema = (self.DB_SCHEMA_RAFFLES or "").strip()
        return schema or None

    def database_url_async(self) -> str:
        """
        Возвращает DSN для SQLAlchemy async:
          postgres://   → postgresql+asyncpg://
          postgresql:// → postgresql+asyncpg:// при отсутствии драйвера.
        Остальные DSN (например sqlite+aiosqlite://) возвращаются как есть.
        """
        if not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL не задан (нужен DSN Postgres).")
        url = self.DATABASE_URL
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    def configure_decimal_context(self) -> None:
        """
        Настраивает глобальный Decimal:
          • precision с большим запасом над BASE_UNIT_DECIMALS (дробные кредиты),
          • округление по умолчанию ROUND_DOWN.
        """
        ctx = getcontext()
        ctx.prec = max(40, self.BASE_UNIT_DECIMALS + 30)
        ctx.rounding = ROUND_DOWN

    def assert_required_secrets(self) -> None:
        """
        Мягкая самодиагностика критичных секретов/адресов.
        Печатает WARN, но не падает.
        """
        if not self.DATABASE_URL:
            print("[WARN] DATABASE_URL не задан, БД будет недоступна.")
        if not self.TREASURY_ADDRESS:
            print("[WARN] TREASURY_ADDRESS не задан, расчёты розыгрышей невозможны.")
        if not self.PAYMENT_EXECUTOR_API_KEY:
            print("[WARN] PAYMENT_EXECUTOR_API_KEY не задан, выплаты могут отклоняться.")

    def debug_dump(self) -> Dict[str, str]:
        """Безопасный дамп ключевых настроек (без секретов) для /health и логов."""
        return {
            "env": self.env_normalized,
            "projectName": self.PROJECT_NAME,
            "version": self.APP_VERSION,
            "dbUrlSet": "yes" if bool(self.DATABASE_URL) else "no",
            "chainApiUrl": self.CHAIN_API_URL,
            "tokenApiUrl": self.TOKEN_API_URL,
            "nativeTicker": self.NATIVE_TICKER,
            "treasurySet": "yes" if bool(self.TREASURY_ADDRESS) else "no",
            "tickSeconds": str(self.SCHEDULER_TICK_SECONDS),
        }

    def initialize_runtime(self) -> None:
        """
        Единая точка инициализации конфигурации при старте приложения:
          • Приведение DSN БД к async-формату.
          • Настройка Decimal контекста (ROUND_DOWN).
          • Мягкая самодиагностика секретов.
        """
        if self.DATABASE_URL:
            _ = self.database_url_async()

        self.configure_decimal_context()
        self.assert_required_secrets()


# =============================================================================
# Синглтон настроек для всего приложения
# =============================================================================


@lru_cache()
def get_settings() -> Settings:
    """Создаёт и кэширует объект Settings, выполняя initialize_runtime()."""
    settings_obj = Settings()
    settings_obj.initialize_runtime()
    return settings_obj


settings: Settings = get_settings()

__all__ = ["Settings", "get_settings", "settings", "CANON_PROTOCOL_FEE"]
# =============================================================================
# Пояснения «для чайника»:
#   • Все настройки читаются один раз и кэшируются: используйте get_settings().
#   • Комиссия протокола 5% зашита в код; ENV её не меняет.
#   • Ключи подписи здесь не живут: TREASURY_KEY_REF лишь имя ключа, который
#     хранит исполнитель платежей.
#   • Для тестов на SQLite задайте DB_SCHEMA_RAFFLES="" (пустая схема).
# =============================================================================
