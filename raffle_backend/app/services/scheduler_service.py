# -*- coding: utf-8 -*-
# raffle_backend/app/services/scheduler_service.py
# =============================================================================
# Назначение кода:
#   Планировщик фоновых задач движка розыгрышей. Будит зарегистрированные
#   задачи с единым интервалом (SCHEDULER_TICK_SECONDS, по умолчанию 60 сек).
#   Основная задача: reconcile_raffles (ingest → жеребьёвка → выплаты → расчёт).
#
# Канон/инварианты:
#   • Время только будит задачи и не фильтрует данные: что обрабатывать,
#     решает сама сверка по состоянию розыгрышей.
#   • Одна задача не запускается второй раз, пока идёт первая.
#   • Денежная логика вне планировщика. Здесь только вызовы run_once().
#
# ИИ-защита/самовосстановление:
#   • Планировщик никогда не отменяет задачу: проход дольше TASK_TIMEOUT_SEC
#     логируется как overrun и дорабатывает до конца.
#   • Ошибки логируются, backoff растёт.
#   • Падение одной задачи не останавливает цикл.
#
# Запреты:
#   • Нет прямого доступа к БД из планировщика.
# =============================================================================

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.logging_core import get_logger
from raffle_backend.app.core.utils_core import utcnow

# Тип сигнатуры выполняемой корутины: async def job() -> Any
JobCallable = Callable[[], Awaitable[Any]]

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Настройки планировщика (через .env)
# -----------------------------------------------------------------------------
class SchedulerSettings(BaseSettings):
    """
    Конфигурация планировщика (переопределяется через .env):

      SCHED_INTERVAL_SEC        : интервал будильника; по умолчанию SCHEDULER_TICK_SECONDS
      SCHED_TASK_TIMEOUT_SEC    : порог «задача затянулась» (только warning, задача не
                                  прерывается); по умолчанию SCHEDULER_TICK_TIMEOUT_SEC
      SCHED_BACKOFF_START_SEC=5 : начальный backoff после ошибки (сек)
      SCHED_BACKOFF_MAX_SEC=300 : максимум backoff (сек)
      SCHED_JITTER_SEC=3        : случайный джиттер к интервалу (сек, 0..N)
    """

    model_config = SettingsConfigDict(env_prefix="SCHED_", extra="ignore")

    INTERVAL_SEC: int = Field(default_factory=lambda: get_settings().SCHEDULER_TICK_SECONDS)
    TASK_TIMEOUT_SEC: int = Field(default_factory=lambda: get_settings().SCHEDULER_TICK_TIMEOUT_SEC)
    BACKOFF_START_SEC: int = Field(5)
    BACKOFF_MAX_SEC: int = Field(300)
    JITTER_SEC: int = Field(3)

    @field_validator("INTERVAL_SEC", "TASK_TIMEOUT_SEC", "BACKOFF_START_SEC", "BACKOFF_MAX_SEC")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("значение должно быть > 0")
        return v

    @field_validator("JITTER_SEC")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("значение должно быть >= 0")
        return v


# -----------------------------------------------------------------------------
# Структуры задач
# -----------------------------------------------------------------------------
@dataclass
class _Job:
    name: str
    func: JobCallable
    backoff_sec: int
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    last_result: Any = None
    running: bool = False
    next_allowed_at: Optional[datetime] = None
    runs: int = field(default=0)
    overruns: int = 0


# -----------------------------------------------------------------------------
# Планировщик
# -----------------------------------------------------------------------------
class SchedulerService:
    """
    Планировщик с единым будильником. Ничего не знает о розыгрышах:
    только вызывает зарегистрированные корутины.
    """

    def __init__(
        self,
        settings: Optional[SchedulerSettings] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.s = settings or SchedulerSettings()
        self._clock = clock
        self._jobs: Dict[str, _Job] = {}
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ----------------------------- Регистрация ------------------------------

    def register(self, name: str, func: JobCallable) -> None:
        if name in self._jobs:
            raise ValueError(f"job '{name}' already registered")
        self._jobs[name] = _Job(name=name, func=func, backoff_sec=self.s.BACKOFF_START_SEC)

    def register_defaults(self) -> None:
        """Регистрирует сверку розыгрышей."""
        from raffle_backend.app.scheduler.reconcile_raffles import run_once

        self.register("reconcile_raffles", run_once)
        logger.info("Scheduler: registered jobs: %s", list(self._jobs.keys()))

    # ------------------------------- Жизненный цикл -------------------------

    async def start(self) -> None:
        if self._stop.is_set():
            raise RuntimeError("Scheduler is stopping/stopped")
        logger.info(
            "Scheduler: start (%d jobs, interval=%ss, overrun warning=%ss)",
            len(self._jobs),
            self.s.INTERVAL_SEC,
            self.s.TASK_TIMEOUT_SEC,
        )
        self._task = asyncio.create_task(self._loop(), name="scheduler:main")

    async def stop(self) -> None:
        """Текущий тик будет завершён, новые не запустятся."""
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def run_single_tick(self) -> None:
        """Один тик без вечного цикла (ручной запуск, тесты)."""
        await self._run_tick()

    async def _loop(self) -> None:
        try:
            while not self._stop.is_set():
                start = self._clock()
                await self._run_tick()

                jitter = random.randint(0, self.s.JITTER_SEC) if self.s.JITTER_SEC > 0 else 0
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=max(1, self.s.INTERVAL_SEC + jitter))
                except asyncio.TimeoutError:
                    pass
                finally:
                    duration = (self._clock() - start).total_seconds()
                    logger.debug("Scheduler tick finished in %.3fs", duration)
        except asyncio.CancelledError:
            logger.info("Scheduler: cancelled")
            raise
        except Exception:
            logger.exception("Scheduler: critical failure (loop)")
        finally:
            logger.info("Scheduler: stopped")

    # ------------------------------- Один тик --------------------------------

    async def _run_tick(self) -> None:
        now = self._clock()
        for job in self._jobs.values():
            if job.next_allowed_at is not None and now < job.next_allowed_at:
                logger.debug("Job %s: backoff until %s", job.name, job.next_allowed_at.isoformat())
                continue
            await self._run_job(job)

    async def _run_job(self, job: _Job) -> None:
        if job.running:
            logger.warning("Job %s: already running, skip", job.name)
            return

        job.running = True
        task = asyncio.ensure_future(job.func())
        try:
            done, _ = await asyncio.wait({task}, timeout=self.s.TASK_TIMEOUT_SEC)
            if not done:
                job.overruns += 1
                logger.warning(
                    "Job %s: still running after %ss, waiting for it to finish (overruns=%s)",
                    job.name,
                    self.s.TASK_TIMEOUT_SEC,
                    job.overruns,
                )
            job.last_result = await asyncio.shield(task)
            job.runs += 1
            job.consecutive_failures = 0
            job.last_error = None
            job.backoff_sec = self.s.BACKOFF_START_SEC
            job.next_allowed_at = None
            logger.info("Job %s: done", job.name)
        except Exception as e:
            self._fail(job, str(e) or type(e).__name__)
            logger.exception(
                "Job %s: error (fail=%s, backoff=%ss): %s",
                job.name,
                job.consecutive_failures,
                job.backoff_sec,
                e,
            )
        finally:
            if task.done():
                job.running = False
            else:
                task.add_done_callback(lambda _t: setattr(job, "running", False))

    def _fail(self, job: _Job, error: str) -> None:
        job.consecutive_failures += 1
        job.last_error = error
        job.backoff_sec = min(job.backoff_sec * 2, self.s.BACKOFF_MAX_SEC)
        job.next_allowed_at = self._clock() + timedelta(seconds=job.backoff_sec)

    # ------------------------------- Наблюдаемость ---------------------------

    def list_jobs(self) -> List[Dict[str, Any]]:
        """Краткая сводка по задачам для health/логов."""
        return [
            {
                "name": j.name,
                "running": j.running,
                "runs": j.runs,
                "overruns": j.overruns,
                "failures": j.consecutive_failures,
                "last_error": j.last_error,
                "backoff_sec": j.backoff_sec,
                "next_allowed_at": j.next_allowed_at.isoformat() if j.next_allowed_at else None,
            }
            for j in self._jobs.values()
        ]


__all__ = ["SchedulerSettings", "SchedulerService", "JobCallable"]
# =============================================================================
# Пояснения «для чайника»:
#   • Планировщик раз в минуту (с небольшим джиттером) зовёт reconcile_raffles.
#   • Упавшая задача уходит в backoff 5 → 10 → 20 … ≤ 300 сек, цикл живёт.
#   • Вся логика денег в services/*; здесь только «будильник».
# =============================================================================
