# -*- coding: utf-8 -*-
# raffle_backend/app/core/__init__.py
# =============================================================================
# Назначение кода:
#   Ядро движка розыгрышей: настройки, логирование, ошибки, БД, утилиты.
#   Здесь только экспорт; бизнес-логика живёт в services/.
# =============================================================================

from __future__ import annotations

from .config_core import get_settings
from .logging_core import get_logger

CORE_VERSION = "1.0.0"

__all__ = ["CORE_VERSION", "get_settings", "get_logger"]
