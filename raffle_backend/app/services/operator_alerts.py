# -*- coding: utf-8 -*-
# raffle_backend/app/services/operator_alerts.py
# =============================================================================
# Raffle Engine: алерты оператору (Telegram)
# -----------------------------------------------------------------------------
# Назначение:
#   • Сообщает оператору о событиях, которые требуют человека: нарушение
#     инварианта реестра, просроченная аренда расчёта.
#
# Инварианты:
#   1) Ошибка отправки НИКОГДА не ломает сверку: только warning в лог.
#   2) Без ALERT_TELEGRAM_BOT_TOKEN / ALERT_TELEGRAM_CHAT_ID отправка
#      выключена, событие всё равно пишется в лог уровнем ERROR.
# =============================================================================

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from raffle_backend.app.core.config_core import get_settings
from raffle_backend.app.core.logging_core import get_logger

logger = get_logger(__name__)
S = get_settings()

EVENT_LEDGER_INVARIANT = "LEDGER_INVARIANT_VIOLATION"
EVENT_STALE_LEASE = "SETTLEMENT_LEASE_EXPIRED"


class OperatorAlerts:
    """Отправка алертов в чат оператора через Telegram Bot API sendMessage."""

    def __init__(
        self,
        *,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.bot_token = bot_token if bot_token is not None else (S.ALERT_TELEGRAM_BOT_TOKEN or "")
        self.chat_id = chat_id if chat_id is not None else (S.ALERT_TELEGRAM_CHAT_ID or "")
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def notify(self, event: str, message: str, *, details: Optional[Dict[str, Any]] = None) -> bool:
        """
        Пишет событие в лог и (если настроено) шлёт его в Telegram.
        Возвращает True, если сообщение ушло в Telegram.
        """
        logger.error("Operator alert: %s", event, extra={"event": event, "details": details or {}})
        if not self.enabled:
            return False

        lines = [f"<b>{event}</b>", message]
        for key, value in (details or {}).items():
            lines.append(f"{key}: {value}")
        payload = {
            "chat_id": self.chat_id,
            "text": "\n".join(lines),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Operator alerts: Telegram send failed: %s", type(exc).__name__)
            return False
        return True

    async def ledger_invariant_violated(self, raffle_id: str, details: Dict[str, Any]) -> bool:
        return await self.notify(
            EVENT_LEDGER_INVARIANT,
            f"Raffle {raffle_id}: ledger aggregates mismatch, processing skipped.",
            details=details,
        )

    async def stale_lease_reclaimed(self, raffle_id: str, acquired_at: Any) -> bool:
        return await self.notify(
            EVENT_STALE_LEASE,
            f"Raffle {raffle_id}: abandoned settlement lease reclaimed.",
            details={"acquired_at": acquired_at},
        )


__all__ = ["OperatorAlerts", "EVENT_LEDGER_INVARIANT", "EVENT_STALE_LEASE"]
# =============================================================================
# Пояснения «для чайника»:
#   • Алерт = строка ERROR в логе + сообщение в Telegram (если настроено).
#   • Нет токена: алерты остаются только в логах, сверка работает как обычно.
# =============================================================================
