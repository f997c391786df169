"""
Recharge Alert Notifier
Fire-and-forget operator alerts over Telegram and a JSON webhook.

send_alert() never raises: a broken alert channel must not break a cycle.
"""

import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Optional

import aiohttp
from telegram import Bot

from config import Config
from models import AlertPriority, utcnow

logger = logging.getLogger(__name__)

PRIORITY_ICONS = {
    AlertPriority.LOW: "ℹ️",
    AlertPriority.MEDIUM: "⚠️",
    AlertPriority.HIGH: "🔴",
    AlertPriority.CRITICAL: "🚨",
}


class RechargeAlertNotifier:
    """Dispatches alerts with a per-key cooldown held on the instance"""

    def __init__(
        self,
        enabled: bool = None,
        telegram_token: Optional[str] = None,
        telegram_chat_id: Optional[str] = None,
        webhook_url: Optional[str] = None,
        cooldown_minutes: int = None,
        history_size: int = 100,
    ):
        self.enabled = Config.ALERTS_ENABLED if enabled is None else enabled
        self.telegram_token = telegram_token if telegram_token is not None else Config.ALERT_TELEGRAM_BOT_TOKEN
        self.telegram_chat_id = telegram_chat_id if telegram_chat_id is not None else Config.ALERT_TELEGRAM_CHAT_ID
        self.webhook_url = webhook_url if webhook_url is not None else Config.ALERT_WEBHOOK_URL
        self.cooldown = timedelta(
            minutes=Config.ALERT_COOLDOWN_MINUTES if cooldown_minutes is None else cooldown_minutes
        )
        self.last_alert_times: Dict[str, datetime] = {}
        self.sent_alerts: Deque[Dict[str, Any]] = deque(maxlen=history_size)

    def _should_send_alert(self, alert_key: str, priority: AlertPriority) -> bool:
        if priority == AlertPriority.CRITICAL:
            return True
        last_alert = self.last_alert_times.get(alert_key)
        return last_alert is None or utcnow() - last_alert >= self.cooldown

    @staticmethod
    def format_alert(priority: AlertPriority, title: str, message: str, service: str,
                     category: str, metadata: Dict[str, Any]) -> str:
        lines = [
            f"{PRIORITY_ICONS.get(priority, '⚠️')} {priority.value.upper()} | {service} | {category}",
            f"{title}",
            "",
            message,
        ]
        if metadata:
            lines.append("")
            lines.extend(f"• {key}: {value}" for key, value in metadata.items())
        lines.append(f"\n🕐 {utcnow().strftime('%Y-%m-%d %H:%M:%S')} UTC")
        return "\n".join(lines)

    async def send_alert(
        self,
        priority: AlertPriority,
        title: str,
        message: str,
        service: str,
        category: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send an alert on every configured channel; returns True if any delivered"""
        metadata = metadata or {}
        alert_key = f"{service}:{category}:{title}"
        try:
            if not self.enabled:
                logger.debug(f"🔕 ALERT_DISABLED: {alert_key}")
                return False
            if not self._should_send_alert(alert_key, priority):
                logger.debug(f"Skipping {alert_key} alert - within cooldown period")
                return False

            text = self.format_alert(priority, title, message, service, category, metadata)
            delivered = False
            if self.telegram_token and self.telegram_chat_id:
                delivered = await self._send_telegram(text) or delivered
            if self.webhook_url:
                delivered = await self._send_webhook(priority, title, message, service, category, metadata) or delivered
            if not (self.telegram_token and self.telegram_chat_id) and not self.webhook_url:
                # No channel configured: the log line is the alert
                logger.warning(f"📢 ALERT [{priority.value}] {service}/{category}: {title} - {message}")
                delivered = True

            if delivered:
                self.last_alert_times[alert_key] = utcnow()
                self.sent_alerts.append({
                    "priority": priority.value,
                    "title": title,
                    "service": service,
                    "category": category,
                    "sent_at": utcnow().isoformat(),
                })
            return delivered

        except Exception as e:
            logger.error(f"Failed to send alert {alert_key}: {e}")
            return False

    async def _send_telegram(self, text: str) -> bool:
        try:
            bot = Bot(self.telegram_token)
            async with bot:
                await bot.send_message(chat_id=self.telegram_chat_id, text=text)
            return True
        except Exception as e:
            logger.error(f"❌ ALERT_TELEGRAM_FAILED: {e}")
            return False

    async def _send_webhook(self, priority: AlertPriority, title: str, message: str, service: str,
                            category: str, metadata: Dict[str, Any]) -> bool:
        payload = {
            "priority": priority.value,
            "title": title,
            "message": message,
            "service": service,
            "category": category,
            "metadata": {key: str(value) for key, value in metadata.items()},
            "timestamp": utcnow().isoformat(),
        }
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
                async with session.post(self.webhook_url, json=payload) as response:
                    if response.status >= 400:
                        logger.error(f"❌ ALERT_WEBHOOK_FAILED: HTTP {response.status}")
                        return False
            return True
        except Exception as e:
            logger.error(f"❌ ALERT_WEBHOOK_FAILED: {e}")
            return False
