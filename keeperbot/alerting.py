"""
Webhook alerting for operator-visible events.

- Send alerts to webhooks (Slack, Discord, generic HTTP)
- Rate limiting per alert type and loop
- Alerts raised within a short window are batched into one post
- Delivery runs in a background task and never blocks a loop
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger("keeperbot")


class AlertSeverity(Enum):
    CRITICAL = auto()
    WARNING = auto()
    INFO = auto()


class AlertType(Enum):
    INSUFFICIENT_FUNDS = auto()
    LOW_BALANCE = auto()
    SYSTEM_PAUSED = auto()
    SYSTEM_RESUMED = auto()
    CIRCUIT_BREAKER_OPEN = auto()
    STARTUP = auto()
    SHUTDOWN = auto()
    CUSTOM = auto()


@dataclass
class Alert:
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    details: Dict[str, Any] = field(default_factory=dict)
    loop: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
            "loop": self.loop,
        }


@dataclass
class AlertConfig:
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord
    min_severity: AlertSeverity = AlertSeverity.WARNING
    rate_limit_seconds: int = 60  # min seconds between alerts of one type from one loop
    batch_window_ms: int = 2000
    enabled: bool = True
    include_details: bool = True
    bot_name: str = "keeperbot"
    timeout_sec: float = 10.0


class WebhookFormatter:
    """Formats alerts for different webhook types."""

    _COLORS = {
        AlertSeverity.CRITICAL: 0xFF0000,
        AlertSeverity.WARNING: 0xFFA500,
        AlertSeverity.INFO: 0x0000FF,
    }

    @staticmethod
    def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return alert.to_dict()

    @staticmethod
    def _fields(alert: Alert, config: AlertConfig) -> List[tuple]:
        pairs = []
        if alert.loop:
            pairs.append(("Loop", alert.loop))
        pairs.append(("Type", alert.alert_type.name))
        if config.include_details and alert.details:
            pairs.extend((k, str(v)) for k, v in list(alert.details.items())[:5])
        return pairs

    @staticmethod
    def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = "#{:06X}".format(WebhookFormatter._COLORS.get(alert.severity, 0x808080))
        return {
            "username": config.bot_name,
            "attachments": [{
                "color": color,
                "title": alert.title,
                "text": alert.message,
                "fields": [{"title": k, "value": v, "short": True}
                           for k, v in WebhookFormatter._fields(alert, config)],
                "footer": f"{config.bot_name} | {alert.severity.name}",
                "ts": alert.timestamp_ms // 1000,
            }],
        }

    @staticmethod
    def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return {
            "username": config.bot_name,
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": WebhookFormatter._COLORS.get(alert.severity, 0x808080),
                "fields": [{"name": k, "value": v, "inline": True}
                           for k, v in WebhookFormatter._fields(alert, config)],
                "footer": {"text": f"{config.bot_name} | {alert.severity.name}"},
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(alert.timestamp_ms / 1000)),
            }],
        }


class AlertManager:
    def __init__(self, config: Optional[AlertConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config or AlertConfig()
        self._client = client
        self._owns_client = client is None
        self._last_alert_times: Dict[tuple, int] = {}
        self._pending: List[Alert] = []
        self._batch_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    async def send_alert(self, alert: Alert) -> bool:
        """Queue an alert. Returns False if disabled, filtered, or rate limited."""
        if not self.config.enabled or not self.config.webhook_url:
            logger.debug(f"Alert not sent (disabled or no webhook): {alert.title}")
            return False
        if alert.severity.value > self.config.min_severity.value:
            return False

        now_ms = int(time.time() * 1000)
        key = (alert.alert_type, alert.loop)
        last = self._last_alert_times.get(key, 0)
        if now_ms - last < self.config.rate_limit_seconds * 1000:
            logger.debug(f"Alert rate limited: {alert.alert_type.name} ({alert.loop})")
            return False

        async with self._lock:
            self._pending.append(alert)
            self._last_alert_times[key] = now_ms
            if self._batch_task is None or self._batch_task.done():
                self._batch_task = asyncio.create_task(self._batch_deliver())
        return True

    async def flush(self) -> None:
        """Wait for any queued alerts to be delivered."""
        if self._batch_task is not None and not self._batch_task.done():
            await self._batch_task

    async def close(self) -> None:
        await self.flush()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _batch_deliver(self) -> None:
        await asyncio.sleep(self.config.batch_window_ms / 1000)
        async with self._lock:
            alerts = self._pending.copy()
            self._pending.clear()
        if not alerts:
            return
        await self._http_post(self._format_batch(alerts))

    def _format_batch(self, alerts: List[Alert]) -> Dict[str, Any]:
        if len(alerts) == 1:
            return self._format_alert(alerts[0])
        if self.config.webhook_type in ("slack", "discord"):
            key = "attachments" if self.config.webhook_type == "slack" else "embeds"
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload[key].extend(self._format_alert(alert)[key])
            return payload
        return {"alerts": [a.to_dict() for a in alerts]}

    def _format_alert(self, alert: Alert) -> Dict[str, Any]:
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
        }
        formatter = formatters.get(self.config.webhook_type, WebhookFormatter.format_generic)
        return formatter(alert, self.config)

    async def _http_post(self, payload: Dict[str, Any], retries: int = 2) -> bool:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_sec)
        for attempt in range(retries + 1):
            try:
                resp = await self._client.post(self.config.webhook_url, json=payload)
                if resp.status_code < 300:
                    logger.debug("Alert delivered")
                    return True
                logger.warning(f"Alert delivery failed: HTTP {resp.status_code}")
            except httpx.HTTPError as e:
                logger.warning(f"Alert delivery error (attempt {attempt + 1}): {e}")
            if attempt < retries:
                await asyncio.sleep(1 * (attempt + 1))
        return False

    # ─────────────────────────────────────────────────────────────────────
    # Convenience methods
    # ─────────────────────────────────────────────────────────────────────

    async def alert_insufficient_funds(self, loop: str, item: str, error: str) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.INSUFFICIENT_FUNDS,
            severity=AlertSeverity.CRITICAL,
            title="Insufficient Funds",
            message=f"{item} rejected: {error}",
            loop=loop,
            details={"item": item},
        ))

    async def alert_low_balance(self, loop: str, account: str, balance: Any, threshold: Any) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.LOW_BALANCE,
            severity=AlertSeverity.WARNING,
            title="Low Account Balance",
            message=f"{account} holds {balance}, below {threshold}",
            loop=loop,
            details={"account": account, "balance": str(balance), "threshold": str(threshold)},
        ))

    async def alert_pause_change(self, loop: str, paused: bool) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.SYSTEM_PAUSED if paused else AlertType.SYSTEM_RESUMED,
            severity=AlertSeverity.WARNING if paused else AlertSeverity.INFO,
            title="Emergency Stop Active" if paused else "Emergency Stop Cleared",
            message=f"{loop} loop {'waiting' if paused else 'resumed'}",
            loop=loop,
        ))

    async def alert_circuit_breaker(self, loop: str, reason: str, **details: Any) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.CIRCUIT_BREAKER_OPEN,
            severity=AlertSeverity.WARNING,
            title="Connectivity Breaker Open",
            message=reason,
            loop=loop,
            details=details,
        ))

    async def alert_startup(self, loops: List[str], **details: Any) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.STARTUP,
            severity=AlertSeverity.INFO,
            title="Keeper Started",
            message=f"Running loops: {', '.join(loops)}",
            details={"loops": loops, **details},
        ))

    async def alert_shutdown(self, reason: str = "normal", **details: Any) -> bool:
        severity = AlertSeverity.INFO if reason == "normal" else AlertSeverity.WARNING
        return await self.send_alert(Alert(
            alert_type=AlertType.SHUTDOWN,
            severity=severity,
            title="Keeper Shutdown",
            message=f"Shutting down: {reason}",
            details=details,
        ))
