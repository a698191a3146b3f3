"""
Webhook alerting for operator-visible keeper events.

- Webhooks: Slack, Discord, PagerDuty, generic HTTP
- Rate limiting per alert type and subject to prevent alert storms
- Batching of alerts raised within a short window
- Async delivery via aiohttp, never blocking a keeper loop
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

logger = logging.getLogger("keeper")


class AlertSeverity(Enum):
    """Alert severity levels."""
    CRITICAL = auto()  # Operator action required (funds moved, state unresolved)
    WARNING = auto()   # Degraded but self-healing
    INFO = auto()      # Informational


class AlertType(Enum):
    SETTLEMENT_PARTIAL_FAILURE = auto()
    SETTLEMENT_FAILED = auto()
    FEED_FALLBACK = auto()
    FEED_RESTORED = auto()
    CIRCUIT_BREAKER_OPEN = auto()
    CIRCUIT_BREAKER_CLOSED = auto()
    LOOP_CRASHED = auto()
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
    symbol: Optional[str] = None
    entity_id: Optional[str] = None

    @property
    def subject(self) -> str:
        return self.entity_id or self.symbol or "global"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
            "symbol": self.symbol,
            "entity_id": self.entity_id,
        }


@dataclass
class AlertConfig:
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord, pagerduty
    min_severity: AlertSeverity = AlertSeverity.WARNING
    rate_limit_seconds: int = 60  # per (type, subject)
    batch_window_ms: int = 5000
    enabled: bool = True
    include_details: bool = True
    service_name: str = "Keeper"


_COLORS = {
    AlertSeverity.CRITICAL: 0xFF0000,
    AlertSeverity.WARNING: 0xFFA500,
    AlertSeverity.INFO: 0x0000FF,
}


class WebhookFormatter:
    """Formats alerts for different webhook types."""

    @staticmethod
    def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return alert.to_dict()

    @staticmethod
    def _fields(alert: Alert, config: AlertConfig) -> List[Tuple[str, str]]:
        fields = [("Type", alert.alert_type.name)]
        if alert.symbol:
            fields.append(("Symbol", alert.symbol))
        if alert.entity_id:
            fields.append(("Entity", alert.entity_id))
        if config.include_details and alert.details:
            fields.extend((k, str(v)) for k, v in list(alert.details.items())[:5])
        return fields

    @staticmethod
    def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        prefix = {
            AlertSeverity.CRITICAL: ":rotating_light:",
            AlertSeverity.WARNING: ":warning:",
            AlertSeverity.INFO: ":information_source:",
        }.get(alert.severity, ":loudspeaker:")
        return {
            "username": config.service_name,
            "icon_emoji": ":robot_face:",
            "attachments": [{
                "color": "#%06X" % _COLORS.get(alert.severity, 0x808080),
                "title": f"{prefix} {alert.title}",
                "text": alert.message,
                "fields": [
                    {"title": k, "value": v, "short": True}
                    for k, v in WebhookFormatter._fields(alert, config)
                ],
                "footer": f"{config.service_name} | {alert.severity.name}",
                "ts": alert.timestamp_ms // 1000,
            }],
        }

    @staticmethod
    def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return {
            "username": config.service_name,
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": _COLORS.get(alert.severity, 0x808080),
                "fields": [
                    {"name": k, "value": v, "inline": True}
                    for k, v in WebhookFormatter._fields(alert, config)
                ],
                "footer": {"text": f"{config.service_name} | {alert.severity.name}"},
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(alert.timestamp_ms / 1000)),
            }],
        }

    @staticmethod
    def format_pagerduty(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        """PagerDuty Events API v2; the webhook url carries the routing key."""
        severity_map = {
            AlertSeverity.CRITICAL: "critical",
            AlertSeverity.WARNING: "warning",
            AlertSeverity.INFO: "info",
        }
        return {
            "routing_key": config.webhook_url,
            "event_action": "trigger",
            "dedup_key": f"{config.service_name}-{alert.alert_type.name}-{alert.subject}",
            "payload": {
                "summary": f"{alert.title}: {alert.message}",
                "severity": severity_map.get(alert.severity, "warning"),
                "source": config.service_name,
                "component": alert.symbol or "global",
                "custom_details": {**alert.details, "entity_id": alert.entity_id},
            },
        }


class AlertManager:
    """
    Queues alerts and delivers them in batches.

    Rate limiting is per (alert type, subject), so two different entities
    hitting a partial settlement failure both page.
    """

    def __init__(self, config: Optional[AlertConfig] = None) -> None:
        self.config = config or AlertConfig()
        self._last_alert_times: Dict[Tuple[AlertType, str], int] = {}
        self._pending_alerts: List[Alert] = []
        self._batch_task: Optional[asyncio.Task] = None
        self.sent: List[Alert] = []

    async def send_alert(self, alert: Alert) -> bool:
        """
        Queue an alert for delivery.

        Returns:
            True if queued, False if disabled, below threshold or rate limited
        """
        if not self.config.enabled:
            return False
        if not self.config.webhook_url:
            logger.debug(f"Alert not sent (no webhook): {alert.title}")
            return False
        if alert.severity.value > self.config.min_severity.value:
            return False

        now_ms = int(time.time() * 1000)
        key = (alert.alert_type, alert.subject)
        last_time = self._last_alert_times.get(key, 0)
        if now_ms - last_time < self.config.rate_limit_seconds * 1000:
            logger.debug(f"Alert rate limited: {alert.alert_type.name} {alert.subject}")
            return False

        self._pending_alerts.append(alert)
        self._last_alert_times[key] = now_ms
        if self._batch_task is None or self._batch_task.done():
            self._batch_task = asyncio.create_task(self._batch_deliver())
        return True

    async def flush(self) -> None:
        """Deliver whatever is pending now (used at shutdown)."""
        if self._batch_task is not None and not self._batch_task.done():
            self._batch_task.cancel()
            try:
                await self._batch_task
            except asyncio.CancelledError:
                pass
        await self._deliver_pending()

    async def _batch_deliver(self) -> None:
        await asyncio.sleep(self.config.batch_window_ms / 1000)
        await self._deliver_pending()

    async def _deliver_pending(self) -> None:
        alerts = self._pending_alerts
        self._pending_alerts = []
        if not alerts:
            return
        if len(alerts) == 1:
            ok = await self._http_post(self._format_alert(alerts[0]))
        else:
            ok = await self._http_post(self._format_batch(alerts))
        if ok:
            self.sent.extend(alerts)

    def _format_batch(self, alerts: List[Alert]) -> Dict[str, Any]:
        if self.config.webhook_type == "slack":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["attachments"].extend(self._format_alert(alert)["attachments"])
            return payload
        if self.config.webhook_type == "discord":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["embeds"].extend(self._format_alert(alert)["embeds"])
            return payload
        return {"alerts": [alert.to_dict() for alert in alerts]}

    def _format_alert(self, alert: Alert) -> Dict[str, Any]:
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
            "pagerduty": WebhookFormatter.format_pagerduty,
        }
        formatter = formatters.get(self.config.webhook_type, WebhookFormatter.format_generic)
        return formatter(alert, self.config)

    async def _http_post(self, payload: Dict[str, Any], retries: int = 2) -> bool:
        if not self.config.webhook_url:
            return False
        url = self.config.webhook_url
        if self.config.webhook_type == "pagerduty":
            url = "https://events.pagerduty.com/v2/enqueue"
        async with aiohttp.ClientSession() as session:
            for attempt in range(retries + 1):
                try:
                    async with session.post(
                        url,
                        json=payload,
                        timeout=aiohttp.ClientTimeout(total=10),
                    ) as resp:
                        if resp.status < 300:
                            logger.debug("Alert delivered successfully")
                            return True
                        logger.warning(f"Alert delivery failed: HTTP {resp.status}")
                except asyncio.TimeoutError:
                    logger.warning(f"Alert delivery timeout (attempt {attempt + 1})")
                except aiohttp.ClientError as e:
                    logger.warning(f"Alert delivery error: {e}")
                if attempt < retries:
                    await asyncio.sleep(1 * (attempt + 1))
        return False

    # Convenience methods

    async def alert_partial_failure(
        self, entity_id: str, finalized: List[str], failed_call: str, symbol: Optional[str] = None, **details
    ) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.SETTLEMENT_PARTIAL_FAILURE,
            severity=AlertSeverity.CRITICAL,
            title="Settlement Partially Applied",
            message=(
                f"{entity_id}: {failed_call} failed after {len(finalized)} call(s) finalized; "
                "manual settlement required"
            ),
            symbol=symbol,
            entity_id=entity_id,
            details={"finalized": ",".join(finalized), "failed_call": failed_call, **details},
        ))

    async def alert_settlement_failed(self, entity_id: str, reason: str, symbol: Optional[str] = None, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.SETTLEMENT_FAILED,
            severity=AlertSeverity.WARNING,
            title="Settlement Failed",
            message=f"{entity_id}: {reason}",
            symbol=symbol,
            entity_id=entity_id,
            details=details,
        ))

    async def alert_feed(self, fallback: bool, reason: str, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.FEED_FALLBACK if fallback else AlertType.FEED_RESTORED,
            severity=AlertSeverity.WARNING if fallback else AlertSeverity.INFO,
            title="Price Feed On REST Fallback" if fallback else "Price Feed Restored",
            message=reason,
            details=details,
        ))

    async def alert_circuit_breaker(self, is_open: bool, reason: str, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.CIRCUIT_BREAKER_OPEN if is_open else AlertType.CIRCUIT_BREAKER_CLOSED,
            severity=AlertSeverity.WARNING if is_open else AlertSeverity.INFO,
            title="Circuit Breaker Opened" if is_open else "Circuit Breaker Closed",
            message=reason,
            details=details,
        ))

    async def alert_loop_crashed(self, loop_name: str, error: str, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.LOOP_CRASHED,
            severity=AlertSeverity.CRITICAL,
            title="Keeper Loop Crashed",
            message=f"{loop_name}: {error}",
            entity_id=loop_name,
            details=details,
        ))

    async def alert_startup(self, loops: List[str], **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.STARTUP,
            severity=AlertSeverity.INFO,
            title="Keeper Started",
            message=f"{self.config.service_name} started loops {', '.join(loops)}",
            details={"loops": loops, **details},
        ))

    async def alert_shutdown(self, reason: str = "normal", **details) -> bool:
        severity = AlertSeverity.INFO if reason == "normal" else AlertSeverity.WARNING
        return await self.send_alert(Alert(
            alert_type=AlertType.SHUTDOWN,
            severity=severity,
            title="Keeper Shutdown",
            message=f"{self.config.service_name} shutting down: {reason}",
            details=details,
        ))


_alert_manager: Optional[AlertManager] = None


def get_alert_manager() -> AlertManager:
    global _alert_manager
    if _alert_manager is None:
        _alert_manager = AlertManager()
    return _alert_manager


def configure_alerts(
    webhook_url: Optional[str] = None,
    webhook_type: str = "generic",
    min_severity: AlertSeverity = AlertSeverity.WARNING,
    enabled: bool = True,
    service_name: str = "Keeper",
) -> AlertManager:
    """
    Configure the process-wide alert manager.

    Args:
        webhook_url: URL to send alerts to (routing key for pagerduty)
        webhook_type: generic, slack, discord or pagerduty
        min_severity: Minimum severity to send
        enabled: Whether alerting is enabled
        service_name: Name used in alert bodies
    """
    global _alert_manager
    _alert_manager = AlertManager(AlertConfig(
        webhook_url=webhook_url,
        webhook_type=webhook_type,
        min_severity=min_severity,
        enabled=enabled,
        service_name=service_name,
    ))
    return _alert_manager
