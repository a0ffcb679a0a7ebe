"""
Backup, restore, health and failover events and the channel that delivers
them to alert sinks. Channel wiring (email, Slack, PagerDuty) belongs to the
sinks; the core only raises typed events.
"""
from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import aiohttp

from datavault_dr.backup.models import utc_now
from datavault_dr.logging import get_logger

logger = get_logger(__name__)


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class EventKind(str, Enum):
    BACKUP_STARTED = "backup.started"
    BACKUP_COMPLETED = "backup.completed"
    BACKUP_FAILED = "backup.failed"
    RESTORE_STARTED = "restore.started"
    RESTORE_COMPLETED = "restore.completed"
    RESTORE_FAILED = "restore.failed"
    RETENTION_SUMMARY = "retention.summary"
    HEALTH_DEGRADED = "health.degraded"
    HEALTH_RECOVERED = "health.recovered"
    FAILOVER_STARTED = "failover.started"
    FAILOVER_STEP_COMPLETED = "failover.step_completed"
    FAILOVER_STEP_FAILED = "failover.step_failed"
    FAILOVER_COMPLETED = "failover.completed"
    FAILOVER_ROLLED_BACK = "failover.rolled_back"
    FAILOVER_NOTIFICATION = "failover.notification"


DEFAULT_SEVERITY: dict[EventKind, AlertSeverity] = {
    EventKind.BACKUP_STARTED: AlertSeverity.INFO,
    EventKind.BACKUP_COMPLETED: AlertSeverity.INFO,
    EventKind.BACKUP_FAILED: AlertSeverity.HIGH,
    EventKind.RESTORE_STARTED: AlertSeverity.INFO,
    EventKind.RESTORE_COMPLETED: AlertSeverity.INFO,
    EventKind.RESTORE_FAILED: AlertSeverity.CRITICAL,
    EventKind.RETENTION_SUMMARY: AlertSeverity.LOW,
    EventKind.HEALTH_DEGRADED: AlertSeverity.CRITICAL,
    EventKind.HEALTH_RECOVERED: AlertSeverity.MEDIUM,
    EventKind.FAILOVER_STARTED: AlertSeverity.HIGH,
    EventKind.FAILOVER_STEP_COMPLETED: AlertSeverity.INFO,
    EventKind.FAILOVER_STEP_FAILED: AlertSeverity.CRITICAL,
    EventKind.FAILOVER_COMPLETED: AlertSeverity.HIGH,
    EventKind.FAILOVER_ROLLED_BACK: AlertSeverity.CRITICAL,
    EventKind.FAILOVER_NOTIFICATION: AlertSeverity.HIGH,
}


@dataclass
class BackupEvent:
    """One event raised by the core."""
    kind: EventKind
    severity: AlertSeverity
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def create(cls, kind: EventKind, severity: AlertSeverity | None = None, **context: Any) -> BackupEvent:
        return cls(kind=kind, severity=severity or DEFAULT_SEVERITY[kind], context=context)

    def to_dict(self) -> dict[str, Any]:
        return {
            'event_id': self.event_id,
            'kind': self.kind.value,
            'severity': self.severity.value,
            'context': self.context,
            'timestamp': self.timestamp.isoformat(),
        }


class AlertSink(Protocol):
    async def emit(self, event: BackupEvent) -> None: ...


EventHandler = Callable[[BackupEvent], Awaitable[None]]


class EventChannel:
    """
    Typed pub/sub for core events.

    Sinks receive every event; handlers subscribe to specific kinds. A
    failing sink or handler is logged and never affects the emitter or the
    other receivers.
    """

    def __init__(self, sinks: list[AlertSink] | None = None):
        self.sinks: list[AlertSink] = list(sinks or [])
        self._handlers: dict[EventKind, list[EventHandler]] = defaultdict(list)

    def add_sink(self, sink: AlertSink) -> None:
        self.sinks.append(sink)

    def subscribe(self, kind: EventKind, handler: EventHandler) -> None:
        self._handlers[EventKind(kind)].append(handler)

    async def _deliver(self, receiver: Any, call: Awaitable[None], event: BackupEvent) -> None:
        try:
            await call
        except Exception as e:
            logger.error(f"Event receiver {receiver!r} failed on {event.kind.value}: {e}")

    async def emit(self, event: BackupEvent) -> None:
        receivers = [(sink, sink.emit(event)) for sink in self.sinks]
        receivers += [(handler, handler(event)) for handler in self._handlers.get(event.kind, [])]
        if receivers:
            await asyncio.gather(*(self._deliver(r, call, event) for r, call in receivers))

    async def publish(self, kind: EventKind, severity: AlertSeverity | None = None, **context: Any) -> BackupEvent:
        event = BackupEvent.create(kind, severity, **context)
        await self.emit(event)
        return event


class LoggingAlertSink:
    """Writes every event to the log at a level matching its severity."""

    _LEVELS = {
        AlertSeverity.CRITICAL: "critical",
        AlertSeverity.HIGH: "error",
        AlertSeverity.MEDIUM: "warning",
        AlertSeverity.LOW: "info",
        AlertSeverity.INFO: "info",
    }

    def __init__(self, logger_name: str = "datavault_dr.alerts"):
        self._logger = get_logger(logger_name)

    async def emit(self, event: BackupEvent) -> None:
        log = getattr(self._logger, self._LEVELS[event.severity])
        log(f"[{event.kind.value}] {event.context}", extra={"event_id": event.event_id})


class WebhookAlertSink:
    """Posts events as JSON to an HTTP endpoint."""

    def __init__(
        self,
        webhook_url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        min_severity: AlertSeverity = AlertSeverity.INFO,
    ):
        self.webhook_url = webhook_url
        self.headers = headers or {"Content-Type": "application/json"}
        self.timeout = timeout
        self.min_severity = min_severity

    _ORDER = [AlertSeverity.INFO, AlertSeverity.LOW, AlertSeverity.MEDIUM, AlertSeverity.HIGH, AlertSeverity.CRITICAL]

    async def emit(self, event: BackupEvent) -> None:
        if self._ORDER.index(event.severity) < self._ORDER.index(self.min_severity):
            return

        payload = {"event": event.to_dict()}
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.post(self.webhook_url, json=payload, headers=self.headers) as response:
                if response.status >= 300:
                    logger.error(f"Webhook returned status {response.status} for event {event.event_id}")


class RecordingAlertSink:
    """Keeps events in memory. Used by status reporting and tests."""

    def __init__(self, max_events: int = 1000):
        self.max_events = max_events
        self.events: list[BackupEvent] = []

    async def emit(self, event: BackupEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]

    def of_kind(self, kind: EventKind) -> list[BackupEvent]:
        return [e for e in self.events if e.kind == kind]
