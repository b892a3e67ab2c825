"""
Structured Alerting and Throttling.

Turns engine findings (ingestion overflow, funnel friction, experiment
significance) into structured alert events and suppresses duplicates of the
same (kind, scope) inside a per-kind cooldown window.

Features:
- Severity levels (INFO, WARNING, CRITICAL)
- Alert kinds for ingestion, funnel and experiment findings
- Structured logging via structlog
- Per-kind cooldowns (short for noisy kinds, long for rare ones)
- Bounded outbox of emitted alerts plus pluggable notification sinks

Usage:
    from observability.alerts import AlertManager, AlertSeverity, AlertType

    alert_manager = AlertManager(cooldowns={"high_drop_off": 3600})

    emitted = alert_manager.maybe_emit(
        AlertType.HIGH_DROP_OFF,
        scope="signup_start",
        severity=AlertSeverity.WARNING,
        message="62% drop-off entering signup_start",
    )
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import structlog


class AlertSeverity(Enum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Ordering weight, higher is more severe."""
        return {"info": 1, "warning": 2, "critical": 3}[self.value]


class AlertType(Enum):
    """Kinds of alerts the engine can emit."""

    # Ingestion health
    BUFFER_OVERFLOW = "buffer_overflow"
    INGESTION_FAILURE = "ingestion_failure"

    # Funnel findings
    HIGH_DROP_OFF = "high_drop_off"
    FRICTION_DETECTED = "friction_detected"

    # Experiment findings
    EXPERIMENT_SIGNIFICANT = "experiment_significant"
    EXPERIMENT_COMPLETED = "experiment_completed"


# Seconds between duplicates of the same (kind, scope). Noisy, low severity
# kinds get short windows; rare, high value kinds get long ones.
DEFAULT_COOLDOWNS: Dict[str, float] = {
    AlertType.BUFFER_OVERFLOW.value: 60,
    AlertType.INGESTION_FAILURE.value: 300,
    AlertType.FRICTION_DETECTED.value: 1800,
    AlertType.HIGH_DROP_OFF.value: 3600,
    AlertType.EXPERIMENT_SIGNIFICANT.value: 86400,
    AlertType.EXPERIMENT_COMPLETED.value: 86400,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _kind_value(kind: Union[AlertType, str]) -> str:
    return kind.value if isinstance(kind, AlertType) else str(kind)


@dataclass
class Alert:
    """
    Represents a single alert event.

    Attributes:
        kind: Category of alert
        scope: What the alert is about (step id, experiment id, component)
        severity: How critical is this alert
        message: Human-readable description
        details: Additional structured data
        created_at: When the alert occurred
        suppressed_until: End of the cooldown started by this alert
    """

    kind: str
    scope: str
    severity: AlertSeverity
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    suppressed_until: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return self.kind, self.scope

    def to_dict(self) -> Dict[str, Any]:
        """Outbound payload for notification collaborators."""
        return {
            "kind": self.kind,
            "scope": self.scope,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.created_at.isoformat(),
        }

    def to_structured_log(self) -> Dict[str, Any]:
        """Format for structured logging."""
        return {
            "event": "ALERT",
            "alert_kind": self.kind,
            "scope": self.scope,
            "severity": self.severity.value,
            "message": self.message,
            **self.details,
        }


AlertSink = Callable[[Alert], None]


class AlertManager:
    """
    Manages alert emission, deduplication, and throttling.

    Alerts are emitted as structured log events, kept in a bounded outbox
    for the notification collaborator, and forwarded to registered sinks.
    A suppressed attempt leaves the last-emission time untouched, so the
    cooldown is measured from the last alert that actually went out.
    """

    def __init__(
        self,
        cooldowns: Optional[Dict[str, float]] = None,
        default_cooldown_seconds: float = 900,
        history_size: int = 500,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize AlertManager.

        Args:
            cooldowns: Per-kind cooldown overrides in seconds
            default_cooldown_seconds: Cooldown for kinds with no specific setting
            history_size: Number of emitted alerts kept in the outbox
            clock: Time source, defaults to UTC now
        """
        self.cooldowns = {**DEFAULT_COOLDOWNS, **(cooldowns or {})}
        self.default_cooldown_seconds = default_cooldown_seconds
        self._clock = clock or _utcnow

        self._lock = threading.Lock()
        self._last_emitted: Dict[Tuple[str, str], datetime] = {}
        self._outbox: deque = deque(maxlen=history_size)
        self._sinks: List[AlertSink] = []

        self.logger = structlog.get_logger("alerts")

    def cooldown_for(self, kind: Union[AlertType, str]) -> timedelta:
        seconds = self.cooldowns.get(_kind_value(kind), self.default_cooldown_seconds)
        return timedelta(seconds=seconds)

    def add_sink(self, sink: AlertSink) -> None:
        self._sinks.append(sink)

    def maybe_emit(
        self,
        kind: Union[AlertType, str],
        scope: str,
        severity: AlertSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Emit an alert unless one with the same (kind, scope) went out recently.

        Returns:
            True if the alert was emitted, False if throttled
        """
        alert = Alert(
            kind=_kind_value(kind),
            scope=scope,
            severity=severity,
            message=message,
            details=details or {},
            created_at=self._clock(),
        )
        return self.emit(alert)

    def emit(self, alert: Alert, force: bool = False) -> bool:
        """
        Emit an alert.

        Args:
            alert: The alert to emit
            force: Bypass throttling

        Returns:
            True if alert was emitted, False if throttled
        """
        cooldown = self.cooldown_for(alert.kind)

        with self._lock:
            last_sent = self._last_emitted.get(alert.key)
            if not force and last_sent is not None and alert.created_at - last_sent < cooldown:
                self.logger.debug(
                    "alert_throttled",
                    alert_kind=alert.kind,
                    scope=alert.scope,
                    suppressed_until=(last_sent + cooldown).isoformat(),
                )
                return False

            alert.suppressed_until = alert.created_at + cooldown
            self._last_emitted[alert.key] = alert.created_at
            self._outbox.append(alert)

        log_data = alert.to_structured_log()
        if alert.severity == AlertSeverity.CRITICAL:
            self.logger.critical(**log_data)
        elif alert.severity == AlertSeverity.WARNING:
            self.logger.warning(**log_data)
        else:
            self.logger.info(**log_data)

        for sink in list(self._sinks):
            try:
                sink(alert)
            except Exception as e:
                self.logger.error(
                    "alert_sink_failed",
                    alert_kind=alert.kind,
                    scope=alert.scope,
                    error=str(e),
                )

        return True

    def is_suppressed(self, kind: Union[AlertType, str], scope: str) -> bool:
        key = (_kind_value(kind), scope)
        with self._lock:
            last_sent = self._last_emitted.get(key)
        if last_sent is None:
            return False
        return self._clock() - last_sent < self.cooldown_for(kind)

    def recent(self, limit: Optional[int] = None) -> List[Alert]:
        """Emitted alerts, newest first."""
        with self._lock:
            alerts = list(self._outbox)
        alerts.reverse()
        return alerts[:limit] if limit else alerts
