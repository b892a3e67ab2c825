"""
Observability module for the conversion engine.

Provides structured alerting for engine findings:
- Alerts with severity levels
- Per-kind cooldowns and (kind, scope) de-duplication
- Bounded outbox and pluggable notification sinks
"""

from observability.alerts import Alert, AlertManager, AlertSeverity, AlertSink, AlertType

__all__ = [
    "Alert",
    "AlertManager",
    "AlertSeverity",
    "AlertSink",
    "AlertType",
]
