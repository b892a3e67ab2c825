from datetime import datetime
from typing import Callable, Optional

from fastapi import Request

from app.config import Settings
from app.models.experiment import utcnow
from app.services.analytics.funnel import FunnelAggregator
from app.services.experiments.assignment import AssignmentService
from app.services.experiments.registry import ExperimentRegistry
from app.services.ingestion import EventBuffer
from app.services.intelligence import IntelligenceFacade
from app.services.processor import EventProcessor
from app.services.recommendations import RecommendationBuilder
from observability.alerts import AlertManager


class ConversionEngine:
    """
    Every engine component, wired once per process (or per test).

    Request handlers reach it through get_engine(); nothing in the engine is
    a module level singleton.
    """

    def __init__(self, settings: Settings, clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings
        self.clock = clock or utcnow

        self.alerts = AlertManager(
            cooldowns=settings.ALERT_COOLDOWNS,
            default_cooldown_seconds=settings.ALERT_DEFAULT_COOLDOWN_SECONDS,
            history_size=settings.ALERT_HISTORY_SIZE,
            clock=self.clock,
        )
        self.buffer = EventBuffer(
            capacity=settings.INGESTION_BUFFER_SIZE, alert_manager=self.alerts
        )
        self.funnel = FunnelAggregator(
            steps=settings.FUNNEL_STEPS,
            friction_time_threshold_seconds=settings.FRICTION_TIME_THRESHOLD_SECONDS,
            friction_drop_off_threshold=settings.FRICTION_DROP_OFF_THRESHOLD,
            retention_days=settings.FUNNEL_RETENTION_DAYS,
            history_size=settings.FUNNEL_SNAPSHOT_HISTORY,
            clock=self.clock,
        )
        self.registry = ExperimentRegistry(
            significance_threshold=settings.SIGNIFICANCE_THRESHOLD,
            minimum_sample_size=settings.MINIMUM_SAMPLE_SIZE,
            clock=self.clock,
        )
        self.assignments = AssignmentService(self.registry, clock=self.clock)
        self.processor = EventProcessor(
            buffer=self.buffer,
            funnel=self.funnel,
            registry=self.registry,
            assignments=self.assignments,
            alert_manager=self.alerts,
            batch_size=settings.INGESTION_DRAIN_BATCH,
            interval_seconds=settings.INGESTION_DRAIN_INTERVAL_SECONDS,
            findings_interval_seconds=settings.FINDINGS_SCAN_INTERVAL_SECONDS,
            auto_complete=settings.AUTO_COMPLETE_ON_SIGNIFICANCE,
            clock=self.clock,
        )
        self.intelligence = IntelligenceFacade(
            funnel=self.funnel,
            registry=self.registry,
            recommendations=RecommendationBuilder(settings.MINIMUM_SAMPLE_SIZE),
            journey_sample_size=settings.JOURNEY_SAMPLE_SIZE,
            clock=self.clock,
        )

    def flush(self) -> int:
        """Drain the buffer completely; returns how many events were applied."""
        applied = 0
        while len(self.buffer):
            applied += self.processor.run_once().drained
        return applied


def get_engine(request: Request) -> ConversionEngine:
    return request.app.state.engine
