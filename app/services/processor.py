"""
Background aggregation of buffered events.

A single consumer drains the ingestion buffer, feeds funnel observations to
the funnel aggregator and exposure/conversion events to the experiment
registry, and periodically scans the aggregates for findings worth an
alert. Failures are logged and alerted; they never stop the loop.
"""

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog

from app.core.exceptions import EngineError, ExperimentNotFound
from app.models.events import Event, EventKind
from app.models.experiment import ExperimentStatus, utcnow
from app.models.funnel import TimeWindow
from app.services.analytics.funnel import (
    FRICTION_HIGH_DROP_OFF,
    FRICTION_SLOW_STEP,
    FunnelAggregator,
)
from app.services.experiments.assignment import AssignmentService
from app.services.experiments.registry import ExperimentRegistry
from app.services.ingestion import EventBuffer
from observability.alerts import AlertManager, AlertSeverity, AlertType

logger = structlog.get_logger("processor")


@dataclass
class BatchResult:
    drained: int = 0
    funnel_events: int = 0
    exposures: int = 0
    conversions: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class ProcessorStats:
    batches: int = 0
    processed: int = 0
    failed: int = 0
    last_run_at: Optional[datetime] = None
    last_scan_at: Optional[datetime] = None


class EventProcessor:
    def __init__(
        self,
        buffer: EventBuffer,
        funnel: FunnelAggregator,
        registry: ExperimentRegistry,
        assignments: AssignmentService,
        alert_manager: AlertManager,
        batch_size: int = 500,
        interval_seconds: float = 1.0,
        findings_interval_seconds: float = 60.0,
        auto_complete: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.buffer = buffer
        self.funnel = funnel
        self.registry = registry
        self.assignments = assignments
        self.alert_manager = alert_manager
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self.findings_interval = timedelta(seconds=findings_interval_seconds)
        self.auto_complete = auto_complete
        self._clock = clock or utcnow

        self._consumer_lock = threading.Lock()
        self.stats = ProcessorStats()

    def run_once(self) -> BatchResult:
        """Drain and apply one batch; scan for findings when the interval has passed."""
        with self._consumer_lock:
            batch = self.buffer.drain(self.batch_size)
            result = self._apply(batch)

            now = self._clock()
            self.stats.batches += 1
            self.stats.processed += result.drained
            self.stats.failed += result.failed
            self.stats.last_run_at = now

            last_scan = self.stats.last_scan_at
            if last_scan is None or now - last_scan >= self.findings_interval:
                self.scan_findings()

        if result.drained:
            logger.debug("event_batch_processed", **result.__dict__)
        return result

    def scan_findings(self) -> int:
        """Turn funnel friction and experiment significance into alerts."""
        self.stats.last_scan_at = self._clock()
        emitted = 0
        if self.funnel.observation_count:
            emitted += self._scan_funnel()
        emitted += self._scan_experiments()
        return emitted

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        logger.info("event_processor_started", interval_seconds=self.interval_seconds)
        while not stop.is_set():
            try:
                await asyncio.to_thread(self.run_once)
            except Exception as e:
                logger.exception("event_processor_failed", error=str(e))
                self._alert_failure(f"Event processor run failed: {e}")

            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("event_processor_stopped", processed=self.stats.processed)

    def _apply(self, batch: List[Event]) -> BatchResult:
        result = BatchResult(drained=len(batch))
        if not batch:
            return result

        try:
            result.funnel_events = self.funnel.ingest(e for e in batch if e.is_funnel_event)
        except Exception as e:
            logger.exception("funnel_ingest_failed", batch_size=len(batch), error=str(e))
            self._alert_failure(f"Funnel ingest failed: {e}")
            result.failed += sum(1 for event in batch if event.is_funnel_event)

        for event in batch:
            if not event.is_experiment_event:
                continue
            try:
                self._apply_experiment_event(event, result)
            except EngineError as e:
                result.failed += 1
                logger.warning(
                    "experiment_event_rejected",
                    experiment_id=event.experiment_id,
                    subject_id=event.subject_id,
                    kind=event.kind.value,
                    error=str(e),
                )

        if result.failed:
            self._alert_failure(f"{result.failed} of {result.drained} events failed to process")
        return result

    def _apply_experiment_event(self, event: Event, result: BatchResult) -> None:
        if event.kind == EventKind.EXPOSURE:
            record = self.assignments.get_assignment(event.experiment_id, event.subject_id)
            if record is None:
                # Subject was never bucketed (outside allocation or unknown)
                if not self.registry.exists(event.experiment_id):
                    raise ExperimentNotFound(event.experiment_id)
                result.skipped += 1
                return
            if self.registry.record_exposure(
                event.experiment_id, event.subject_id, record.variant_id
            ):
                result.exposures += 1
            else:
                result.skipped += 1
        elif event.kind == EventKind.CONVERSION:
            if self.registry.record_conversion(event.experiment_id, event.subject_id):
                result.conversions += 1
            else:
                result.skipped += 1

    def _scan_funnel(self) -> int:
        emitted = 0
        snapshot = self.funnel.analyze_funnel(window=TimeWindow.SEVEN_DAYS)
        for step in snapshot.friction_steps:
            if FRICTION_HIGH_DROP_OFF in step.friction_points:
                emitted += self.alert_manager.maybe_emit(
                    AlertType.HIGH_DROP_OFF,
                    scope=step.step_id,
                    severity=AlertSeverity.WARNING,
                    message=f"High drop-off at {step.step_id}: {step.drop_off_rate:.0%}",
                    details={"drop_off_rate": step.drop_off_rate, "visitors": step.visitors},
                )
            if FRICTION_SLOW_STEP in step.friction_points:
                emitted += self.alert_manager.maybe_emit(
                    AlertType.FRICTION_DETECTED,
                    scope=step.step_id,
                    severity=AlertSeverity.INFO,
                    message=f"Slow step {step.step_id}: "
                    f"{step.average_time_on_step:.0f}s average time on step",
                    details={"average_time_on_step": step.average_time_on_step},
                )
        return emitted

    def _scan_experiments(self) -> int:
        emitted = 0
        for experiment in self.registry.list_running():
            if not self.auto_complete and self.alert_manager.is_suppressed(
                AlertType.EXPERIMENT_SIGNIFICANT, experiment.experiment_id
            ):
                # Already announced; nothing to do until the cooldown ends
                continue
            evaluation = self.registry.evaluate(experiment.experiment_id)
            if not evaluation.is_significant:
                continue

            emitted += self.alert_manager.maybe_emit(
                AlertType.EXPERIMENT_SIGNIFICANT,
                scope=experiment.experiment_id,
                severity=AlertSeverity.INFO,
                message=f"Experiment {experiment.name} reached significance: "
                f"{evaluation.winner_variant_id} wins "
                f"({evaluation.confidence_percent:.1f}% confidence)",
                details={
                    "winner_variant_id": evaluation.winner_variant_id,
                    "confidence_percent": evaluation.confidence_percent,
                },
            )

            if self.auto_complete:
                try:
                    completed = self.registry.complete(
                        experiment.experiment_id, reason="significance reached"
                    )
                except EngineError as e:
                    # Someone else moved it between the scan and now
                    logger.info(
                        "experiment_auto_complete_skipped",
                        experiment_id=experiment.experiment_id,
                        error=str(e),
                    )
                    continue
                if completed.status == ExperimentStatus.COMPLETED:
                    emitted += self.alert_manager.maybe_emit(
                        AlertType.EXPERIMENT_COMPLETED,
                        scope=experiment.experiment_id,
                        severity=AlertSeverity.INFO,
                        message=f"Experiment {experiment.name} completed automatically, "
                        f"winner {completed.winner_variant_id}",
                        details={"winner_variant_id": completed.winner_variant_id},
                    )
        return emitted

    def _alert_failure(self, message: str) -> None:
        self.alert_manager.maybe_emit(
            AlertType.INGESTION_FAILURE,
            scope="processor",
            severity=AlertSeverity.WARNING,
            message=message,
        )

