import math
import threading
from datetime import datetime
from typing import Callable, List, Optional, Union

import structlog

from app.core.exceptions import AnalysisCancelled
from app.models.experiment import ExperimentStatus, utcnow
from app.models.funnel import FunnelSnapshot, JourneySummary, TimeWindow
from app.models.report import ExperimentReport, FunnelReport
from app.services.analytics.funnel import FunnelAggregator
from app.services.experiments.registry import ExperimentRegistry
from app.services.experiments.stats import calculate_sample_size_requirement
from app.services.recommendations import Recommendation, RecommendationBuilder

logger = structlog.get_logger("intelligence")


class IntelligenceFacade:
    """Read-only reports over the funnel aggregator and experiment registry."""

    def __init__(
        self,
        funnel: FunnelAggregator,
        registry: ExperimentRegistry,
        recommendations: Optional[RecommendationBuilder] = None,
        journey_sample_size: int = 1000,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.funnel = funnel
        self.registry = registry
        self.recommendations = recommendations or RecommendationBuilder(
            registry.minimum_sample_size
        )
        self.journey_sample_size = journey_sample_size
        self._clock = clock or utcnow

    def get_funnel_report(
        self,
        window: Union[TimeWindow, str] = TimeWindow.SEVEN_DAYS,
        cancel_token: Optional[threading.Event] = None,
    ) -> FunnelReport:
        window = TimeWindow(window)
        try:
            snapshot = self.funnel.analyze_funnel(window=window, cancel_token=cancel_token)
        except AnalysisCancelled as e:
            snapshot = FunnelSnapshot(
                window=window,
                generated_at=self._clock(),
                steps=tuple(e.partial),
                partial=True,
                errors=(str(e),),
            )
        return FunnelReport.from_snapshot(snapshot)

    def get_journey_report(
        self, window: Union[TimeWindow, str] = TimeWindow.SEVEN_DAYS
    ) -> JourneySummary:
        """Where recent journeys were abandoned and how long converting ones took."""
        return self.funnel.analyze_journeys(window=window, max_journeys=self.journey_sample_size)

    def get_experiment_report(self, experiment_id: str) -> ExperimentReport:
        """
        Raises:
            ExperimentNotFound: unknown experiment
        """
        experiment = self.registry.snapshot(experiment_id)
        report = ExperimentReport(experiment=experiment, generated_at=self._clock())

        try:
            evaluation = self.registry.evaluate(experiment_id)
        except ValueError as e:
            logger.warning(
                "experiment_evaluation_failed", experiment_id=experiment_id, error=str(e)
            )
            report.partial = True
            report.errors.append(str(e))
            report.status_message = "Not enough variants to evaluate"
            return report

        report.comparisons = evaluation.comparisons
        report.is_significant = evaluation.is_significant
        report.confidence_percent = evaluation.confidence_percent
        report.winner_variant_id = evaluation.winner_variant_id

        best = max(evaluation.comparisons, key=lambda c: c.variant_conversion_rate)
        if math.isfinite(best.relative_lift):
            report.lift_percentage = best.relative_lift
        report.required_sample_size = self._required_sample_size(experiment, best)
        report.status_message = self._status_message(report)
        return report

    def get_prioritized_recommendations(
        self, window: Union[TimeWindow, str] = TimeWindow.SEVEN_DAYS
    ) -> List[Recommendation]:
        funnel = self.get_funnel_report(window)
        reports = [
            self.get_experiment_report(e.experiment_id)
            for e in self.registry.list()
            if e.status != ExperimentStatus.DRAFT
        ]
        journeys = self.get_journey_report(window)
        return self.recommendations.build(funnel, reports, journeys)

    def get_experiment_dashboard(self) -> List[ExperimentReport]:
        return [self.get_experiment_report(e.experiment_id) for e in self.registry.list_running()]

    def _required_sample_size(self, experiment, best) -> Optional[int]:
        baseline = best.control_conversion_rate / 100
        mde = experiment.minimum_detectable_effect or abs(best.absolute_lift)
        if mde <= 0:
            return None
        alpha = max(1 - self.registry.significance_threshold / 100, 1e-6)
        required = calculate_sample_size_requirement(baseline, mde, alpha=alpha)
        return required or None

    def _status_message(self, report: ExperimentReport) -> str:
        experiment = report.experiment
        if experiment.status == ExperimentStatus.DRAFT:
            return "Experiment has not started"

        if report.winner_variant_id is not None:
            return (
                f"{report.winner_variant_id} wins with "
                f"{report.confidence_percent:.1f}% confidence"
            )

        smallest = min(v.visitors for v in experiment.variants)
        if smallest < self.registry.minimum_sample_size:
            return (
                f"Not yet significant: every variant needs at least "
                f"{self.registry.minimum_sample_size} visitors (smallest has {smallest})"
            )
        return (
            f"Not yet significant ({report.confidence_percent:.1f}% < "
            f"{self.registry.significance_threshold:.0f}% confidence)"
        )
