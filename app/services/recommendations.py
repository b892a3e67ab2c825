"""
Prioritized recommendations from funnel, journey and experiment findings.

Each recommendation carries an estimated impact and a confidence, both on a
0-100 scale. Ranking is by impact x confidence, with ties broken by
severity.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from app.models.experiment import ExperimentStatus
from app.models.funnel import FunnelStep, JourneySummary
from app.models.report import ExperimentReport, FunnelReport
from app.services.analytics.funnel import FRICTION_HIGH_DROP_OFF, FRICTION_SLOW_STEP
from observability.alerts import AlertSeverity

# Impact assigned to a slow step that loses no one
SLOW_STEP_IMPACT = 20.0


@dataclass(frozen=True)
class Recommendation:
    kind: str
    scope: str
    title: str
    action: str
    severity: AlertSeverity
    impact: float  # 0-100
    confidence: float  # 0-100

    @property
    def score(self) -> float:
        return self.impact * self.confidence / 100


def rank(recommendations: Iterable[Recommendation]) -> List[Recommendation]:
    return sorted(
        recommendations,
        key=lambda r: (r.score, r.severity.rank),
        reverse=True,
    )


class RecommendationBuilder:
    def __init__(self, minimum_sample_size: int = 100):
        self.minimum_sample_size = minimum_sample_size

    def build(
        self,
        funnel: Optional[FunnelReport],
        experiments: Iterable[ExperimentReport],
        journeys: Optional[JourneySummary] = None,
    ) -> List[Recommendation]:
        recommendations: List[Recommendation] = []
        if funnel is not None:
            recommendations.extend(self.from_funnel(funnel))
        if journeys is not None:
            recommendation = self.from_journeys(journeys)
            if recommendation is not None:
                recommendations.append(recommendation)
        for report in experiments:
            recommendation = self.from_experiment(report)
            if recommendation is not None:
                recommendations.append(recommendation)
        return rank(recommendations)

    def from_funnel(self, funnel: FunnelReport) -> List[Recommendation]:
        recommendations = []
        entrants = funnel.steps[0].visitors if funnel.steps else 0

        for index, step in enumerate(funnel.steps):
            if not step.has_friction:
                continue
            previous = funnel.steps[index - 1] if index > 0 else None
            sample = previous.visitors if previous is not None else step.visitors
            confidence = self._sample_confidence(sample)

            if FRICTION_HIGH_DROP_OFF in step.friction_points and previous is not None:
                # Weight the loss by how much of the funnel reaches this point
                reach = previous.visitors / entrants if entrants else 0.0
                impact = min(100.0, step.drop_off_rate * 100 * max(reach, 0.1))
                recommendations.append(
                    Recommendation(
                        kind="high_drop_off",
                        scope=step.step_id,
                        title=f"{step.drop_off_rate:.0%} of subjects drop off "
                        f"before {step.step_id}",
                        action=f"Simplify the transition from {previous.step_id} to {step.step_id} "
                        "and A/B test the change",
                        severity=_drop_off_severity(step),
                        impact=round(impact, 2),
                        confidence=confidence,
                    )
                )

            if FRICTION_SLOW_STEP in step.friction_points:
                recommendations.append(
                    Recommendation(
                        kind="friction_detected",
                        scope=step.step_id,
                        title=f"Subjects spend {step.average_time_on_step / 60:.1f} minutes on "
                        f"{step.step_id}",
                        action=f"Reduce the effort required on {step.step_id} "
                        "(fewer fields, clearer copy, progress indicators)",
                        severity=AlertSeverity.INFO,
                        impact=SLOW_STEP_IMPACT,
                        confidence=confidence,
                    )
                )
        return recommendations

    def from_journeys(self, journeys: JourneySummary) -> Optional[Recommendation]:
        top = journeys.top_drop_off
        if top is None:
            return None
        if journeys.average_steps_to_conversion is not None:
            context = (
                f"converting journeys take {journeys.average_steps_to_conversion:.1f} steps"
            )
        else:
            context = "no journey has converted yet"
        return Recommendation(
            kind="journey_exit",
            scope=top.step_id,
            title=f"{top.rate:.0%} of journeys end at {top.step_id} ({context})",
            action=f"Add exit-intent prompts on {top.step_id} and A/B test a shorter path "
            "to conversion",
            severity=AlertSeverity.INFO,
            impact=round(min(100.0, top.rate * 100), 2),
            confidence=self._sample_confidence(journeys.journeys),
        )

    def from_experiment(self, report: ExperimentReport) -> Optional[Recommendation]:
        experiment = report.experiment
        if experiment.status == ExperimentStatus.COMPLETED and experiment.winner_variant_id is None:
            return None

        if report.is_significant and report.winner_variant_id is not None:
            winner = report.winner_variant_id
            control_id = experiment.control.variant_id
            if winner == control_id:
                action = f"Keep the control experience for {experiment.goal_metric}"
            else:
                action = f"Roll out variant {winner} for {experiment.goal_metric}"
            lift = abs(report.lift_percentage or 0.0)
            return Recommendation(
                kind="experiment_significant",
                scope=experiment.experiment_id,
                title=f"{experiment.name}: {winner} wins "
                f"({report.confidence_percent:.1f}% confidence)",
                action=action,
                severity=AlertSeverity.WARNING,
                impact=round(min(100.0, lift), 2),
                confidence=round(report.confidence_percent, 2),
            )

        if experiment.status == ExperimentStatus.RUNNING and experiment.variants:
            smallest = min(v.visitors for v in experiment.variants)
            if smallest < self.minimum_sample_size:
                return Recommendation(
                    kind="insufficient_sample",
                    scope=experiment.experiment_id,
                    title=f"{experiment.name} is not yet significant",
                    action=f"Keep running until every variant has at least "
                    f"{self.minimum_sample_size} visitors (smallest has {smallest})",
                    severity=AlertSeverity.INFO,
                    impact=10.0,
                    confidence=round(report.confidence_percent, 2),
                )
        return None

    def _sample_confidence(self, sample: int) -> float:
        if self.minimum_sample_size <= 0:
            return 100.0
        return round(min(100.0, sample / self.minimum_sample_size * 100), 2)


def _drop_off_severity(step: FunnelStep) -> AlertSeverity:
    if step.drop_off_rate is not None and step.drop_off_rate >= 0.8:
        return AlertSeverity.CRITICAL
    return AlertSeverity.WARNING
