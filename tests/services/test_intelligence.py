import threading

import pytest

from app.core.exceptions import ExperimentNotFound
from app.models.events import Event, EventKind
from app.models.funnel import FunnelSnapshot, StepCounts, TimeWindow
from app.models.report import FunnelReport
from app.services.analytics.funnel import build_steps
from app.services.recommendations import Recommendation, RecommendationBuilder, rank
from observability.alerts import AlertSeverity


def _landing_converters(count, ts):
    """Subjects that convert on the landing step but never reach the next one."""
    events = []
    for i in range(count):
        subject_id = f"u{i}"
        for kind in ("funnel_step", "conversion"):
            events.append(Event(subject_id=subject_id, kind=kind, step_id="landing", timestamp=ts))
    return events


def _fill(engine, experiment_id, counts):
    for variant_id, (visitors, conversions) in counts.items():
        for i in range(visitors):
            engine.registry.record_exposure(experiment_id, f"{variant_id}-{i}", variant_id)
            if i < conversions:
                engine.registry.record_conversion(experiment_id, f"{variant_id}-{i}")


@pytest.fixture
def headline(engine, experiment_request):
    engine.registry.create(experiment_request())
    engine.registry.start("headline-test")
    _fill(engine, "headline-test", {"control": (1000, 40), "variant_b": (1000, 65)})
    return "headline-test"


class TestExperimentReport:
    def test_headline_report(self, engine, headline):
        report = engine.intelligence.get_experiment_report(headline)

        assert report.is_significant
        assert report.winner_variant_id == "variant_b"
        assert 97 <= report.confidence_percent <= 99
        assert report.lift_percentage == pytest.approx(62.5)
        assert report.required_sample_size > 0
        assert report.status_message.startswith("variant_b wins")
        assert not report.partial

    def test_thin_data_reads_not_yet_significant(self, engine, experiment_request):
        engine.registry.create(experiment_request())
        engine.registry.start("headline-test")
        _fill(engine, "headline-test", {"control": (10, 1), "variant_b": (10, 9)})

        report = engine.intelligence.get_experiment_report("headline-test")

        assert not report.is_significant
        assert report.winner_variant_id is None
        assert report.status_message.startswith("Not yet significant")

    def test_report_is_a_snapshot(self, engine, headline):
        report = engine.intelligence.get_experiment_report(headline)
        _fill(engine, headline, {"control": (1001, 0)})

        assert report.experiment.variant("control").visitors == 1000

    def test_unknown_experiment(self, engine):
        with pytest.raises(ExperimentNotFound):
            engine.intelligence.get_experiment_report("missing")

    def test_dashboard_lists_running_experiments_only(self, engine, headline, experiment_request):
        engine.registry.create(experiment_request("draft-one", goal_metric="upgrade"))

        dashboard = engine.intelligence.get_experiment_dashboard()

        assert [r.experiment.experiment_id for r in dashboard] == [headline]


class TestFunnelReport:
    def test_cancelled_report_is_partial(self, engine, clock):
        engine.funnel.ingest(
            [
                Event(
                    subject_id="u1",
                    kind=EventKind.FUNNEL_STEP,
                    step_id="landing",
                    timestamp=clock.timestamp(-60),
                )
            ]
        )
        token = threading.Event()
        token.set()

        report = engine.intelligence.get_funnel_report("7d", cancel_token=token)

        assert report.partial
        assert report.errors
        assert report.steps == ()

    def test_report_lists_friction_steps(self, engine, clock):
        engine.funnel.ingest(_landing_converters(10, clock.timestamp(-300)))

        report = engine.intelligence.get_funnel_report(TimeWindow.ONE_DAY)

        assert report.window == TimeWindow.ONE_DAY
        assert report.friction_step_ids == ("signup_start",)
        assert not report.partial


class TestRecommendations:
    def test_rank_by_score_then_severity(self):
        a = Recommendation("k", "a", "t", "x", AlertSeverity.INFO, impact=50, confidence=80)
        b = Recommendation("k", "b", "t", "x", AlertSeverity.CRITICAL, impact=80, confidence=50)
        c = Recommendation("k", "c", "t", "x", AlertSeverity.WARNING, impact=90, confidence=90)

        assert a.score == b.score == 40
        assert [r.scope for r in rank([a, b, c])] == ["c", "b", "a"]

    def test_funnel_friction_becomes_recommendations(self, clock):
        steps = build_steps(
            [
                StepCounts("landing", 1000, 900),
                StepCounts("signup", 100, 80, average_time_on_step=600),
            ]
        )
        funnel = FunnelReport.from_snapshot(
            FunnelSnapshot(window=TimeWindow.SEVEN_DAYS, generated_at=clock.now, steps=tuple(steps))
        )

        recommendations = RecommendationBuilder(minimum_sample_size=100).build(funnel, [])

        assert [r.kind for r in recommendations] == ["high_drop_off", "friction_detected"]
        drop_off = recommendations[0]
        assert drop_off.scope == "signup"
        assert drop_off.severity == AlertSeverity.CRITICAL  # ~89% lost
        assert drop_off.confidence == 100.0

    def test_prioritized_recommendations_merge_sources(self, engine, headline, clock):
        engine.funnel.ingest(_landing_converters(20, clock.timestamp(-300)))

        recommendations = engine.intelligence.get_prioritized_recommendations()

        kinds = [r.kind for r in recommendations]
        assert "experiment_significant" in kinds
        assert "high_drop_off" in kinds
        scores = [r.score for r in recommendations]
        assert scores == sorted(scores, reverse=True)

    def test_under_powered_running_experiment_suggests_waiting(self, engine, experiment_request):
        engine.registry.create(experiment_request())
        engine.registry.start("headline-test")
        _fill(engine, "headline-test", {"control": (5, 1), "variant_b": (5, 2)})

        recommendations = engine.intelligence.get_prioritized_recommendations()

        assert [r.kind for r in recommendations] == ["insufficient_sample"]


class TestJourneyRecommendations:
    def test_top_exit_becomes_recommendation(self, engine, clock):
        ts = clock.timestamp(-300)
        engine.funnel.ingest(
            [
                Event(subject_id=f"u{i}", kind="funnel_step", step_id="landing", timestamp=ts)
                for i in range(50)
            ]
        )

        journeys = engine.intelligence.get_journey_report()
        recommendation = RecommendationBuilder(minimum_sample_size=100).from_journeys(journeys)

        assert recommendation.kind == "journey_exit"
        assert recommendation.scope == "landing"
        assert recommendation.impact == 100.0
        assert recommendation.confidence == 50.0
        assert "no journey has converted yet" in recommendation.title

    def test_journey_exits_are_ranked_with_other_findings(self, engine, clock):
        engine.funnel.ingest(_landing_converters(20, clock.timestamp(-300)))

        kinds = [r.kind for r in engine.intelligence.get_prioritized_recommendations()]

        assert "journey_exit" in kinds
        assert kinds.index("high_drop_off") < kinds.index("journey_exit")

    def test_no_journeys_no_recommendation(self, engine):
        journeys = engine.intelligence.get_journey_report()

        assert RecommendationBuilder().from_journeys(journeys) is None
