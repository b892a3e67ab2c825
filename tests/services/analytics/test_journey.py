import pytest

from app.models.events import Event, EventKind
from app.models.funnel import TimeWindow
from app.services.analytics.funnel import FunnelAggregator

STEPS = ["landing", "signup", "activation"]


def _path(subject_id, steps, start, converted=False):
    events = [
        Event(subject_id=subject_id, kind=EventKind.FUNNEL_STEP, step_id=step, timestamp=start + i)
        for i, step in enumerate(steps)
    ]
    if converted:
        events.append(
            Event(
                subject_id=subject_id,
                kind=EventKind.CONVERSION,
                step_id="activation",
                timestamp=start + len(steps),
            )
        )
    return events


@pytest.fixture
def aggregator(clock):
    return FunnelAggregator(STEPS, clock=clock)


class TestJourneys:
    def test_drop_off_points_and_steps_to_conversion(self, aggregator, clock):
        t = clock.timestamp(-3600)
        aggregator.ingest(
            _path("u0", ["landing", "signup", "activation"], t, converted=True)
            + _path("u1", ["landing", "pricing", "signup", "activation"], t, converted=True)
            + _path("u2", ["landing", "signup"], t)
            + _path("u3", ["landing", "signup"], t)
            + _path("u4", ["landing"], t)
        )

        summary = aggregator.analyze_journeys()

        assert (summary.journeys, summary.converted) == (5, 2)
        assert summary.conversion_rate == pytest.approx(0.4)
        assert summary.average_steps_to_conversion == pytest.approx(3.5)
        assert [(p.step_id, p.journeys) for p in summary.drop_off_points] == [
            ("signup", 2),
            ("landing", 1),
        ]
        assert summary.top_drop_off.rate == pytest.approx(0.4)

    def test_journey_ends_at_last_step_in_time_order(self, aggregator, clock):
        t = clock.timestamp(-600)
        # Arrives out of order; signup happened after pricing
        aggregator.ingest(_path("u1", ["signup"], t + 50) + _path("u1", ["pricing"], t))

        summary = aggregator.analyze_journeys()

        assert summary.drop_off_points[0].step_id == "signup"

    def test_ties_are_ordered_by_step(self, aggregator, clock):
        t = clock.timestamp(-600)
        aggregator.ingest(_path("a", ["signup"], t) + _path("b", ["landing"], t))

        summary = aggregator.analyze_journeys()

        assert [p.step_id for p in summary.drop_off_points] == ["landing", "signup"]

    def test_only_most_recent_journeys_are_considered(self, aggregator, clock):
        aggregator.ingest(
            _path("old", ["landing"], clock.timestamp(-7200))
            + _path("new", ["landing", "signup"], clock.timestamp(-60))
        )

        summary = aggregator.analyze_journeys(max_journeys=1)

        assert summary.journeys == 1
        assert summary.drop_off_points[0].step_id == "signup"

    def test_window_limits_journeys(self, aggregator, clock):
        aggregator.ingest(_path("u1", ["landing"], clock.timestamp(-3 * 86400)))

        assert aggregator.analyze_journeys(window=TimeWindow.ONE_DAY).journeys == 0
        assert aggregator.analyze_journeys(window=TimeWindow.SEVEN_DAYS).journeys == 1

    def test_no_journeys(self, aggregator):
        summary = aggregator.analyze_journeys()

        assert summary.journeys == 0
        assert summary.conversion_rate == 0.0
        assert summary.top_drop_off is None
        assert summary.average_steps_to_conversion is None
