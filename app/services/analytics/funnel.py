"""
Funnel aggregation over the recent event window.

Funnel observations (step, subject, timestamp, kind) are retained in memory
for the retention period only; every analysis run builds a pandas frame of
the requested window and produces an immutable, timestamped snapshot.
"""

import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd
import structlog

from app.core.exceptions import AnalysisCancelled
from app.models.events import Event, EventKind
from app.models.funnel import FunnelSnapshot, FunnelStep, JourneySummary, StepCounts, TimeWindow
from app.services.analytics.journey import summarize_journeys

logger = structlog.get_logger("funnel")

FRICTION_SLOW_STEP = "High time on step indicates confusion"
FRICTION_HIGH_DROP_OFF = "High drop-off rate suggests UX issues"

_COLUMNS = ["step_id", "subject_id", "timestamp", "kind"]


def calculate_drop_off(previous_conversions: int, visitors: int) -> Optional[float]:
    """Share of the previous step's converters that never showed up here."""
    if previous_conversions <= 0:
        return None
    rate = (previous_conversions - visitors) / previous_conversions
    return min(max(rate, 0.0), 1.0)


def calculate_step_loss(previous_visitors: int, previous_conversions: int) -> Optional[float]:
    """Share of the previous step's visitors that never moved past it."""
    if previous_visitors <= 0:
        return None
    return min(max(1 - previous_conversions / previous_visitors, 0.0), 1.0)


def detect_friction(
    average_time_on_step: float,
    drop_off_rate: Optional[float],
    time_threshold_seconds: float,
    drop_off_threshold: float,
) -> Tuple[str, ...]:
    frictions = []
    if average_time_on_step > time_threshold_seconds:
        frictions.append(FRICTION_SLOW_STEP)
    if drop_off_rate is not None and drop_off_rate > drop_off_threshold:
        frictions.append(FRICTION_HIGH_DROP_OFF)
    return tuple(frictions)


def build_steps(
    counts: Sequence[StepCounts],
    time_threshold_seconds: float = 300.0,
    drop_off_threshold: float = 0.5,
) -> List[FunnelStep]:
    steps: List[FunnelStep] = []
    for position, step in enumerate(counts):
        # A step can never convert more subjects than it received
        conversions = min(step.conversions, step.visitors)
        conversion_rate = conversions / step.visitors if step.visitors > 0 else 0.0

        drop_off_rate = None
        if position > 0:
            previous = steps[-1]
            if counts[position - 1].tagged_conversions:
                drop_off_rate = calculate_drop_off(previous.conversions, step.visitors)
            else:
                # Previous conversions are this step's arrivals, so count who stalled there
                drop_off_rate = calculate_step_loss(previous.visitors, previous.conversions)

        steps.append(
            FunnelStep(
                step_id=step.step_id,
                position=position,
                visitors=step.visitors,
                conversions=conversions,
                conversion_rate=conversion_rate,
                drop_off_rate=drop_off_rate,
                average_time_on_step=step.average_time_on_step,
                friction_points=detect_friction(
                    step.average_time_on_step,
                    drop_off_rate,
                    time_threshold_seconds,
                    drop_off_threshold,
                ),
            )
        )
    return steps


class FunnelAggregator:
    def __init__(
        self,
        steps: Sequence[str],
        friction_time_threshold_seconds: float = 300.0,
        friction_drop_off_threshold: float = 0.5,
        retention_days: int = 30,
        history_size: int = 50,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.steps = list(steps)
        self.friction_time_threshold_seconds = friction_time_threshold_seconds
        self.friction_drop_off_threshold = friction_drop_off_threshold
        self.retention = timedelta(days=retention_days)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = threading.Lock()
        self._observations: List[Tuple[str, str, float, str]] = []
        self._snapshots: deque = deque(maxlen=history_size)

    def ingest(self, events: Iterable[Event]) -> int:
        """Keep the funnel-relevant part of a drained batch."""
        rows = [
            (e.step_id, e.subject_id, e.timestamp, e.kind.value)
            for e in events
            if e.step_id is not None
            and e.kind in (EventKind.PAGE_VIEW, EventKind.FUNNEL_STEP, EventKind.CONVERSION)
        ]
        cutoff = (self._clock() - self.retention).timestamp()

        with self._lock:
            self._observations.extend(rows)
            if self._observations and min(o[2] for o in self._observations) < cutoff:
                self._observations = [o for o in self._observations if o[2] >= cutoff]
        return len(rows)

    @property
    def observation_count(self) -> int:
        with self._lock:
            return len(self._observations)

    def analyze_funnel(
        self,
        steps: Optional[Sequence[str]] = None,
        window: Union[TimeWindow, str] = TimeWindow.SEVEN_DAYS,
        cancel_token: Optional[threading.Event] = None,
        now: Optional[datetime] = None,
    ) -> FunnelSnapshot:
        """
        Compute per-step visitors, conversions, drop-off and friction.

        A visitor converts at a step when they also reached the next step in
        the window, or sent a conversion event tagged with this step.

        Raises:
            AnalysisCancelled: cancel_token was set; carries the steps done so far
        """
        steps = list(steps or self.steps)
        if not steps:
            raise ValueError("A funnel needs at least one step")
        window = TimeWindow(window)
        generated_at = now or self._clock()
        start = (generated_at - window.duration).timestamp()
        end = generated_at.timestamp()

        frame = self._window_frame(start, end)
        visits = frame[frame["kind"] != EventKind.CONVERSION.value]
        step_conversions = frame[frame["kind"] == EventKind.CONVERSION.value]

        counts: List[StepCounts] = []
        for index, step_id in enumerate(steps):
            if cancel_token is not None and cancel_token.is_set():
                partial = build_steps(
                    counts, self.friction_time_threshold_seconds, self.friction_drop_off_threshold
                )
                logger.info(
                    "funnel_analysis_cancelled",
                    window=window.value,
                    completed_steps=len(partial),
                    total_steps=len(steps),
                )
                raise AnalysisCancelled(partial)

            next_step = steps[index + 1] if index + 1 < len(steps) else None
            counts.append(self._count_step(step_id, next_step, visits, step_conversions))

        snapshot = FunnelSnapshot(
            window=window,
            generated_at=generated_at,
            steps=tuple(
                build_steps(
                    counts, self.friction_time_threshold_seconds, self.friction_drop_off_threshold
                )
            ),
        )
        with self._lock:
            self._snapshots.append(snapshot)

        logger.debug(
            "funnel_analyzed",
            window=window.value,
            steps=len(snapshot.steps),
            observations=len(frame),
        )
        return snapshot

    def analyze_journeys(
        self,
        window: Union[TimeWindow, str] = TimeWindow.SEVEN_DAYS,
        max_journeys: int = 1000,
        now: Optional[datetime] = None,
    ) -> JourneySummary:
        window = TimeWindow(window)
        generated_at = now or self._clock()
        start = (generated_at - window.duration).timestamp()
        frame = self._window_frame(start, generated_at.timestamp())

        summary = summarize_journeys(
            frame, self.steps[-1], window, generated_at, max_journeys=max_journeys
        )
        logger.debug(
            "journeys_analyzed",
            window=window.value,
            journeys=summary.journeys,
            converted=summary.converted,
        )
        return summary

    def latest(self, window: Union[TimeWindow, str]) -> Optional[FunnelSnapshot]:
        window = TimeWindow(window)
        with self._lock:
            for snapshot in reversed(self._snapshots):
                if snapshot.window == window:
                    return snapshot
        return None

    def snapshots(self) -> Dict[Tuple[TimeWindow, datetime], FunnelSnapshot]:
        with self._lock:
            return {s.key: s for s in self._snapshots}

    def _window_frame(self, start: float, end: float) -> pd.DataFrame:
        with self._lock:
            rows = list(self._observations)
        df = pd.DataFrame(rows, columns=_COLUMNS)
        return df[(df["timestamp"] >= start) & (df["timestamp"] <= end)]

    def _count_step(
        self,
        step_id: str,
        next_step: Optional[str],
        visits: pd.DataFrame,
        step_conversions: pd.DataFrame,
    ) -> StepCounts:
        entries = visits[visits["step_id"] == step_id].groupby("subject_id")["timestamp"].min()
        if entries.empty:
            return StepCounts(step_id=step_id, visitors=0, conversions=0)

        exits = step_conversions.loc[
            step_conversions["step_id"] == step_id, ["subject_id", "timestamp"]
        ]
        tagged = bool(exits["subject_id"].isin(entries.index).any())
        if next_step is not None:
            exits = pd.concat(
                [exits, visits.loc[visits["step_id"] == next_step, ["subject_id", "timestamp"]]]
            )
        exits = exits[exits["subject_id"].isin(entries.index)]

        conversions = exits["subject_id"].nunique()

        # Time on step: first exit at or after the subject's first arrival
        average_time = 0.0
        if not exits.empty:
            merged = exits.merge(
                entries.rename("entered_at"), left_on="subject_id", right_index=True
            )
            merged = merged[merged["timestamp"] >= merged["entered_at"]]
            if not merged.empty:
                first_exit = merged.groupby("subject_id")["timestamp"].min()
                durations = first_exit - entries.loc[first_exit.index]
                average_time = float(durations.mean())

        return StepCounts(
            step_id=step_id,
            visitors=int(entries.size),
            conversions=int(conversions),
            average_time_on_step=average_time,
            tagged_conversions=tagged,
        )
