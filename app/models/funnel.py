import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple


class TimeWindow(str, enum.Enum):
    ONE_DAY = "1d"
    SEVEN_DAYS = "7d"
    THIRTY_DAYS = "30d"

    @property
    def duration(self) -> timedelta:
        return {
            "1d": timedelta(days=1),
            "7d": timedelta(days=7),
            "30d": timedelta(days=30),
        }[self.value]


@dataclass(frozen=True)
class StepCounts:
    """Pre-aggregated numbers for one step, input to snapshot construction."""

    step_id: str
    visitors: int
    conversions: int
    average_time_on_step: float = 0.0
    # False when conversions were only inferred from arrivals at the next step
    tagged_conversions: bool = True


@dataclass(frozen=True)
class FunnelStep:
    """
    One stage of the funnel as seen in a single analysis run.

    drop_off_rate is None for the first step and whenever the previous step
    has nothing to lose from, so "no data" stays distinct from "total loss".
    """

    step_id: str
    position: int
    visitors: int
    conversions: int
    conversion_rate: float
    drop_off_rate: Optional[float]
    average_time_on_step: float
    friction_points: Tuple[str, ...] = ()

    @property
    def has_friction(self) -> bool:
        return bool(self.friction_points)


@dataclass(frozen=True)
class FunnelSnapshot:
    window: TimeWindow
    generated_at: datetime
    steps: Tuple[FunnelStep, ...]
    partial: bool = False
    errors: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def key(self) -> Tuple[TimeWindow, datetime]:
        return self.window, self.generated_at

    @property
    def overall_conversion_rate(self) -> float:
        if not self.steps or self.steps[0].visitors == 0:
            return 0.0
        # Share of funnel entrants that reached the final step
        return min(1.0, self.steps[-1].visitors / self.steps[0].visitors)

    @property
    def friction_steps(self) -> List[FunnelStep]:
        return [s for s in self.steps if s.has_friction]


@dataclass(frozen=True)
class DropOffPoint:
    """A step where abandoned journeys ended, with its share of all journeys."""

    step_id: str
    journeys: int
    rate: float


@dataclass(frozen=True)
class JourneySummary:
    window: TimeWindow
    generated_at: datetime
    journeys: int
    converted: int
    drop_off_points: Tuple[DropOffPoint, ...] = ()
    average_steps_to_conversion: Optional[float] = None

    @property
    def conversion_rate(self) -> float:
        if self.journeys == 0:
            return 0.0
        return self.converted / self.journeys

    @property
    def top_drop_off(self) -> Optional[DropOffPoint]:
        return self.drop_off_points[0] if self.drop_off_points else None
