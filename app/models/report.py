from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from app.models.experiment import Experiment
from app.models.funnel import FunnelSnapshot, FunnelStep, TimeWindow
from app.services.experiments.stats import SignificanceResult


@dataclass(frozen=True)
class FunnelReport:
    window: TimeWindow
    generated_at: datetime
    steps: Tuple[FunnelStep, ...]
    overall_conversion_rate: float
    friction_step_ids: Tuple[str, ...]
    partial: bool = False
    errors: Tuple[str, ...] = ()

    @classmethod
    def from_snapshot(cls, snapshot: FunnelSnapshot) -> "FunnelReport":
        return cls(
            window=snapshot.window,
            generated_at=snapshot.generated_at,
            steps=snapshot.steps,
            overall_conversion_rate=snapshot.overall_conversion_rate,
            friction_step_ids=tuple(s.step_id for s in snapshot.friction_steps),
            partial=snapshot.partial,
            errors=snapshot.errors,
        )


@dataclass
class ExperimentReport:
    """Point-in-time view of one experiment with its significance analysis."""

    experiment: Experiment
    generated_at: datetime
    comparisons: List[SignificanceResult] = field(default_factory=list)
    is_significant: bool = False
    confidence_percent: float = 0.0
    winner_variant_id: Optional[str] = None
    lift_percentage: Optional[float] = None  # Best variant vs control
    required_sample_size: Optional[int] = None  # Visitors per variant
    status_message: str = ""
    partial: bool = False
    errors: List[str] = field(default_factory=list)
