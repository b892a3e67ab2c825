import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set


class ExperimentStatus(str, enum.Enum):
    """Status of an experiment lifecycle."""

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


# Completed is terminal; Running and Paused may alternate.
ALLOWED_TRANSITIONS: Dict[ExperimentStatus, Set[ExperimentStatus]] = {
    ExperimentStatus.DRAFT: {ExperimentStatus.RUNNING},
    ExperimentStatus.RUNNING: {ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED},
    ExperimentStatus.PAUSED: {ExperimentStatus.RUNNING, ExperimentStatus.COMPLETED},
    ExperimentStatus.COMPLETED: set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Variant:
    """
    One arm of an experiment, including the control.

    Counters only ever grow and are mutated by the registry while the
    experiment is running or paused.
    """

    variant_id: str
    name: str
    traffic_share: float  # Percentage of experiment traffic (0-100)
    changes: Dict[str, Any] = field(default_factory=dict)
    visitors: int = 0
    conversions: int = 0

    @property
    def conversion_rate(self) -> float:
        if self.visitors == 0:
            return 0.0
        return self.conversions / self.visitors


@dataclass
class LifecycleEvent:
    action: str
    from_status: Optional[ExperimentStatus]
    to_status: ExperimentStatus
    at: datetime
    reason: str = ""


@dataclass
class Experiment:
    """
    Represents an A/B experiment definition and its live counters.

    The first variant is the control. Owned by the ExperimentRegistry;
    everything handed out of the registry is a copy.
    """

    experiment_id: str
    name: str
    goal_metric: str
    variants: List[Variant]
    traffic_allocation_percent: float = 100.0
    scope: str = "global"
    description: Optional[str] = None
    status: ExperimentStatus = ExperimentStatus.DRAFT
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    winner_variant_id: Optional[str] = None
    minimum_detectable_effect: Optional[float] = None  # Percentage points
    excluded_subjects: Set[str] = field(default_factory=set)
    history: List[LifecycleEvent] = field(default_factory=list)

    @property
    def control(self) -> Variant:
        return self.variants[0]

    @property
    def is_active(self) -> bool:
        return self.status in (ExperimentStatus.RUNNING, ExperimentStatus.PAUSED)

    @property
    def total_visitors(self) -> int:
        return sum(v.visitors for v in self.variants)

    @property
    def total_conversions(self) -> int:
        return sum(v.conversions for v in self.variants)

    def variant(self, variant_id: str) -> Optional[Variant]:
        for v in self.variants:
            if v.variant_id == variant_id:
                return v
        return None


@dataclass(frozen=True)
class AssignmentRecord:
    """Stable mapping of a subject to a variant for the life of an experiment."""

    experiment_id: str
    subject_id: str
    variant_id: str
    assigned_at: datetime


@dataclass(frozen=True)
class Assignment:
    """Answer to an assignment query, including the variant's configuration."""

    experiment_id: str
    subject_id: str
    variant_id: str
    changes: Dict[str, Any]
    in_experiment: bool
    assigned_at: Optional[datetime] = None
    fallback: bool = False
