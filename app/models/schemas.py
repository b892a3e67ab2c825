from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.models.experiment import ExperimentStatus
from observability.alerts import AlertSeverity


class ExperimentDecisionEnum(str, Enum):
    SHIP_VARIANT = "ship_variant"
    KEEP_CONTROL = "keep_control"
    INCONCLUSIVE = "inconclusive"
    PENDING = "pending"


# --- Requests ---


class VariantCreate(BaseModel):
    variant_id: Optional[str] = Field(
        None, min_length=1, description="Unique within the experiment, derived from name if omitted"
    )
    name: str = Field(..., min_length=1, max_length=200)
    traffic_share: float = Field(..., ge=0, le=100, description="Share of experiment traffic (%)")
    changes: Dict[str, Any] = Field(
        default_factory=dict, description="Opaque variant configuration"
    )


class CreateExperimentRequest(BaseModel):
    experiment_id: Optional[str] = Field(None, min_length=1, max_length=200)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    goal_metric: str = Field(..., min_length=1, description="Metric the experiment aims to move")
    scope: str = Field("global", min_length=1, description="Surface the experiment runs on")
    traffic_allocation_percent: float = Field(
        100.0, gt=0, le=100, description="Share of eligible subjects entering the experiment"
    )
    variants: List[VariantCreate] = Field(..., description="First variant is the control")
    minimum_detectable_effect: Optional[float] = Field(
        None, gt=0, description="MDE in percentage points"
    )
    excluded_subjects: List[str] = Field(default_factory=list)


class UpdateTrafficRequest(BaseModel):
    traffic_shares: Dict[str, float] = Field(..., description="variant_id -> share (%)")


class TransitionRequest(BaseModel):
    reason: str = ""


class EventBatchResponse(BaseModel):
    accepted: int
    dropped: int


# --- Responses ---


class VariantResponse(BaseModel):
    variant_id: str
    name: str
    traffic_share: float
    changes: Dict[str, Any]
    visitors: int
    conversions: int
    conversion_rate: float

    class Config:
        from_attributes = True


class LifecycleEventResponse(BaseModel):
    action: str
    from_status: Optional[ExperimentStatus]
    to_status: ExperimentStatus
    at: datetime
    reason: str

    class Config:
        from_attributes = True


class ExperimentResponse(BaseModel):
    experiment_id: str
    name: str
    description: Optional[str]
    goal_metric: str
    scope: str
    status: ExperimentStatus
    traffic_allocation_percent: float
    minimum_detectable_effect: Optional[float]
    created_at: datetime
    started_at: Optional[datetime]
    ended_at: Optional[datetime]
    winner_variant_id: Optional[str]
    variants: List[VariantResponse] = []
    history: List[LifecycleEventResponse] = []

    class Config:
        from_attributes = True


class ExperimentListResponse(BaseModel):
    experiments: List[ExperimentResponse]
    total: int


class ExperimentsOverviewResponse(BaseModel):
    total_experiments: int
    draft_experiments: int
    running_experiments: int
    paused_experiments: int
    completed_experiments: int
    experiments_with_winner: int
    total_participants: int
    avg_participants: float

    class Config:
        from_attributes = True


class AssignmentResponse(BaseModel):
    experiment_id: str
    subject_id: str
    variant_id: str
    changes: Dict[str, Any]
    in_experiment: bool
    fallback: bool
    assigned_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SignificanceResponse(BaseModel):
    control_variant_id: str
    variant_id: str
    control_conversion_rate: float
    variant_conversion_rate: float
    absolute_lift: float  # Percentage points difference
    relative_lift: float  # Percentage improvement
    z_score: float
    p_value: float
    confidence_percent: float
    confidence_interval_lower: float
    confidence_interval_upper: float
    is_significant: bool
    sample_size_adequate: bool
    winner_variant_id: Optional[str] = None
    power: Optional[float] = None
    decision: ExperimentDecisionEnum
    decision_rationale: str

    class Config:
        from_attributes = True


class ExperimentReportResponse(BaseModel):
    experiment: ExperimentResponse
    comparisons: List[SignificanceResponse]
    is_significant: bool
    confidence_percent: float
    winner_variant_id: Optional[str]
    lift_percentage: Optional[float]
    required_sample_size: Optional[int]
    status_message: str
    generated_at: datetime
    partial: bool
    errors: List[str]

    class Config:
        from_attributes = True


class FunnelStepResponse(BaseModel):
    step_id: str
    position: int
    visitors: int
    conversions: int
    conversion_rate: float
    drop_off_rate: Optional[float]
    average_time_on_step: float
    friction_points: List[str]

    class Config:
        from_attributes = True


class FunnelReportResponse(BaseModel):
    window: str
    generated_at: datetime
    steps: List[FunnelStepResponse]
    overall_conversion_rate: float
    friction_step_ids: List[str]
    partial: bool
    errors: List[str]

    class Config:
        from_attributes = True


class DropOffPointResponse(BaseModel):
    step_id: str
    journeys: int
    rate: float

    class Config:
        from_attributes = True


class JourneyReportResponse(BaseModel):
    window: str
    generated_at: datetime
    journeys: int
    converted: int
    conversion_rate: float
    average_steps_to_conversion: Optional[float]
    drop_off_points: List[DropOffPointResponse]


class RecommendationResponse(BaseModel):
    kind: str
    scope: str
    title: str
    action: str
    severity: AlertSeverity
    impact: float
    confidence: float
    score: float

    class Config:
        from_attributes = True


class AlertResponse(BaseModel):
    kind: str
    scope: str
    severity: AlertSeverity
    message: str
    details: Dict[str, Any]
    timestamp: datetime
