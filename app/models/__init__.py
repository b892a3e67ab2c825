from app.models.events import Event, EventKind  # noqa: F401
from app.models.experiment import (  # noqa: F401
    Assignment,
    AssignmentRecord,
    Experiment,
    ExperimentStatus,
    LifecycleEvent,
    Variant,
)
from app.models.funnel import (  # noqa: F401
    DropOffPoint,
    FunnelSnapshot,
    FunnelStep,
    JourneySummary,
    StepCounts,
    TimeWindow,
)
