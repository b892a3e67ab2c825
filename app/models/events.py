import enum
import time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class EventKind(str, enum.Enum):
    """Behavioral events accepted by the ingestion buffer."""

    PAGE_VIEW = "page_view"
    FUNNEL_STEP = "funnel_step"
    EXPOSURE = "exposure"
    CONVERSION = "conversion"


class Event(BaseModel):
    """
    A single behavioral event.

    Field names follow the inbound wire contract (camelCase) but the
    snake_case names are accepted as well. Timestamps are epoch seconds.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    subject_id: str = Field(..., min_length=1)
    kind: EventKind
    experiment_id: Optional[str] = None
    step_id: Optional[str] = None
    timestamp: float = Field(default_factory=time.time, ge=0)

    @model_validator(mode="after")
    def check_references(self):
        if self.kind == EventKind.EXPOSURE and not self.experiment_id:
            raise ValueError("exposure events require experimentId")
        if self.kind == EventKind.FUNNEL_STEP and not self.step_id:
            raise ValueError("funnel_step events require stepId")
        if self.kind == EventKind.CONVERSION and not (self.experiment_id or self.step_id):
            raise ValueError("conversion events require experimentId or stepId")
        return self

    @property
    def is_funnel_event(self) -> bool:
        return self.step_id is not None

    @property
    def is_experiment_event(self) -> bool:
        return self.experiment_id is not None and self.kind in (
            EventKind.EXPOSURE,
            EventKind.CONVERSION,
        )
