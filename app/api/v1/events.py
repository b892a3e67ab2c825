from typing import List, Union

from fastapi import APIRouter, Body, Depends

from app.core.engine import ConversionEngine, get_engine
from app.models.events import Event
from app.models.schemas import EventBatchResponse

router = APIRouter()


@router.post("", response_model=EventBatchResponse, status_code=202)
async def record_events(
    events: Union[List[Event], Event] = Body(..., description="A single event or a batch"),
    engine: ConversionEngine = Depends(get_engine),
):
    """
    Queue events for background aggregation.

    Never blocks on aggregation. When the buffer is full the oldest queued
    events are dropped, reported in `dropped` and raised as an alert.
    """
    if isinstance(events, Event):
        events = [events]

    dropped = engine.buffer.record_many(events)
    return EventBatchResponse(accepted=len(events), dropped=dropped)
