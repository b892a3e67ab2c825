"""
Per-subject journeys through the tracked steps.

A journey is every step a subject visited inside the window, in time order.
It converted when the subject sent a conversion event tagged with the final
funnel step; otherwise the last visited step is where it was abandoned.
"""

from datetime import datetime

import pandas as pd

from app.models.events import EventKind
from app.models.funnel import DropOffPoint, JourneySummary, TimeWindow


def summarize_journeys(
    frame: pd.DataFrame,
    final_step: str,
    window: TimeWindow,
    generated_at: datetime,
    max_journeys: int = 1000,
) -> JourneySummary:
    """
    Rank abandonment points and measure the path length of converted journeys.

    Only the max_journeys most recently active subjects are considered.
    """
    is_conversion = frame["kind"] == EventKind.CONVERSION.value
    visits = frame[~is_conversion]
    if visits.empty or max_journeys < 1:
        return JourneySummary(window=window, generated_at=generated_at, journeys=0, converted=0)

    ordered = visits.sort_values("timestamp", kind="stable")
    journeys = ordered.groupby("subject_id").agg(
        last_step=("step_id", "last"),
        steps=("step_id", "size"),
        last_seen=("timestamp", "max"),
    )
    journeys = journeys.nlargest(max_journeys, "last_seen")

    finishers = frame.loc[is_conversion & (frame["step_id"] == final_step), "subject_id"]
    converted = journeys.index.isin(finishers.unique())
    total = len(journeys)

    abandoned = journeys.loc[~converted, "last_step"].value_counts()
    # Most common first, step id breaks ties
    abandoned = abandoned.sort_index().sort_values(ascending=False, kind="stable")
    drop_off_points = tuple(
        DropOffPoint(step_id=str(step_id), journeys=int(count), rate=float(count) / total)
        for step_id, count in abandoned.items()
    )

    average_steps = None
    if converted.any():
        average_steps = float(journeys.loc[converted, "steps"].mean())

    return JourneySummary(
        window=window,
        generated_at=generated_at,
        journeys=total,
        converted=int(converted.sum()),
        drop_off_points=drop_off_points,
        average_steps_to_conversion=average_steps,
    )
