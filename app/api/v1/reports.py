from typing import List

from fastapi import APIRouter, Depends, Query

from app.core.engine import ConversionEngine, get_engine
from app.models.funnel import TimeWindow
from app.models.schemas import (
    DropOffPointResponse,
    ExperimentReportResponse,
    FunnelReportResponse,
    FunnelStepResponse,
    JourneyReportResponse,
    RecommendationResponse,
)

router = APIRouter()


@router.get("/funnel", response_model=FunnelReportResponse)
def get_funnel_report(
    window: TimeWindow = Query(TimeWindow.SEVEN_DAYS, description="1d, 7d or 30d"),
    engine: ConversionEngine = Depends(get_engine),
):
    report = engine.intelligence.get_funnel_report(window)

    return FunnelReportResponse(
        window=report.window.value,
        generated_at=report.generated_at,
        steps=[FunnelStepResponse.model_validate(step) for step in report.steps],
        overall_conversion_rate=report.overall_conversion_rate,
        friction_step_ids=list(report.friction_step_ids),
        partial=report.partial,
        errors=list(report.errors),
    )


@router.get("/journeys", response_model=JourneyReportResponse)
def get_journey_report(
    window: TimeWindow = Query(TimeWindow.SEVEN_DAYS, description="1d, 7d or 30d"),
    engine: ConversionEngine = Depends(get_engine),
):
    """Where recent journeys end and how many steps converting journeys take."""
    summary = engine.intelligence.get_journey_report(window)

    return JourneyReportResponse(
        window=summary.window.value,
        generated_at=summary.generated_at,
        journeys=summary.journeys,
        converted=summary.converted,
        conversion_rate=summary.conversion_rate,
        average_steps_to_conversion=summary.average_steps_to_conversion,
        drop_off_points=[DropOffPointResponse.model_validate(p) for p in summary.drop_off_points],
    )


@router.get("/recommendations", response_model=List[RecommendationResponse])
def get_recommendations(
    window: TimeWindow = Query(TimeWindow.SEVEN_DAYS),
    limit: int = Query(20, ge=1, le=100),
    engine: ConversionEngine = Depends(get_engine),
):
    """Funnel friction and experiment outcomes, ranked by impact x confidence."""
    recommendations = engine.intelligence.get_prioritized_recommendations(window)
    return [RecommendationResponse.model_validate(r) for r in recommendations[:limit]]


@router.get("/experiments", response_model=List[ExperimentReportResponse])
def get_experiment_dashboard(engine: ConversionEngine = Depends(get_engine)):
    """Reports for every running experiment."""
    return [
        ExperimentReportResponse.model_validate(report)
        for report in engine.intelligence.get_experiment_dashboard()
    ]
