from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from app.core.engine import ConversionEngine, get_engine
from app.models.experiment import ExperimentStatus
from app.models.schemas import (
    AssignmentResponse,
    CreateExperimentRequest,
    ExperimentListResponse,
    ExperimentReportResponse,
    ExperimentResponse,
    ExperimentsOverviewResponse,
    TransitionRequest,
    UpdateTrafficRequest,
)

router = APIRouter()


@router.post("", response_model=ExperimentResponse, status_code=201)
async def create_experiment(
    request: CreateExperimentRequest, engine: ConversionEngine = Depends(get_engine)
):
    experiment = engine.registry.create(request)
    return ExperimentResponse.model_validate(experiment)


@router.get("", response_model=ExperimentListResponse)
async def list_experiments(
    status: Optional[ExperimentStatus] = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    engine: ConversionEngine = Depends(get_engine),
):
    experiments = engine.registry.list(status=status)
    page = experiments[offset : offset + limit]

    return ExperimentListResponse(
        experiments=[ExperimentResponse.model_validate(e) for e in page],
        total=len(experiments),
    )


@router.get("/summary", response_model=ExperimentsOverviewResponse)
async def get_experiments_summary(engine: ConversionEngine = Depends(get_engine)):
    return ExperimentsOverviewResponse.model_validate(engine.registry.summary())


@router.get("/{experiment_id}", response_model=ExperimentResponse)
async def get_experiment(experiment_id: str, engine: ConversionEngine = Depends(get_engine)):
    return ExperimentResponse.model_validate(engine.registry.get(experiment_id))


@router.post("/{experiment_id}/start", response_model=ExperimentResponse)
async def start_experiment(experiment_id: str, engine: ConversionEngine = Depends(get_engine)):
    return ExperimentResponse.model_validate(engine.registry.start(experiment_id))


@router.post("/{experiment_id}/pause", response_model=ExperimentResponse)
async def pause_experiment(
    experiment_id: str,
    request: Optional[TransitionRequest] = Body(None),
    engine: ConversionEngine = Depends(get_engine),
):
    reason = request.reason if request else ""
    return ExperimentResponse.model_validate(engine.registry.pause(experiment_id, reason))


@router.post("/{experiment_id}/resume", response_model=ExperimentResponse)
async def resume_experiment(experiment_id: str, engine: ConversionEngine = Depends(get_engine)):
    return ExperimentResponse.model_validate(engine.registry.resume(experiment_id))


@router.post("/{experiment_id}/complete", response_model=ExperimentResponse)
def complete_experiment(
    experiment_id: str,
    request: Optional[TransitionRequest] = Body(None),
    engine: ConversionEngine = Depends(get_engine),
):
    # Apply whatever is still queued so the final evaluation sees it
    engine.flush()
    reason = request.reason if request and request.reason else "completed"
    return ExperimentResponse.model_validate(engine.registry.complete(experiment_id, reason))


@router.patch("/{experiment_id}/traffic", response_model=ExperimentResponse)
async def update_traffic(
    experiment_id: str,
    request: UpdateTrafficRequest,
    engine: ConversionEngine = Depends(get_engine),
):
    experiment = engine.registry.update_traffic(experiment_id, request.traffic_shares)
    return ExperimentResponse.model_validate(experiment)


@router.get("/{experiment_id}/assignment/{subject_id}", response_model=AssignmentResponse)
async def get_assignment(
    experiment_id: str, subject_id: str, engine: ConversionEngine = Depends(get_engine)
):
    """Sticky variant for the subject; the control experience if the experiment is not running."""
    assignment = engine.assignments.assign_or_control(experiment_id, subject_id)
    return AssignmentResponse.model_validate(assignment)


@router.get("/{experiment_id}/report", response_model=ExperimentReportResponse)
def get_experiment_report(experiment_id: str, engine: ConversionEngine = Depends(get_engine)):
    report = engine.intelligence.get_experiment_report(experiment_id)
    return ExperimentReportResponse.model_validate(report)
