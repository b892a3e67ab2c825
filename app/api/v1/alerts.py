from typing import List

from fastapi import APIRouter, Depends, Query

from app.core.engine import ConversionEngine, get_engine
from app.models.schemas import AlertResponse

router = APIRouter()


@router.get("", response_model=List[AlertResponse])
async def list_alerts(
    limit: int = Query(50, ge=1, le=500),
    engine: ConversionEngine = Depends(get_engine),
):
    """Emitted alerts, newest first. Throttled duplicates never appear here."""
    return [
        AlertResponse(
            kind=alert.kind,
            scope=alert.scope,
            severity=alert.severity,
            message=alert.message,
            details=alert.details,
            timestamp=alert.created_at,
        )
        for alert in engine.alerts.recent(limit)
    ]
