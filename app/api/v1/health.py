from fastapi import APIRouter, Depends

from app.core.engine import ConversionEngine, get_engine

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check"""
    return {"status": "healthy", "service": "conversion-intelligence"}


@router.get("/health/ingestion")
async def health_check_ingestion(engine: ConversionEngine = Depends(get_engine)):
    """Buffer fill level and background processor progress"""
    buffer = engine.buffer.stats()
    processor = engine.processor.stats

    status = "healthy"
    if buffer.dropped:
        status = "degraded"

    return {
        "status": status,
        "buffer": {
            "size": buffer.size,
            "capacity": buffer.capacity,
            "accepted": buffer.accepted,
            "dropped": buffer.dropped,
            "drained": buffer.drained,
        },
        "processor": {
            "batches": processor.batches,
            "processed": processor.processed,
            "failed": processor.failed,
            "last_run_at": processor.last_run_at,
        },
        "funnel_observations": engine.funnel.observation_count,
    }
