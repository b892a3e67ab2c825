from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.core.engine import ConversionEngine
from app.main import create_app
from app.models.schemas import CreateExperimentRequest, VariantCreate


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now

    def timestamp(self, offset_seconds: float = 0) -> float:
        return self.now.timestamp() + offset_seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    # The background drain only runs once at startup; tests flush explicitly
    return Settings(
        ENVIRONMENT="test",
        LOG_LEVEL="WARNING",
        INGESTION_DRAIN_INTERVAL_SECONDS=3600,
        FINDINGS_SCAN_INTERVAL_SECONDS=0,
        CORS_ORIGINS=[],
    )


@pytest.fixture
def engine(settings, clock):
    return ConversionEngine(settings, clock=clock)


@pytest.fixture
def client(settings, engine):
    with TestClient(create_app(settings, engine=engine)) as c:
        yield c


def _experiment_request(
    experiment_id: str = "headline-test",
    goal_metric: str = "signup",
    shares=(50.0, 50.0),
    **overrides,
) -> CreateExperimentRequest:
    names = ["control", "variant_b", "variant_c", "variant_d"]
    variants = [
        VariantCreate(
            variant_id=names[i], name=names[i], traffic_share=share, changes={"headline": names[i]}
        )
        for i, share in enumerate(shares)
    ]
    return CreateExperimentRequest(
        experiment_id=experiment_id,
        name=experiment_id.replace("-", " ").title(),
        goal_metric=goal_metric,
        variants=variants,
        **overrides,
    )


@pytest.fixture
def experiment_request():
    """Factory for valid create requests; first variant is the control."""
    return _experiment_request
