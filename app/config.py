import json
from functools import lru_cache
from typing import Dict, List, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Conversion Intelligence"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # API
    API_V1_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Ingestion
    INGESTION_BUFFER_SIZE: int = 10_000
    INGESTION_DRAIN_BATCH: int = 500
    INGESTION_DRAIN_INTERVAL_SECONDS: float = 1.0

    # Funnel
    FUNNEL_STEPS: Union[List[str], str] = [
        "landing",
        "signup_start",
        "signup_complete",
        "first_generation",
        "active_user",
    ]
    FUNNEL_RETENTION_DAYS: int = 30
    FUNNEL_SNAPSHOT_HISTORY: int = 50
    FRICTION_TIME_THRESHOLD_SECONDS: float = 300.0  # 5 minutes
    FRICTION_DROP_OFF_THRESHOLD: float = 0.5
    JOURNEY_SAMPLE_SIZE: int = 1000  # Most recent journeys considered

    # Significance
    SIGNIFICANCE_THRESHOLD: float = 95.0  # Confidence percent
    MINIMUM_SAMPLE_SIZE: int = 100  # Visitors per variant
    AUTO_COMPLETE_ON_SIGNIFICANCE: bool = False

    # Alerts
    ALERT_DEFAULT_COOLDOWN_SECONDS: float = 900.0
    ALERT_COOLDOWNS: Union[Dict[str, float], str] = {}
    ALERT_HISTORY_SIZE: int = 500
    FINDINGS_SCAN_INTERVAL_SECONDS: float = 60.0

    # CORS
    CORS_ORIGINS: Union[List[str], str] = []

    @field_validator("CORS_ORIGINS", "FUNNEL_STEPS", mode="before")
    @classmethod
    def parse_list(cls, v):
        if isinstance(v, str):
            # Handle both comma-separated and JSON array strings
            if v.strip().startswith("["):
                return json.loads(v)
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("ALERT_COOLDOWNS", mode="before")
    @classmethod
    def parse_cooldowns(cls, v):
        if isinstance(v, str):
            # JSON object or "kind=seconds,kind=seconds"
            if v.strip().startswith("{"):
                return json.loads(v)
            cooldowns = {}
            for pair in v.split(","):
                if "=" not in pair:
                    continue
                kind, seconds = pair.split("=", 1)
                cooldowns[kind.strip()] = float(seconds)
            return cooldowns
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
