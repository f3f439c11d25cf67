"""
ClinicalSentry Configuration Management
Handles all application settings using Pydantic Settings
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator
from typing import List


class Settings(BaseSettings):
    """Application settings with validation"""

    model_config = SettingsConfigDict(
        env_prefix="ALERTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_default=True
    )

    # Environment
    environment: str = Field(default="development", pattern="^(development|production|test)$")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")

    # API Server
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000, ge=1, le=65535)
    api_reload: bool = Field(default=True)

    # Alert store
    store_backend: str = Field(default="memory", pattern="^(memory|redis)$")
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_max_connections: int = Field(default=50, ge=10, le=200)
    redis_key_prefix: str = Field(default="alerts")
    redis_lock_timeout: int = Field(default=10, ge=1, le=120)
    store_max_retries: int = Field(default=3, ge=1, le=10)

    # Detection
    detector_parallel: bool = Field(default=True)
    detector_timeout_seconds: float = Field(default=5.0, gt=0.0, le=60.0)

    # Clinical Rules
    rules_drug_interactions: bool = Field(default=True)
    rules_allergies: bool = Field(default=True)
    rules_critical_labs: bool = Field(default=True)
    rules_critical_vitals: bool = Field(default=True)
    rules_overdue_followups: bool = Field(default=True)

    # Celery
    celery_broker_url: str = Field(default="redis://localhost:6379/1")
    celery_result_backend: str = Field(default="redis://localhost:6379/2")
    celery_task_always_eager: bool = Field(default=False)
    worker_prefetch_multiplier: int = Field(default=2, ge=1, le=10)
    task_time_limit: int = Field(default=120, ge=10, le=1800)
    task_soft_time_limit: int = Field(default=100, ge=5, le=1700)

    # Security
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"]
    )
    cors_allow_credentials: bool = Field(default=True)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from string or list"""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("redis_key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        """Key prefix must not end with the key separator"""
        v = v.strip().rstrip(":")
        if not v:
            raise ValueError("redis_key_prefix must not be empty")
        return v

    @model_validator(mode="after")
    def validate_task_limits(self) -> "Settings":
        """Soft time limit has to fire before the hard one"""
        if self.task_soft_time_limit >= self.task_time_limit:
            raise ValueError("task_soft_time_limit must be lower than task_time_limit")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment == "production"

    @property
    def is_test(self) -> bool:
        """Check if running in test"""
        return self.environment == "test"


# Global settings instance
settings = Settings()
