"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the engine, the API and the worker.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # On-device store: a single SQLite file per installation.
    DATABASE_URL: str = Field(default="sqlite:///./streakguard.db")

    # API Configuration
    API_HOST: str = Field(default="127.0.0.1")
    API_PORT: int = Field(default=8000)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://localhost:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://localhost:6379/0")

    # Redis (cross-process training lock). Empty disables it.
    REDIS_URL: Optional[str] = Field(default="redis://localhost:6379/0")

    # External sinks
    # Anonymized aggregate sharing is opt-in. Nothing is sent unless enabled.
    AGGREGATE_SHARING_ENABLED: bool = Field(default=False)
    AGGREGATE_SINK_URL: Optional[str] = Field(default=None)
    NOTIFICATION_SINK_URL: Optional[str] = Field(default=None)
    EXTERNAL_API_TIMEOUT: int = Field(default=10)

    # Risk model
    # Seed for the train/validation shuffle and weight init. None = nondeterministic.
    RISK_TRAINING_SEED: Optional[int] = Field(default=None)
    MODEL_RETRAIN_AFTER_DAYS: int = Field(default=7, ge=1, le=90)
    OUTCOME_CHECK_INTERVAL_MINUTES: int = Field(default=15, ge=1, le=1440)

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)


# Global settings instance
settings = Settings()
