"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the application.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator
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
    # DATABASE_URL wins when set (e.g. "sqlite://" for local test runs).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="emotion_map")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # JWT Authentication - REQUIRED for token validation
    SECRET_KEY: str = Field(
        default=...,  # Required - no default
        description="JWT signing key. Must be cryptographically secure (32+ chars)."
    )

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Request Rate Limiting (HTTP middleware)
    RATE_LIMIT_ENABLED: bool = Field(default=True)
    RATE_LIMIT_PER_MINUTE: int = Field(default=60)

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Geo Configuration
    SPATIAL_RESOLUTION: int = Field(default=10, ge=1, le=15)
    SPATIAL_SMOOTHING_RESOLUTION: int = Field(default=9, ge=1, le=15)
    MAX_CELLS_PER_VIEWPORT: int = Field(default=1000, gt=0)
    # Reject submissions whose cell is not at SPATIAL_RESOLUTION.
    ENFORCE_SUBMISSION_RESOLUTION: bool = Field(default=False)

    # Emotion Scoring
    HALF_LIFE_DAYS: float = Field(default=30.0, gt=0)
    TRUST_MIN: float = Field(default=0.5, gt=0)
    TRUST_MAX: float = Field(default=1.5, gt=0)

    # Volatility
    VOLATILE_TTL_HOURS_DEFAULT: int = Field(default=24, gt=0)
    ENABLE_VOLATILITY: bool = Field(default=True)

    # Submission Limits
    EMOTION_SUBMISSIONS_PER_HOUR: int = Field(default=10, gt=0)
    EMOTION_SUBMISSIONS_PER_CELL_PER_DAY: int = Field(default=3, gt=0)
    # Calendar day boundary for the per-cell daily cap.
    SUBMISSION_DAY_TIMEZONE: str = Field(default="UTC")

    # Aggregation / Retention
    RECOMPUTE_DEBOUNCE_SECONDS: float = Field(default=1.0, gt=0)
    AGGREGATION_FETCH_BATCH_SIZE: int = Field(default=500, gt=0)
    SWEEP_BATCH_SIZE: int = Field(default=1000, gt=0)
    SWEEP_INTERVAL_MINUTES: int = Field(default=15, ge=1, le=59)

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    @model_validator(mode="after")
    def _check_trust_bounds(self) -> "Settings":
        if self.TRUST_MIN > self.TRUST_MAX:
            raise ValueError("TRUST_MIN must be less than or equal to TRUST_MAX")
        return self

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:"
            f"{self.POSTGRES_PASSWORD}@"
            f"{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )


def validate_production_config(
    environment: str,
    debug: bool,
    cors_origins: Optional[str],
    postgres_password: str,
) -> None:
    """
    Hard-fail on unsafe production configuration.

    No-op outside production.
    """
    if environment != "production":
        return

    if debug:
        raise ValueError("DEBUG must be False in production")

    if not cors_origins or not cors_origins.strip():
        raise ValueError("CORS_ORIGINS must be set in production")

    if postgres_password in ("postgres", "password", "") or len(postgres_password) < 12:
        raise ValueError("POSTGRES_PASSWORD is too weak for production")


# Global settings instance
settings = Settings()
