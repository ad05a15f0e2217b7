"""Core application configuration and settings.

Handles environment variables for storage, the tutoring API and the
engagement thresholds.
"""
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings


# Load environment variables
ROOT = Path(__file__).resolve().parents[2]
load_dotenv(dotenv_path=ROOT / ".env", override=False)

DEVELOPMENT_SECRET = "development-secret-key-change-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis Configuration (local storage + broadcast transport)
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_password: Optional[str] = Field(default=None, alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    broadcast_channel_name: str = Field(default="codementor-sync", alias="BROADCAST_CHANNEL_NAME")

    # Tutoring REST API
    api_base_url: str = Field(default="http://localhost:8000/api", alias="API_BASE_URL")
    api_timeout_seconds: float = Field(default=15.0, alias="API_TIMEOUT_SECONDS")

    # JWT / session ownership
    jwt_secret_key: str = Field(default=DEVELOPMENT_SECRET, alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    session_ownership_policy: str = Field(default="warn", alias="SESSION_OWNERSHIP_POLICY")  # warn | enforce

    # Engagement thresholds
    quiz_threshold: float = Field(default=30, alias="QUIZ_THRESHOLD")
    practice_threshold: float = Field(default=70, alias="PRACTICE_THRESHOLD")
    auto_trigger: bool = Field(default=True, alias="AUTO_TRIGGER")

    # Engagement point values
    message_points: float = Field(default=3, alias="MESSAGE_POINTS")
    code_execution_points: float = Field(default=5, alias="CODE_EXECUTION_POINTS")
    scroll_points: float = Field(default=0.5, alias="SCROLL_POINTS")
    interaction_points: float = Field(default=0.5, alias="INTERACTION_POINTS")
    time_points: float = Field(default=0.5, alias="TIME_POINTS")
    completion_points: float = Field(default=5, alias="COMPLETION_POINTS")
    idle_award_seconds: int = Field(default=300, alias="IDLE_AWARD_SECONDS")  # 5 minutes

    # Timers
    practice_guard_hours: float = Field(default=6, alias="PRACTICE_GUARD_HOURS")
    sync_interval_seconds: float = Field(default=30, alias="SYNC_INTERVAL_SECONDS")
    topic_debounce_ms: int = Field(default=200, alias="TOPIC_DEBOUNCE_MS")
    progress_reload_throttle_ms: int = Field(default=1500, alias="PROGRESS_RELOAD_THROTTLE_MS")

    # Application Settings
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        case_sensitive = False
        env_file = ".env"
        populate_by_name = True
        extra = "ignore"

    def validate_required_settings(self):
        """Validate that settings are consistent."""
        if self.quiz_threshold <= 0:
            raise ValueError("QUIZ_THRESHOLD must be positive.")
        if self.practice_threshold <= self.quiz_threshold:
            raise ValueError(
                "PRACTICE_THRESHOLD must be greater than QUIZ_THRESHOLD "
                f"(got {self.practice_threshold} <= {self.quiz_threshold})."
            )
        if self.session_ownership_policy not in ("warn", "enforce"):
            raise ValueError(
                "SESSION_OWNERSHIP_POLICY must be 'warn' or 'enforce'."
            )
        if self.environment == "production" and self.jwt_secret_key == DEVELOPMENT_SECRET:
            raise ValueError(
                "JWT_SECRET_KEY must be set to a secure value in production."
            )


# Global settings instance
settings = Settings()


# Validate settings on module import (only in non-test environments)
if settings.environment != "test":
    try:
        settings.validate_required_settings()
    except ValueError as e:
        print(f"Configuration Error: {e}")
        # Don't raise in development to allow partial setup
        if settings.environment == "production":
            raise
