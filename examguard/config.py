"""
Proctoring agent configuration.

Values come from the environment (prefix ``EXAMGUARD_``) or a local ``.env``.
Per-test settings (duration, violation threshold, camera policy) are not here;
they arrive with the test itself as an ``ExamConfig``.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """Configuration for the proctoring agent."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="EXAMGUARD_",
        case_sensitive=True,
        extra="ignore",
    )

    # Exam server
    EXAM_SERVER_URL: str = "http://localhost:5000"
    API_TOKEN: Optional[str] = None
    PUBLIC_BASE_URL: str = "http://localhost:3000"
    HTTP_TIMEOUT_SECONDS: float = 15.0

    # Clock
    CLOCK_TICK_SECONDS: float = 1.0

    # Camera monitoring
    CAPTURE_INTERVAL_MS: int = 30000
    MONITOR_CAMERA_INDEX: Optional[int] = None  # None = first available
    DOCUMENT_CAMERA_INDEX: Optional[int] = None  # None = same device as monitoring
    FRAME_BUFFER_CAP: int = 10
    JPEG_QUALITY: int = 90

    # Mobile handoff
    MOBILE_POLL_SECONDS: float = 30.0
    MOBILE_EXPIRY_MINUTES: int = 10

    # Violations
    VIOLATION_RETRY_SECONDS: float = 15.0
    DEFAULT_MAX_VIOLATIONS: int = 10

    # Agent API
    AGENT_HOST: str = "127.0.0.1"
    AGENT_PORT: int = 8081


settings = Settings()
