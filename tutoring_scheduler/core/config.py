from pydantic_settings import BaseSettings
from typing import List
import os


class Settings(BaseSettings):
    # App Configuration
    APP_NAME: str = "Tutoring Scheduler API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./tutoring_scheduler.db")

    # Calendar policy
    INSTITUTION_TIMEZONE: str = "America/Sao_Paulo"
    MAX_ADVANCE_MONTHS: int = 3  # booking horizon
    MIN_ADVANCE_MINUTES: int = 60  # earliest bookable start relative to now

    # Slot generation
    ALLOWED_DURATIONS: List[int] = [30, 60, 90, 120]
    SLOT_GRANULARITY_MINUTES: int = 15
    BUFFER_MINUTES: int = 0  # padding applied around existing sessions

    # Booking rules
    ALLOW_STUDENT_CONFLICTS: bool = False
    MAX_CANCEL_REASON_LENGTH: int = 500

    # Store access
    STORE_TIMEOUT_SECONDS: float = 5.0
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_BASE_DELAY: float = 0.1
    STORE_RETRY_MAX_DELAY: float = 2.0
    COMMIT_CAS_ATTEMPTS: int = 5

    class Config:
        env_file = ".env"
        case_sensitive = True


# Create settings instance
settings = Settings()
