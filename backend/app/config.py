"""
backend/app/config.py

Purpose:
    Central settings loading for backend services.

Dependencies:
    - pydantic-settings
    - pathlib
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Prefer backend/.env, fallback to project-root .env.
_BACKEND_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_ROOT_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB: str = "phantacci"
    JWT_SECRET: str = ""
    JWT_SECRET_OLD: str = ""  # Set during rotation; cleared after 7 days
    BACKEND_CORS_ORIGINS: str = "http://localhost:5173"
    LOG_LEVEL: str = "INFO"

    # Linked FPL teams
    MAX_LINKED_TEAMS_PER_USER: int = 10

    # League creation rules
    LEAGUE_MIN_TEAMS: int = 2
    LEAGUE_MAX_TEAMS: int = 400
    SEASON_LAST_GAMEWEEK: int = 38
    USER_LEAGUE_MIN_ENTRY_FEE_MINOR: int = 1000  # GHS 10
    USER_LEAGUE_MAX_ENTRY_FEE_MINOR: int = 5000  # GHS 50
    DEFAULT_PLATFORM_FEE_PERCENT: float = 0.0

    # Prize distribution
    PERCENTAGE_SUM_TOLERANCE: float = 0.01

    # Background jobs
    SCHEDULER_ENABLED: bool = True
    LIFECYCLE_TICK_MINUTES: int = 5
    PAYOUT_RETRY_MINUTES: int = 10
    PAYOUT_RETRY_BATCH: int = 200

    model_config = {
        "env_file": (str(_BACKEND_ENV_FILE), str(_ROOT_ENV_FILE)),
        "extra": "ignore",
    }


settings = Settings()
