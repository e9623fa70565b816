from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./tickethub.db"
    DB_ECHO: bool = False
    DB_MIGRATE_ON_STARTUP: bool = True

    # Security
    SECRET_KEY: str = "change-this-secret-key"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 480

    # Application
    PROJECT_NAME: str = "TicketHub Booking Engine"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    APP_URL: str = "http://localhost:8000"
    CURRENCY: str = "ETB"

    # Telegram
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    TELEGRAM_MINIAPP_MAX_AGE_SEC: int = 86400
    NOTIFICATION_TIMEOUT_SEC: float = 5.0

    # Payment gateway callbacks
    TELEBIRR_CALLBACK_SECRET: Optional[str] = None

    # Booking sessions
    BOOKING_SESSION_TTL_MINUTES: int = 120

    # Get Now, Pay Later
    GNPL_ENABLED: bool = False
    GNPL_REQUIRE_ADMIN_APPROVAL: bool = True
    GNPL_DEFAULT_TERM_DAYS: int = 14
    GNPL_PENALTY_ENABLED: bool = True
    GNPL_PENALTY_PERCENT: float = 5
    GNPL_PENALTY_PERIOD_DAYS: int = 7
    GNPL_REMINDER_ENABLED: bool = True
    GNPL_REMINDER_DAYS_BEFORE: int = 0

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
