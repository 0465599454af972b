from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path


class Settings(BaseSettings):
    APP_NAME: str = "Family Budget Backend"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # Default SQLite file DB; absolute path so the CWD does not matter
    _default_db_path = Path(__file__).resolve().parents[2] / "familybudget.sqlite3"
    DATABASE_URL: str = f"sqlite:///{_default_db_path}"

    CORS_ORIGINS: list[str] = ["*"]
    TIMEZONE: str = "America/New_York"

    # Plaid (aggregator)
    PLAID_CLIENT_ID: str = ""
    PLAID_SECRET: str = ""
    PLAID_ENV: str = "sandbox"

    # APNs push
    APNS_AUTH_TOKEN: str = ""
    APNS_TOPIC: str = "com.familybudget.ios"
    APNS_USE_SANDBOX: bool = True

    # Twilio SMS
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM_NUMBER: str = ""

    HTTP_TIMEOUT_SECONDS: float = 10.0
    SYNC_MAX_WORKERS: int = 4
    RENEWAL_REMINDER_DAYS: int = 3
    LIMIT_WARNING_PERCENT: float = 90.0
    DEFAULT_MONTHLY_LIMIT: float = 500.0

    # Shared secret for the /api/jobs/* trigger endpoints (empty = open)
    JOB_TRIGGER_TOKEN: str = ""

    model_config = SettingsConfigDict(env_file=(".env",), env_prefix="FAMBUDGET_", case_sensitive=False)


settings = Settings()
