from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    # App settings
    APP_NAME: str = "Operis API"
    VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Security settings
    SECRET_KEY: str
    # Refresh tokens are signed with their own key when one is configured
    REFRESH_SECRET_KEY: Optional[str] = None
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Database settings (MySQL)
    DATABASE_URL: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_RECYCLE: int = 300
    DB_POOL_TIMEOUT: int = 10
    DB_CONNECT_TIMEOUT: int = 10
    DB_PRE_PING: bool = True

    # CORS settings
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:5173",
    ]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_TTL_DAYS: int = 7

    # Cron scheduler
    CRON_SCHEDULER_ENABLED: bool = True
    CRON_POLL_INTERVAL_SECONDS: float = 60.0
    CRON_BATCH_SIZE: int = 50
    CRON_EXECUTION_TIMEOUT_SECONDS: float = 120.0
    CRON_MAX_CONCURRENCY: int = 5
    CRON_STALE_CLAIM_GRACE_SECONDS: float = 60.0
    CRON_EXECUTION_RETENTION_DAYS: int = 30

    # User gateway endpoints
    GATEWAY_WAKE_PATH: str = "/hooks/wake"
    GATEWAY_AGENT_PATH: str = "/hooks/agent"
    GATEWAY_STOP_PATH: str = "/hooks/stop"
    GATEWAY_STOP_TIMEOUT_SECONDS: float = 10.0

    # Deposits (SePay bank transfer)
    DEPOSIT_EXPIRY_MINUTES: int = 10
    DEPOSIT_MIN_TOKENS: int = 100000
    SEPAY_BANK_CODE: str = "BIDV"
    SEPAY_BANK_ACCOUNT: str = ""
    SEPAY_ACCOUNT_NAME: str = ""
    SEPAY_QR_BASE_URL: str = "https://qr.sepay.vn/img"
    SEPAY_WEBHOOK_API_KEY: Optional[str] = None
    # Zone of the bank's transaction timestamps
    SEPAY_TIMEZONE: str = "Asia/Ho_Chi_Minh"

    class Config:
        env_file = ".env"
        case_sensitive = True

# Create settings instance
settings = Settings()

# Validate required settings
if not settings.SECRET_KEY:
    raise ValueError("SECRET_KEY environment variable is required")

if not settings.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")
