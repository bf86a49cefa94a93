import os
from dataclasses import dataclass
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./data/library.db")
    sqlite_busy_timeout: float = float(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))

    # Circulation policy
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    default_extend_days: int = int(os.getenv("DEFAULT_EXTEND_DAYS", "7"))
    daily_fine_rate: Decimal = Decimal(os.getenv("DAILY_FINE_RATE", "1.00"))
    # oldest_first | newest_first
    bulk_payment_order: str = os.getenv("BULK_PAYMENT_ORDER", "oldest_first")
    isbn_length: int = int(os.getenv("ISBN_LENGTH", "13"))

    # App
    app_name: str = os.getenv("APP_NAME", "Library Circulation Ledger")
    app_version: str = os.getenv("APP_VERSION", "0.1.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
