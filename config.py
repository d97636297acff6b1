import os
from dataclasses import dataclass, field
from typing import Dict, Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def parse_person_type_limits(raw: Optional[str]) -> Dict[str, int]:
    """Parse ``"student:3,teacher:10"`` into ``{"student": 3, "teacher": 10}``."""
    limits: Dict[str, int] = {}
    if not raw:
        return limits
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        name, sep, value = chunk.partition(":")
        if not sep:
            raise ValueError(f"Invalid person type limit entry: {chunk!r}")
        limits[name.strip().lower()] = int(value)
    return limits


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    data_file: str = os.getenv("LIBRARY_DATA_FILE", "library.db")
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "30"))

    # Loan policy
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "15"))
    max_loan_quantity: int = int(os.getenv("MAX_LOAN_QUANTITY", "5"))
    max_active_loans: int = int(os.getenv("MAX_ACTIVE_LOANS", "5"))
    # Optional per person type ceilings, e.g. "student:3,teacher:10"
    person_type_loan_limits: Dict[str, int] = field(
        default_factory=lambda: parse_person_type_limits(os.getenv("PERSON_TYPE_LOAN_LIMITS"))
    )
    block_borrowers_with_overdue: bool = _env_bool("BLOCK_BORROWERS_WITH_OVERDUE", "True")
    allowed_resource_states: tuple = tuple(
        s.strip() for s in os.getenv("ALLOWED_RESOURCE_STATES", "good,deteriorated").split(",") if s.strip()
    )

    # Stock release retry
    stock_release_retries: int = int(os.getenv("STOCK_RELEASE_RETRIES", "3"))
    stock_release_backoff: float = float(os.getenv("STOCK_RELEASE_BACKOFF", "0.1"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "School Library Loans")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))


settings = Settings()
