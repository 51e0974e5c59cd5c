import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Application
    app_name: str = os.getenv("APP_NAME", "Library Lending API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    environment: str = os.getenv("ENVIRONMENT", "development")
    debug: bool = _env_bool("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # API
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "test-api-key")

    # Storage
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    store_timeout: float = float(os.getenv("STORE_TIMEOUT", "5"))
    store_retry_attempts: int = int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
    store_retry_backoff: float = float(os.getenv("STORE_RETRY_BACKOFF", "0.1"))

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Lending rules
    default_borrowing_limit: int = int(os.getenv("DEFAULT_BORROWING_LIMIT", "5"))
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    max_loan_days: int = int(os.getenv("MAX_LOAN_DAYS", "30"))

    def store_config(self) -> "StoreConfig":
        return StoreConfig(database_file=self.database_file, timeout=self.store_timeout)


@dataclass(frozen=True)
class StoreConfig:
    """Everything the entity store needs, handed to it at construction time."""

    database_file: str
    timeout: float = 5.0
    wal: bool = True


settings = Settings()
