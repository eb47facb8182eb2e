import os
import tempfile
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    # LIBRARY_DB_FILE wins; LIBRARY_DATA_FILE is the older name.  Without either,
    # each process gets its own temp file.
    database_file: str = (
        os.getenv("LIBRARY_DB_FILE")
        or os.getenv("LIBRARY_DATA_FILE")
        or os.path.join(tempfile.gettempdir(), f"library_{os.getpid()}.db")
    )
    db_timeout: float = float(os.getenv("DB_TIMEOUT", "5"))

    # Circulation settings
    borrow_max_retries: int = int(os.getenv("BORROW_MAX_RETRIES", "3"))
    sweep_enabled: bool = _env_flag("SWEEP_ENABLED", "True")
    sweep_interval_seconds: float = float(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
