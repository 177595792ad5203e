import os
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API
    app_name: str = os.getenv("APP_NAME", "Library Management API")
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: List[str] = field(
        default_factory=lambda: [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    )
    debug: bool = _env_flag("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Storage
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./library.db")
    storage_backend: str = os.getenv("STORAGE_BACKEND", "database")  # database | memory

    # Circulation
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))

    # Admin login
    admin_username: str = os.getenv("ADMIN_USERNAME", "admin")
    admin_password: str = os.getenv("ADMIN_PASSWORD", "change-me")

    # Open Library cover lookup
    cover_lookup_enabled: bool = _env_flag("COVER_LOOKUP_ENABLED")
    openlibrary_timeout: float = float(os.getenv("OPENLIBRARY_TIMEOUT", "10"))


settings = Settings()
