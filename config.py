import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        token_max_age_days: int,
        cookie_secure: bool,
        frontend_url: str,
        enable_scheduler: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_max_age_days = token_max_age_days
        self.cookie_secure = cookie_secure
        self.frontend_url = frontend_url
        self.enable_scheduler = enable_scheduler


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "UTC")
    secret_key = os.getenv(
        "FINANCE_SECRET_KEY",
        "3f9c2d7b51e04a8e9a6c0b1f2e7d4c5a8b9e0f1a2b3c4d5e6f708192a3b4c5d6",
    )
    token_max_age_days = int(os.getenv("FINANCE_TOKEN_MAX_AGE_DAYS", "7"))
    cookie_secure = _env_flag("FINANCE_COOKIE_SECURE", "false")
    frontend_url = os.getenv("FINANCE_FRONTEND_URL", "http://localhost:3000")
    enable_scheduler = _env_flag("FINANCE_ENABLE_SCHEDULER", "true")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        token_max_age_days=token_max_age_days,
        cookie_secure=cookie_secure,
        frontend_url=frontend_url,
        enable_scheduler=enable_scheduler,
    )
