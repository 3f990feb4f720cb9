import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        token_secret: str,
        access_token_ttl_secs: int,
        refresh_token_ttl_secs: int,
        allowed_origins: list[str],
        log_level: str,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.token_secret = token_secret
        self.access_token_ttl_secs = access_token_ttl_secs
        self.refresh_token_ttl_secs = refresh_token_ttl_secs
        self.allowed_origins = allowed_origins
        self.log_level = log_level
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _split_origins(raw: str) -> list[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINANCE_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "finance.db"
        database_url = f"sqlite+aiosqlite:///{default_db}"
    token_secret = os.getenv(
        "FINANCE_TOKEN_SECRET",
        "3f0c9a51be7d42e8a1c6d0b5f29e7a84c1d3b6e05f8a2c4d7e9b1a3c5d7f9e0b",
    )
    access_token_ttl_secs = int(os.getenv("FINANCE_ACCESS_TOKEN_TTL_SECS", "900"))
    refresh_token_ttl_secs = int(
        os.getenv("FINANCE_REFRESH_TOKEN_TTL_SECS", str(7 * 24 * 3600))
    )
    allowed_origins = _split_origins(
        os.getenv("FINANCE_ALLOWED_ORIGINS", "http://localhost:5173")
    )
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    scheduler_enabled = os.getenv("FINANCE_SCHEDULER_ENABLED", "1") in {"1", "true"}
    return Settings(
        database_url=database_url,
        token_secret=token_secret,
        access_token_ttl_secs=access_token_ttl_secs,
        refresh_token_ttl_secs=refresh_token_ttl_secs,
        allowed_origins=allowed_origins,
        log_level=log_level,
        scheduler_enabled=scheduler_enabled,
    )
