import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        profile: str,
        remote_url: Optional[str],
        remote_auth_token: Optional[str],
        remote_timeout_secs: float,
        day_watch_interval_secs: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.profile = profile
        self.remote_url = remote_url
        self.remote_auth_token = remote_auth_token
        self.remote_timeout_secs = remote_timeout_secs
        self.day_watch_interval_secs = day_watch_interval_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGETS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budgets.db"
    database_url = os.getenv("BUDGETS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGETS_TIMEZONE", "America/Sao_Paulo")
    profile = os.getenv("BUDGETS_PROFILE", "default").strip() or "default"
    remote_url = os.getenv("BUDGETS_REMOTE_URL") or None
    remote_auth_token = os.getenv("BUDGETS_REMOTE_AUTH_TOKEN") or None
    remote_timeout_secs = float(os.getenv("BUDGETS_REMOTE_TIMEOUT_SECS", "10"))
    day_watch_interval_secs = int(os.getenv("BUDGETS_DAY_WATCH_INTERVAL_SECS", "60"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        profile=profile,
        remote_url=remote_url.rstrip("/") if remote_url else None,
        remote_auth_token=remote_auth_token,
        remote_timeout_secs=remote_timeout_secs,
        day_watch_interval_secs=day_watch_interval_secs,
    )
