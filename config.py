import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        cron_secret: Optional[str],
        notify_webhook_url: Optional[str],
        notify_timeout_secs: float,
        notify_max_workers: int,
        storage_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.cron_secret = cron_secret
        self.notify_webhook_url = notify_webhook_url
        self.notify_timeout_secs = notify_timeout_secs
        self.notify_max_workers = notify_max_workers
        self.storage_timeout_secs = storage_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("HOUSEHOLD_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "household.db"
    database_url = os.getenv("HOUSEHOLD_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("HOUSEHOLD_TIMEZONE", "Asia/Jerusalem")
    cron_secret = os.getenv("HOUSEHOLD_CRON_SECRET") or None
    notify_webhook_url = os.getenv("HOUSEHOLD_NOTIFY_WEBHOOK_URL") or None
    notify_timeout_secs = float(os.getenv("HOUSEHOLD_NOTIFY_TIMEOUT_SECS", "5"))
    notify_max_workers = int(os.getenv("HOUSEHOLD_NOTIFY_MAX_WORKERS", "8"))
    storage_timeout_secs = float(os.getenv("HOUSEHOLD_STORAGE_TIMEOUT_SECS", "10"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        cron_secret=cron_secret,
        notify_webhook_url=notify_webhook_url,
        notify_timeout_secs=notify_timeout_secs,
        notify_max_workers=max(1, notify_max_workers),
        storage_timeout_secs=storage_timeout_secs,
    )
