import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        storage_timeout_secs: float,
        lock_timeout_secs: float,
        default_alert_threshold: int,
        sweep_hour: int,
        sweep_minute: int,
        sweep_safety_hours: int,
        page_size_max: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.storage_timeout_secs = storage_timeout_secs
        self.lock_timeout_secs = lock_timeout_secs
        self.default_alert_threshold = default_alert_threshold
        self.sweep_hour = sweep_hour
        self.sweep_minute = sweep_minute
        self.sweep_safety_hours = sweep_safety_hours
        self.page_size_max = page_size_max


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGETS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("BUDGETS_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "budgets.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("BUDGETS_TIMEZONE", "UTC")
    storage_timeout_secs = float(os.getenv("BUDGETS_STORAGE_TIMEOUT_SECS", "5"))
    lock_timeout_secs = float(os.getenv("BUDGETS_LOCK_TIMEOUT_SECS", "10"))
    default_alert_threshold = int(os.getenv("BUDGETS_DEFAULT_ALERT_THRESHOLD", "80"))
    sweep_hour = int(os.getenv("BUDGETS_SWEEP_HOUR", "9"))
    sweep_minute = int(os.getenv("BUDGETS_SWEEP_MINUTE", "0"))
    sweep_safety_hours = int(os.getenv("BUDGETS_SWEEP_SAFETY_HOURS", "6"))
    page_size_max = int(os.getenv("BUDGETS_PAGE_SIZE_MAX", "200"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        storage_timeout_secs=storage_timeout_secs,
        lock_timeout_secs=lock_timeout_secs,
        default_alert_threshold=default_alert_threshold,
        sweep_hour=sweep_hour,
        sweep_minute=sweep_minute,
        sweep_safety_hours=sweep_safety_hours,
        page_size_max=page_size_max,
    )
