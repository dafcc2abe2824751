import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        auth_secret: str,
        token_max_age_hours: int,
        ledger_max_retries: int,
        reconcile_interval_minutes: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.auth_secret = auth_secret
        self.token_max_age_hours = token_max_age_hours
        self.ledger_max_retries = ledger_max_retries
        self.reconcile_interval_minutes = reconcile_interval_minutes
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("BUDGET_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "budget.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("BUDGET_TIMEZONE", "Europe/Berlin")
    auth_secret = os.getenv(
        "BUDGET_AUTH_SECRET",
        "3f0c2d9a7be14e61a0c58d4f6e92b7d1c4a8e0f35b6d7c29e1f4a8b03c5d6e7f",
    )
    token_max_age_hours = int(os.getenv("BUDGET_TOKEN_MAX_AGE_HOURS", "24"))
    ledger_max_retries = int(os.getenv("BUDGET_LEDGER_MAX_RETRIES", "3"))
    reconcile_interval_minutes = int(
        os.getenv("BUDGET_RECONCILE_INTERVAL_MINUTES", "60")
    )
    log_level = os.getenv("BUDGET_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        auth_secret=auth_secret,
        token_max_age_hours=token_max_age_hours,
        ledger_max_retries=ledger_max_retries,
        reconcile_interval_minutes=reconcile_interval_minutes,
        log_level=log_level,
    )
