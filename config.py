import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        ledger_timeout_secs: float,
        budget_retry_attempts: int,
        budget_refresh_minutes: int,
        alert_webhook_url: Optional[str],
        alert_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.ledger_timeout_secs = ledger_timeout_secs
        self.budget_retry_attempts = budget_retry_attempts
        self.budget_refresh_minutes = budget_refresh_minutes
        self.alert_webhook_url = alert_webhook_url
        self.alert_timeout_secs = alert_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "Europe/Berlin")
    ledger_timeout_secs = float(os.getenv("FINANCE_LEDGER_TIMEOUT_SECS", "5"))
    budget_retry_attempts = int(os.getenv("FINANCE_BUDGET_RETRY_ATTEMPTS", "3"))
    budget_refresh_minutes = int(os.getenv("FINANCE_BUDGET_REFRESH_MINUTES", "15"))
    alert_webhook_url = os.getenv("FINANCE_ALERT_WEBHOOK_URL") or None
    alert_timeout_secs = float(os.getenv("FINANCE_ALERT_TIMEOUT_SECS", "5"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        ledger_timeout_secs=ledger_timeout_secs,
        budget_retry_attempts=max(1, budget_retry_attempts),
        budget_refresh_minutes=max(1, budget_refresh_minutes),
        alert_webhook_url=alert_webhook_url,
        alert_timeout_secs=alert_timeout_secs,
    )
