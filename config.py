import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        budget_warn_percent: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.budget_warn_percent = budget_warn_percent


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _default_database_url() -> str:
    data_dir = _ensure_data_dir()
    return f"sqlite:///{data_dir / 'finance.db'}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL") or _default_database_url()
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    budget_warn_percent = float(os.getenv("LEDGER_BUDGET_WARN_PERCENT", "90"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        budget_warn_percent=budget_warn_percent,
    )
