import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        market_data_provider: str,
        market_data_api_key: str,
        market_data_timeout_secs: float,
        scheduler_enabled: bool,
        recurring_run_at: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.market_data_provider = market_data_provider
        self.market_data_api_key = market_data_api_key
        self.market_data_timeout_secs = market_data_timeout_secs
        self.scheduler_enabled = scheduler_enabled
        self.recurring_run_at = recurring_run_at


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Rome")
    market_data_provider = os.getenv("LEDGER_MARKET_DATA_PROVIDER", "twelvedata")
    market_data_api_key = os.getenv("LEDGER_MARKET_DATA_API_KEY", "")
    market_data_timeout_secs = float(
        os.getenv("LEDGER_MARKET_DATA_TIMEOUT_SECS", "5")
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        market_data_provider=market_data_provider,
        market_data_api_key=market_data_api_key,
        market_data_timeout_secs=market_data_timeout_secs,
        scheduler_enabled=_env_flag("LEDGER_SCHEDULER_ENABLED", "1"),
        recurring_run_at=os.getenv("LEDGER_RECURRING_RUN_AT", "03:15"),
    )
