import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        migration_batch_size: int,
        recurring_prefix: str,
        ai_base_url: str,
        ai_timeout_secs: float,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.migration_batch_size = migration_batch_size
        self.recurring_prefix = recurring_prefix
        self.ai_base_url = ai_base_url
        self.ai_timeout_secs = ai_timeout_secs
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    migration_batch_size = int(os.getenv("LEDGER_MIGRATION_BATCH_SIZE", "100"))
    recurring_prefix = os.getenv("LEDGER_RECURRING_PREFIX", "(Recurring) ")
    ai_base_url = os.getenv("LEDGER_AI_BASE_URL", "").rstrip("/")
    ai_timeout_secs = float(os.getenv("LEDGER_AI_TIMEOUT_SECS", "20"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        migration_batch_size=migration_batch_size,
        recurring_prefix=recurring_prefix,
        ai_base_url=ai_base_url,
        ai_timeout_secs=ai_timeout_secs,
        log_level=log_level,
    )
