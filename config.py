import os
from functools import lru_cache
from pathlib import Path


DEFAULT_CATEGORY_MAP = Path(__file__).resolve().parent / "category_map.json"


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        provider_base_url: str,
        provider_client_id: str,
        provider_secret: str,
        provider_timeout_secs: float,
        sync_page_size: int,
        sync_not_ready_backoff_secs: float,
        sync_max_not_ready_retries: int,
        sync_transient_backoff_secs: float,
        sync_max_transient_retries: int,
        sync_interval_minutes: int,
        category_map_path: Path,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.provider_base_url = provider_base_url
        self.provider_client_id = provider_client_id
        self.provider_secret = provider_secret
        self.provider_timeout_secs = provider_timeout_secs
        self.sync_page_size = sync_page_size
        self.sync_not_ready_backoff_secs = sync_not_ready_backoff_secs
        self.sync_max_not_ready_retries = sync_max_not_ready_retries
        self.sync_transient_backoff_secs = sync_transient_backoff_secs
        self.sync_max_transient_retries = sync_max_transient_retries
        self.sync_interval_minutes = sync_interval_minutes
        self.category_map_path = category_map_path


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "UTC")
    provider_base_url = os.getenv(
        "BUDGET_PROVIDER_BASE_URL", "https://sandbox.plaid.com"
    ).rstrip("/")
    provider_client_id = os.getenv("BUDGET_PROVIDER_CLIENT_ID", "")
    provider_secret = os.getenv("BUDGET_PROVIDER_SECRET", "")
    provider_timeout_secs = float(os.getenv("BUDGET_PROVIDER_TIMEOUT_SECS", "10"))
    sync_page_size = int(os.getenv("BUDGET_SYNC_PAGE_SIZE", "500"))
    sync_not_ready_backoff_secs = float(
        os.getenv("BUDGET_SYNC_NOT_READY_BACKOFF_SECS", "2")
    )
    sync_max_not_ready_retries = int(
        os.getenv("BUDGET_SYNC_MAX_NOT_READY_RETRIES", "10")
    )
    sync_transient_backoff_secs = float(
        os.getenv("BUDGET_SYNC_TRANSIENT_BACKOFF_SECS", "2")
    )
    sync_max_transient_retries = int(
        os.getenv("BUDGET_SYNC_MAX_TRANSIENT_RETRIES", "3")
    )
    sync_interval_minutes = int(os.getenv("BUDGET_SYNC_INTERVAL_MINUTES", "0"))
    category_map_path = Path(
        os.getenv("BUDGET_CATEGORY_MAP_PATH", str(DEFAULT_CATEGORY_MAP))
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        provider_base_url=provider_base_url,
        provider_client_id=provider_client_id,
        provider_secret=provider_secret,
        provider_timeout_secs=provider_timeout_secs,
        sync_page_size=sync_page_size,
        sync_not_ready_backoff_secs=sync_not_ready_backoff_secs,
        sync_max_not_ready_retries=sync_max_not_ready_retries,
        sync_transient_backoff_secs=sync_transient_backoff_secs,
        sync_max_transient_retries=sync_max_transient_retries,
        sync_interval_minutes=sync_interval_minutes,
        category_map_path=category_map_path,
    )
