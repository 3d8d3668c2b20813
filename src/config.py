from __future__ import annotations

from functools import cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ARTIFACTS_DIR = PROJECT_ROOT / "artifacts"
DB_FILE = ARTIFACTS_DIR / "salvage_ledger.db"


class AppSettings(BaseSettings):
    database_url: str = f"sqlite:///{DB_FILE}"

    nmvtis_provider: Literal["aamva_svrs", "auto_data_direct"] = "aamva_svrs"
    nmvtis_api_key: str | None = None
    nmvtis_base_url: str = "https://api.add123.com"
    nmvtis_timeout_seconds: float = 10.0

    reporting_entity_id: str = ""
    entity_name: str = ""
    entity_address: str = ""
    entity_city: str = ""
    entity_state: str = ""
    entity_zip: str = ""
    entity_phone: str = ""

    purchase_report_delay_hours: int = 40
    report_poll_interval_minutes: int = 30
    report_poll_jitter_seconds: float = 60.0
    report_poll_max_backoff_minutes: int = 240
    report_max_attempts: int = 5
    report_retry_backoff_minutes: int = 30
    report_claim_timeout_seconds: int = 300

    ledger_max_write_retries: int = 3

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@cache
def config() -> AppSettings:
    return AppSettings()
