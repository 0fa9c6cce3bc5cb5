"""Application settings."""

from functools import lru_cache
import logging
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "run-orchestrator"
    app_env: str = "dev"
    app_debug: bool = False
    log_level: str = "INFO"
    database_url: str = ""
    worker_service_url: str = "http://localhost:8080"
    worker_service_ws_url: str = ""
    readiness_timeout_s: float = Field(default=30.0, gt=0.0)
    scrape_timeout_s: float = Field(default=120.0, gt=0.0)
    interpretation_timeout_s: float = Field(default=600.0, gt=0.0)
    max_run_retries: int = Field(default=3, ge=1)
    webhook_retry_attempts: int = Field(default=3, ge=1, le=10)
    webhook_retry_delay_s: float = Field(default=5.0, ge=0.0)
    webhook_timeout_s: float = Field(default=30.0, gt=0.0)
    integration_retry_delay_s: float = Field(default=5.0, ge=0.0)
    integration_visibility_timeout_s: float = Field(default=60.0, gt=0.0)
    integration_max_queue_size: int = Field(default=1000, ge=1)
    integration_drain_timeout_s: float = Field(default=65.0, gt=0.0)
    run_wait_timeout_s: float = Field(default=10800.0, gt=0.0)
    run_poll_interval_s: float = Field(default=2.0, gt=0.0)
    object_storage_dir: str = "var/run-artifacts"
    object_storage_base_url: str = "http://localhost:8000/artifacts"
    google_client_id: str = ""
    google_client_secret: str = ""
    airtable_client_id: str = ""

    model_config = SettingsConfigDict(
        env_prefix="RUN_ORCHESTRATOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("ORCHESTRATOR_DATABASE_URL", "")

    def resolved_worker_ws_url(self) -> str:
        if self.worker_service_ws_url:
            return self.worker_service_ws_url.rstrip("/")
        base = self.worker_service_url.rstrip("/")
        if base.startswith("https://"):
            return "wss://" + base[len("https://") :]
        if base.startswith("http://"):
            return "ws://" + base[len("http://") :]
        return base


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
