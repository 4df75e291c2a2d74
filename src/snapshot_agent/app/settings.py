"""Application settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "snapshot-agent"
    db_vendor: Literal["hana", "postgres"] = "hana"
    db_host: str = "127.0.0.1"
    db_port: int = Field(default=30015, ge=1, le=65535)
    db_name: str = ""
    # Where PostgreSQL backup_label / tablespace_map files are written after a thaw.
    pg_label_dir: str = "backup_labels"
    task_timeout_s: int = Field(default=600, gt=0)
    settle_interval_s: float = Field(default=60.0, ge=0.0)
    reconcile_interval_s: float = Field(default=30.0, gt=0.0)
    max_workers: int = Field(default=4, ge=1)
    api_prefix: str = "/rest/v1"
    listen_host: str = "0.0.0.0"
    listen_port: int = Field(default=9000, ge=1, le=65535)
    tls_dir: str = "etc"
    tls_cert_file: str = "server.crt"
    tls_key_file: str = "server.key"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="SNAPSHOT_AGENT_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_cert_path(self) -> Path:
        return Path(self.tls_dir) / self.tls_cert_file

    def resolved_key_path(self) -> Path:
        return Path(self.tls_dir) / self.tls_key_file

    def agent_description(self) -> str:
        return "SAP HANA Agent" if self.db_vendor == "hana" else "PostgreSQL Agent"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
