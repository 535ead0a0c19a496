"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_MIN_LOG_TAIL_BYTES = 64 * 1024


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=3000, alias="PORT")
    task_key: str = Field(default="dev-task-key", alias="TASK_KEY")
    log_dir: Path = Field(default=Path("/mnt/data/logs"), alias="LOG_DIR")
    task_dir: Path = Field(default=Path("/mnt/data/tasks"), alias="TASK_DIR")
    default_reply: str = Field(default="Здравствуйте!", alias="DEFAULT_REPLY")
    default_account: str = Field(default="hr-main", alias="DEFAULT_ACCOUNT")
    only_first_system: bool = Field(default=True, alias="ONLY_FIRST_SYSTEM")
    # Empty secret disables the webhook check.
    webhook_secret: str = Field(default="", alias="WEBHOOK_SECRET")
    log_scan_files: int = Field(default=2, alias="LOG_SCAN_FILES")
    log_tail_bytes: int = Field(default=512 * 1024, alias="LOG_TAIL_BYTES")
    visibility_timeout_ms: int = Field(default=180_000, ge=0, alias="VISIBILITY_TIMEOUT_MS")
    heartbeat_grace_ms: int = Field(default=60_000, ge=0, alias="HEARTBEAT_GRACE_MS")
    claim_candidates: int = Field(default=3, alias="CLAIM_CANDIDATES")
    reaper_interval_seconds: float = Field(default=30.0, gt=0, alias="REAPER_INTERVAL_SECONDS")
    candidate_pattern: str = Field(
        default="кандидат|отклик|откликнулся",
        alias="CANDIDATE_PATTERN",
    )
    job_flow_id: str = Field(default="job", alias="JOB_FLOW_ID")
    dedup_retention_days: int = Field(default=2, ge=1, alias="DEDUP_RETENTION_DAYS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("log_scan_files", "claim_candidates")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(1, value)

    @field_validator("log_tail_bytes")
    @classmethod
    def _tail_floor(cls, value: int) -> int:
        return max(_MIN_LOG_TAIL_BYTES, value)

    @property
    def stale_after_ms(self) -> int:
        """Lease age after which a leased task is handed back to the queue."""

        return self.visibility_timeout_ms + self.heartbeat_grace_ms


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()
