"""BizArchive - Central Configuration via Pydantic Settings."""

from typing import Any, Dict, List, Optional

from pydantic_settings import BaseSettings

GIB = 1024 * 1024 * 1024

# Fields that must be non-empty before an export run can start.
REQUIRED_FIELDS = (
    "tenant_name",
    "oauth_token_url",
    "oauth_client_id",
    "oauth_client_secret",
    "oauth_scope",
    "oauth_resource_urn",
    "s3_data_bucket",
    "s3_checkpoint_bucket",
    "temp_local_dir",
)

SECRET_FIELDS = ("oauth_client_secret",)


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Dynatrace ──
    tenant_name: str = ""
    oauth_token_url: str = ""
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    oauth_scope: str = ""
    oauth_resource_urn: str = ""

    # ── Query protocol ──
    max_polls: int = 100
    request_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 1.0
    bizevents_page_size: int = 1000

    # ── Storage ──
    s3_data_bucket: str = ""
    s3_checkpoint_bucket: str = ""
    temp_local_dir: str = ""
    max_archive_bytes: int = GIB
    use_localstack: bool = False
    s3_endpoint: Optional[str] = None
    s3_force_path_style: bool = False
    aws_region: str = "us-east-1"
    assume_role_archive_arn: Optional[str] = None
    assume_role_checkpoint_arn: Optional[str] = None
    verify_storage: bool = False

    # ── Checkpoints ──
    checkpoint_backend: str = "s3"  # s3 | sql
    checkpoint_database_url: str = "sqlite:///./bizarchive.db"
    initial_lookback_hours: int = 24
    backfill_from_epoch: bool = False

    # ── Orchestration ──
    max_parallel_executions: int = 4
    max_task_duration_hours: float = 6
    task_wait_interval_seconds: float = 300
    shutdown_grace_seconds: float = 60
    time_wait_after_upload_secs: float = 60
    integration_codes: List[str] = []

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = False
    schedule_minute: int = 5

    def missing_required(self) -> List[str]:
        """Return the names of required settings that are still empty."""
        return [name for name in REQUIRED_FIELDS if not getattr(self, name)]

    def redacted(self) -> Dict[str, Any]:
        """Settings as a dict that is safe to log."""
        data = self.model_dump()
        for name in SECRET_FIELDS:
            if data.get(name):
                data[name] = "****"
        return data

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
