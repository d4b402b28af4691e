"""Application configuration."""

import secrets
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = "development"
    debug: bool = False

    # Session Security
    session_secret_key: str = ""
    session_cookie_name: str = "rowbridge_session"
    session_max_age: int = 3600  # 1 hour
    session_idle_timeout: int = 1800  # 30 minutes

    # CORS
    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Datastore
    datastore_url: str = "https://baserow.example.com"
    database_id: int = 0
    registry_table_id: int = 0
    template_table_id: Optional[int] = None  # Field names offered as mapping targets
    api_token: str = ""
    datastore_username: str = ""
    datastore_password: str = ""
    relay_url: Optional[str] = None  # e.g. http://localhost:3001, routes via /api/baserow

    # Registry table field names
    registry_first_name_field: str = "Vorname"
    registry_last_name_field: str = "Nachname"
    registry_email_field: str = "EMAIL"
    registry_company_field: str = "Company"
    registry_file_field: str = "Datei"
    registry_file_name_field: str = "Dateiname"
    registry_table_id_field: str = "CreatedTableId"

    # HTTP timeouts (seconds)
    http_timeout: float = 30.0
    http_upload_timeout: float = 120.0
    http_download_timeout: float = 300.0

    # Credentials
    token_ttl_seconds: int = 3600
    token_refresh_buffer_seconds: int = 300  # Refresh 5 minutes before expiry
    token_min_refresh_interval: float = 5.0

    # Import engine
    batch_size: int = 200  # Datastore batch API limit
    parallel_batches: int = 6
    cohort_pause_ms: int = 100
    large_file_threshold: int = 1000  # Data rows above which parallel-bulk is used
    bulk_failure_limit: int = 3
    individual_concurrency: int = 150
    token_refresh_every_cohorts: int = 10
    failure_throttle_ratio: float = 0.1
    failure_throttle_ms: int = 25

    # Verification
    verification_page_size: int = 1000
    verification_max_pages: int = 100
    verification_settle_seconds: float = 0.5

    # Transient file storage
    session_storage_quota_bytes: int = 5 * 1024 * 1024
    large_file_bytes: int = 10 * 1024 * 1024
    optimize_min_lines: int = 2000
    optimize_head_lines: int = 1000
    optimize_tail_lines: int = 100
    header_only_lines: int = 5
    recovery_min_ratio: float = 0.9
    local_cache_dir: str = "./data/file_cache"
    local_cache_max_age_seconds: int = 86400  # 24 hours

    # Import Limits
    import_max_file_size: int = 524288000  # 500MB
    max_import_jobs: int = 1000  # Max jobs in memory; oldest evicted when exceeded
    import_job_ttl_seconds: int = 86400  # Remove jobs older than 24h

    # Logging
    log_level: str = "INFO"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Generate secret key if not provided (for development only)
        if not self.session_secret_key:
            if self.environment == "production":
                raise ValueError(
                    "SESSION_SECRET_KEY must be set in production environment"
                )
            self.session_secret_key = secrets.token_urlsafe(32)
            import warnings

            warnings.warn(
                "SESSION_SECRET_KEY not set, using generated key. "
                "Set SESSION_SECRET_KEY in production!",
                UserWarning,
            )

    @property
    def api_base_url(self) -> str:
        """Base URL for datastore REST calls, direct or through the relay."""
        if self.relay_url:
            return f"{self.relay_url.rstrip('/')}/api/baserow"
        return f"{self.datastore_url.rstrip('/')}/api"


settings = Settings()
