# inbox/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "worker"] = "all"
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000

    # Storage backend
    # "postgres" - asyncpg stores with advisory locks (multi-instance safe)
    # "memory"   - in-process stores keyed by asyncio locks (single instance / dev only)
    store_backend: Literal["postgres", "memory"] = "postgres"

    # Security
    tenant_encryption_key: str | None = None  # Fernet key for channel access tokens stored in DB
    require_webhook_validation: bool = True
    metrics_token: str | None = None  # Bearer token for /metrics (if not set, /metrics is disabled)
    allowed_origins: list[str] = ["*"]

    # Provider APIs
    meta_graph_api_version: str = "v18.0"
    tiktok_api_base: str = "https://open.tiktokapis.com/v2"
    outbound_timeout_seconds: float = 30.0  # Hard timeout per outbound send
    profile_fetch_timeout_seconds: float = 10.0  # Best-effort profile lookups

    # Job queue (ai_response / send_message rows)
    job_priority: int = 1
    job_max_attempts: int = 3

    # Send worker (consumes send_message jobs)
    job_worker_enabled: bool = False          # Master switch, enable explicitly in worker service
    job_worker_poll_interval: float = 1.0     # Seconds between polls when idle
    job_worker_batch_size: int = 5            # Jobs claimed per poll cycle
    job_worker_base_retry_delay: float = 5.0  # Base delay for exponential backoff (seconds)
    job_worker_stale_timeout: int = 300       # Reset jobs stuck 'processing' for this long (seconds)

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("tenant_encryption_key", self.tenant_encryption_key),
            ("database_url", self.database_url),
        ]

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if not s.require_webhook_validation:
        warnings.append("require_webhook_validation=False: webhook signatures are NOT checked.")

    if s.store_backend == "memory":
        warnings.append(
            "store_backend=memory: leads/conversations live in process memory and are lost on restart; "
            "run a single instance only."
        )

    if s.is_production and s.store_backend == "memory":
        warnings.append("prod: store_backend=memory is not safe across replicas.")

    if not s.tenant_encryption_key and s.store_backend == "postgres":
        warnings.append("tenant_encryption_key is not set (channel access tokens cannot be decrypted).")

    if s.outbound_timeout_seconds > 60:
        warnings.append(
            f"outbound_timeout_seconds={s.outbound_timeout_seconds} is high; provider sends may block the worker."
        )

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
