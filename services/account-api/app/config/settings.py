import os
from functools import lru_cache
from pydantic import BaseModel


class Settings(BaseModel):
    env: str = os.getenv("ENV", "dev")
    port: int = int(os.getenv("PORT", "8080"))
    log_level: str = os.getenv("LOG_LEVEL", "info")

    # Application URLs
    app_url: str = os.getenv("APP_URL", "http://localhost:5173")
    api_url: str = os.getenv("API_URL", "http://localhost:8080")

    # Session Configuration
    session_secret_key: str = os.getenv(
        "SESSION_SECRET_KEY", "dev-secret-change-in-production"
    )
    session_cookie_name: str = "account_session"
    session_cookie_secure: bool = os.getenv("ENV", "dev") != "dev"
    # Session expiry in seconds (default: 7 days = 604800 seconds)
    session_cookie_max_age: int = int(os.getenv("SESSION_COOKIE_MAX_AGE", "604800"))
    # Cookie domain for cross-subdomain auth
    # None means current domain only (for local dev)
    session_cookie_domain: str | None = os.getenv("SESSION_COOKIE_DOMAIN")

    # Database
    db_url: str | None = os.getenv("DB_URL")

    # AWS S3 Configuration (for user media)
    s3_media_bucket: str | None = os.getenv("S3_MEDIA_BUCKET")
    aws_region: str = os.getenv("AWS_REGION", "us-east-1")

    # Storage Configuration
    storage_backend: str = os.getenv("STORAGE_BACKEND", "local")
    local_media_path: str = os.getenv("LOCAL_MEDIA_PATH", "/app/media")

    # Account deletion jobs
    deletion_max_attempts: int = int(os.getenv("DELETION_MAX_ATTEMPTS", "5"))
    deletion_lease_seconds: int = int(os.getenv("DELETION_LEASE_SECONDS", "90"))
    deletion_query_page_size: int = int(os.getenv("DELETION_QUERY_PAGE_SIZE", "200"))
    # Must stay at or below the document store batch limit (500 writes)
    deletion_write_batch_size: int = int(
        os.getenv("DELETION_WRITE_BATCH_SIZE", "400")
    )
    deletion_worker_enabled: bool = (
        os.getenv("DELETION_WORKER_ENABLED", "false").lower() == "true"
    )
    deletion_worker_poll_seconds: float = float(
        os.getenv("DELETION_WORKER_POLL_SECONDS", "15")
    )
    # "delete" removes a direct conversation once the account leaves it,
    # "retain" keeps it (and the peer's messages) for the remaining member
    direct_conversation_policy: str = os.getenv(
        "DIRECT_CONVERSATION_POLICY", "delete"
    )

    # Per-call store timeouts and retry backoff
    store_operation_timeout_seconds: float = float(
        os.getenv("STORE_OPERATION_TIMEOUT_SECONDS", "6")
    )
    store_retry_attempts: int = int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
    store_retry_initial_backoff_seconds: float = float(
        os.getenv("STORE_RETRY_INITIAL_BACKOFF_SECONDS", "0.5")
    )
    store_retry_max_backoff_seconds: float = float(
        os.getenv("STORE_RETRY_MAX_BACKOFF_SECONDS", "4")
    )

    # Observability
    otel_exporter_otlp_endpoint: str | None = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")


@lru_cache
def get_settings() -> Settings:
    return Settings()
