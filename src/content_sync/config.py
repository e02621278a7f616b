"""Configuration management for the Content Sync engine."""

import os
import secrets
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, cast

from dotenv import load_dotenv
import structlog


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Settings:
    """Engine settings loaded from environment variables."""

    app_env: str
    log_level: str
    database_url: str
    db_pool_min: int
    db_pool_max: int
    redis_url: str
    # AI enrichment
    openai_api_key: Optional[str]
    openai_base_url: Optional[str]
    embedding_model: str
    summary_model: str
    # Credential envelope
    credential_encryption_key: str
    # Webhook ingress
    slack_signing_secret: Optional[str]
    github_webhook_secret: Optional[str]
    github_client_id: Optional[str]
    github_client_secret: Optional[str]
    # Attachment storage
    storage_bucket: Optional[str]
    storage_region: str
    storage_endpoint_url: Optional[str]
    storage_access_key_id: Optional[str]
    storage_secret_access_key: Optional[str]
    # Sync run budgets
    sync_max_pages: int
    sync_max_seconds: float
    adapter_timeout_seconds: float
    sync_fanout_concurrency: int
    sync_max_concurrent_sources: int
    # Relationship detection / clustering
    similarity_threshold: float
    cluster_threshold: float

    @property
    def storage_configured(self) -> bool:
        """Whether attachment storage has enough settings to be used."""
        return bool(self.storage_bucket)


def load_settings() -> Settings:
    """
    Load settings from environment variables.

    Returns:
        Settings instance with all configuration values

    Raises:
        ValueError: If required environment variables are missing or invalid
    """
    load_dotenv()

    app_env = os.getenv("APP_ENV", "development").strip().lower()

    try:
        db_pool_min = int(os.getenv("DB_POOL_MIN", "2"))
        db_pool_max = int(os.getenv("DB_POOL_MAX", "10"))
    except ValueError as exc:
        raise ValueError(
            "DB_POOL_MIN and DB_POOL_MAX must be valid integers. Check your .env file."
        ) from exc
    if db_pool_min < 1 or db_pool_max < db_pool_min:
        raise ValueError(
            "DB_POOL_MIN must be >= 1 and DB_POOL_MAX must be >= DB_POOL_MIN."
        )

    try:
        sync_max_pages = int(os.getenv("SYNC_MAX_PAGES", "20"))
        sync_fanout_concurrency = int(os.getenv("SYNC_FANOUT_CONCURRENCY", "10"))
        sync_max_concurrent_sources = int(
            os.getenv("SYNC_MAX_CONCURRENT_SOURCES", "3")
        )
    except ValueError as exc:
        raise ValueError(
            "SYNC_MAX_PAGES, SYNC_FANOUT_CONCURRENCY, and SYNC_MAX_CONCURRENT_SOURCES "
            "must be valid integers. Check your .env file."
        ) from exc
    if sync_max_pages < 1:
        raise ValueError("SYNC_MAX_PAGES must be >= 1.")
    if sync_fanout_concurrency < 1 or sync_max_concurrent_sources < 1:
        raise ValueError(
            "SYNC_FANOUT_CONCURRENCY and SYNC_MAX_CONCURRENT_SOURCES must be >= 1."
        )

    try:
        sync_max_seconds = float(os.getenv("SYNC_MAX_SECONDS", "300"))
        adapter_timeout_seconds = float(os.getenv("ADAPTER_TIMEOUT_SECONDS", "30"))
    except ValueError as exc:
        raise ValueError(
            "SYNC_MAX_SECONDS and ADAPTER_TIMEOUT_SECONDS must be numeric."
        ) from exc

    try:
        similarity_threshold = float(os.getenv("SIMILARITY_THRESHOLD", "0.8"))
    except ValueError:
        similarity_threshold = 0.8

    try:
        cluster_threshold = float(os.getenv("CLUSTER_THRESHOLD", "0.7"))
    except ValueError:
        cluster_threshold = 0.7

    for name, value in (
        ("SIMILARITY_THRESHOLD", similarity_threshold),
        ("CLUSTER_THRESHOLD", cluster_threshold),
    ):
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"{name} must be between 0.0 and 1.0.")

    required = [
        "DATABASE_URL",
        "REDIS_URL",
    ]
    values = {key: os.getenv(key) for key in required}
    missing = [key for key, value in values.items() if not value]
    if missing:
        missing_list = ", ".join(sorted(missing))
        raise ValueError(
            "Missing required environment variables: "
            f"{missing_list}. Copy .env.example to .env and fill values."
        )

    database_url = cast(str, values["DATABASE_URL"])
    redis_url = cast(str, values["REDIS_URL"])

    encryption_key = os.getenv("CREDENTIAL_ENCRYPTION_KEY")
    if encryption_key:
        try:
            key_bytes = bytes.fromhex(encryption_key)
        except ValueError as exc:
            raise ValueError("CREDENTIAL_ENCRYPTION_KEY must be hex-encoded.") from exc
        if len(key_bytes) != 32:
            raise ValueError(
                "CREDENTIAL_ENCRYPTION_KEY must be 64 hex chars (32 bytes)."
            )
        credential_encryption_key = encryption_key
    elif app_env in {"development", "dev", "test", "local"}:
        logger.warning("credential_encryption_key_autogenerated", env=app_env)
        credential_encryption_key = secrets.token_hex(32)
    else:
        raise ValueError(
            "CREDENTIAL_ENCRYPTION_KEY must be set for non-development environments."
        )

    return Settings(
        app_env=app_env,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        database_url=database_url,
        db_pool_min=db_pool_min,
        db_pool_max=db_pool_max,
        redis_url=redis_url,
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        openai_base_url=os.getenv("OPENAI_BASE_URL"),
        embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
        summary_model=os.getenv("SUMMARY_MODEL", "gpt-4o-mini"),
        credential_encryption_key=credential_encryption_key,
        slack_signing_secret=os.getenv("SLACK_SIGNING_SECRET"),
        github_webhook_secret=os.getenv("GITHUB_WEBHOOK_SECRET"),
        github_client_id=os.getenv("GITHUB_CLIENT_ID"),
        github_client_secret=os.getenv("GITHUB_CLIENT_SECRET"),
        storage_bucket=os.getenv("STORAGE_BUCKET"),
        storage_region=os.getenv("STORAGE_REGION", "us-east-1"),
        storage_endpoint_url=os.getenv("STORAGE_ENDPOINT_URL"),
        storage_access_key_id=os.getenv("STORAGE_ACCESS_KEY_ID"),
        storage_secret_access_key=os.getenv("STORAGE_SECRET_ACCESS_KEY"),
        sync_max_pages=sync_max_pages,
        sync_max_seconds=sync_max_seconds,
        adapter_timeout_seconds=adapter_timeout_seconds,
        sync_fanout_concurrency=sync_fanout_concurrency,
        sync_max_concurrent_sources=sync_max_concurrent_sources,
        similarity_threshold=similarity_threshold,
        cluster_threshold=cluster_threshold,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once
    from environment variables. Only entrypoints call this; library
    code receives Settings through its constructor.

    Returns:
        Cached Settings instance
    """
    return load_settings()
