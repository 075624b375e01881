"""Relay configuration with CLI > env var > defaults precedence."""

import os
from dataclasses import dataclass, field, fields

from . import __version__

MB = 1000 * 1000
MIB = 1024 * 1024
GB = 1000 * MB

DEFAULT_USER_AGENT = f"archive-relay/{__version__} (+https://archive.org/services/docs/api/)"


def _env_str(name: str, default: str) -> str:
    return os.getenv(name) or default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass
class RelayConfig:
    """Configuration for a relay process.

    Every field left at None is filled from its RELAY_* environment variable,
    falling back to the default noted beside it.
    """

    # Server
    host: str | None = None                        # RELAY_HOST, 0.0.0.0
    port: int | None = None                        # RELAY_PORT, 3000
    log_dir: str | None = None                     # RELAY_LOG_DIR, no file logs
    cors_origins: list[str] = field(default_factory=list)  # RELAY_CORS_ORIGINS, "*"

    # Remote storage service
    s3_endpoint: str | None = None                 # RELAY_S3_ENDPOINT
    metadata_endpoint: str | None = None           # RELAY_METADATA_ENDPOINT
    search_endpoint: str | None = None             # RELAY_SEARCH_ENDPOINT
    public_base_url: str | None = None             # RELAY_PUBLIC_BASE_URL
    user_agent: str | None = None                  # RELAY_USER_AGENT
    media_type: str | None = None                  # RELAY_MEDIA_TYPE, movies

    # Transfer
    max_source_bytes: int | None = None            # RELAY_MAX_SOURCE_BYTES, 2 GB
    chunk_size: int | None = None                  # RELAY_CHUNK_SIZE, 5 MB
    chunked_threshold: int | None = None           # RELAY_CHUNKED_THRESHOLD, 64 MiB
    io_chunk_size: int = 256 * 1024
    spool_max_memory: int = 64 * MIB
    metadata_timeout: float = 10.0
    transfer_idle_timeout: float = 60.0

    # Retry and finalize
    max_retries: int | None = None                 # RELAY_MAX_RETRIES, 3
    retry_delay: float | None = None               # RELAY_RETRY_DELAY, 2s
    retry_jitter: float = 0.25
    finalize_grace: float | None = None            # RELAY_FINALIZE_GRACE, 5s

    # Bookkeeping
    session_idle_timeout: float | None = None      # RELAY_SESSION_IDLE_TIMEOUT, 24h
    session_sweep_interval: float = 3600.0
    job_retention: float | None = None             # RELAY_JOB_RETENTION, 1h
    job_sweep_interval: float = 300.0
    subscriber_queue_size: int = 256
    cancel_on_disconnect: bool = False

    def __post_init__(self):
        # Apply env var defaults before CLI overrides
        if self.host is None:
            self.host = _env_str("RELAY_HOST", "0.0.0.0")
        if self.port is None:
            self.port = _env_int("RELAY_PORT", 3000)
        if self.log_dir is None:
            self.log_dir = os.getenv("RELAY_LOG_DIR") or None
        if not self.cors_origins:
            raw = os.getenv("RELAY_CORS_ORIGINS", "*")
            self.cors_origins = [o.strip() for o in raw.split(",") if o.strip()]

        if self.s3_endpoint is None:
            self.s3_endpoint = _env_str("RELAY_S3_ENDPOINT", "https://s3.us.archive.org")
        if self.metadata_endpoint is None:
            self.metadata_endpoint = _env_str(
                "RELAY_METADATA_ENDPOINT", "https://archive.org/metadata"
            )
        if self.search_endpoint is None:
            self.search_endpoint = _env_str(
                "RELAY_SEARCH_ENDPOINT", "https://archive.org/advancedsearch.php"
            )
        if self.public_base_url is None:
            self.public_base_url = _env_str("RELAY_PUBLIC_BASE_URL", "https://archive.org")
        if self.user_agent is None:
            self.user_agent = _env_str("RELAY_USER_AGENT", DEFAULT_USER_AGENT)
        if self.media_type is None:
            self.media_type = _env_str("RELAY_MEDIA_TYPE", "movies")

        if self.max_source_bytes is None:
            self.max_source_bytes = _env_int("RELAY_MAX_SOURCE_BYTES", 2 * GB)
        if self.chunk_size is None:
            self.chunk_size = _env_int("RELAY_CHUNK_SIZE", 5 * MB)
        if self.chunked_threshold is None:
            self.chunked_threshold = _env_int("RELAY_CHUNKED_THRESHOLD", 64 * MIB)

        if self.max_retries is None:
            self.max_retries = _env_int("RELAY_MAX_RETRIES", 3)
        if self.retry_delay is None:
            self.retry_delay = _env_float("RELAY_RETRY_DELAY", 2.0)
        if self.finalize_grace is None:
            self.finalize_grace = _env_float("RELAY_FINALIZE_GRACE", 5.0)

        if self.session_idle_timeout is None:
            self.session_idle_timeout = _env_float("RELAY_SESSION_IDLE_TIMEOUT", 24 * 3600.0)
        if self.job_retention is None:
            self.job_retention = _env_float("RELAY_JOB_RETENTION", 3600.0)

        for name in ("s3_endpoint", "metadata_endpoint", "public_base_url"):
            setattr(self, name, getattr(self, name).rstrip("/"))

        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")

    def summary(self) -> dict:
        """Printable view of the configuration for startup logs."""
        return {f.name: getattr(self, f.name) for f in fields(self)}
