"""Configuration management for the Furvino ingest service."""

from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    ENV: str = "local"
    SERVICE_NAME: str = "furvino-ingest"
    SERVICE_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Staging / mounted storage
    STORAGE_ROOT: str = "./data/stack"
    STACK_PREFIX: str = "furvino"
    STACK_FILES_ROOT: str = "files"
    UPLOAD_SESSION_TTL_HOURS: int = 24

    # Part sizing
    DEFAULT_PART_SIZE_MB: int = 8
    MIN_PART_SIZE_MB: int = 1
    MAX_PART_SIZE_MB: int = 128

    # Remote storage backend (STACK)
    STACK_API_URL: str = ""
    STACK_USERNAME: str = ""
    STACK_PASSWORD: str = ""
    STACK_SHARE_HOST: str = ""
    STACK_SHARE_BASE_URL: str = ""
    STACK_REQUEST_TIMEOUT: int = 30  # seconds per backend call
    STACK_UPLOAD_TIMEOUT: int = 600  # seconds for single-shot / chunk uploads

    # Sharing policy
    SHARE_ON_COMPLETE: bool = False
    STRICT_SHARE_HARDENING: bool = True

    # Consistency polling (backend indexes new files asynchronously)
    CONSISTENCY_POLL_INTERVAL_MS: int = 1000
    CONSISTENCY_MAX_ATTEMPTS: int = 300

    # Direct-upload share tokens
    UPLOAD_TOKEN_TTL_SECONDS: int = 1800
    UPLOAD_TOKEN_RENEW_MARGIN_SECONDS: int = 300

    # Client-side scheduler defaults
    UPLOAD_CONCURRENCY: int = 8
    MAX_UPLOAD_CONCURRENCY: int = 64

    @property
    def default_part_size_bytes(self) -> int:
        """Convert DEFAULT_PART_SIZE_MB to bytes."""
        return self.DEFAULT_PART_SIZE_MB * MIB

    @property
    def min_part_size_bytes(self) -> int:
        """Convert MIN_PART_SIZE_MB to bytes."""
        return self.MIN_PART_SIZE_MB * MIB

    @property
    def max_part_size_bytes(self) -> int:
        """Convert MAX_PART_SIZE_MB to bytes."""
        return self.MAX_PART_SIZE_MB * MIB

    @property
    def session_ttl_seconds(self) -> int:
        return self.UPLOAD_SESSION_TTL_HOURS * 3600

    @property
    def stack_configured(self) -> bool:
        """True when credentials for the remote backend are present."""
        return bool(self.STACK_API_URL and self.STACK_USERNAME and self.STACK_PASSWORD)

    @property
    def share_base_url(self) -> str:
        """Base URL that public share tokens are appended to."""
        if self.STACK_SHARE_BASE_URL:
            return self.STACK_SHARE_BASE_URL.rstrip("/")
        if self.STACK_SHARE_HOST:
            host = self.STACK_SHARE_HOST.rstrip("/")
            if not host.startswith(("http://", "https://")):
                host = f"https://{host}"
            return f"{host}/s"
        return ""


# Default settings instance
settings = Settings()
