"""
Application configuration.
All settings are loaded from environment variables (prefix AI_IMAGE_) or .env.
Provider credentials are NOT settings: they arrive per call in ProviderConfig.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Tuning knobs for the image generation client and the HTTP service.

    Every field has a default so the package imports cleanly without a .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    # CORS: comma-separated origins. Empty = default list in main.py.
    cors_origins: str = ""

    # ===========================================
    # HTTP
    # ===========================================
    # Generation + download of the response body (image) can be slow.
    request_timeout_seconds: float = 180.0
    download_timeout_seconds: float = 60.0
    validation_timeout_seconds: float = 20.0

    # ===========================================
    # RETRY (linear backoff: backoff_seconds * attempt)
    # ===========================================
    retry_max_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    retry_respect_retry_after: bool = True

    # ===========================================
    # ASYNC TASK POLLING
    # ===========================================
    poll_interval_seconds: float = 2.0
    poll_max_attempts: int = 30

    # ===========================================
    # IMAGES
    # ===========================================
    # Storyboard image below this many decoded bytes is rejected before any network call.
    min_image_bytes: int = 100
    image_base_size: int = 1024
    default_aspect_ratio: str = "16:9"
    # Truncation of unrecognized response bodies in error messages.
    response_preview_chars: int = 500

    # ===========================================
    # LOGGING
    # ===========================================
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("retry_max_attempts", "poll_max_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Attempt budgets must allow at least one attempt."""
        if v < 1:
            raise ValueError("attempt budgets must be >= 1")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper().strip()

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    class Config:
        env_file = ".env"
        env_prefix = "AI_IMAGE_"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
