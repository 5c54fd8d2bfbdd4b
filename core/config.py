"""
Configuration management for the generation job service.

Centralizes all configuration including:
- Provider and completion API keys and endpoints
- Engine model selections per lane
- Poller deadlines and recovery policy
- Credit costs and assist quotas
"""

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


@dataclass
class APIConfig:
    """API configuration for external services."""

    # Asynchronous media-generation provider (Replicate-compatible REST)
    provider_api_token: str = field(default_factory=lambda: os.getenv("REPLICATE_API_TOKEN", ""))
    provider_api_base: str = field(
        default_factory=lambda: os.getenv("REPLICATE_API_BASE", "https://api.replicate.com/v1")
    )

    # Completion service
    google_api_key: str = field(default_factory=lambda: os.getenv("GOOGLE_API_KEY", ""))


@dataclass
class DatabaseConfig:
    """Database configuration."""
    url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", ""))
    pool_min_size: int = 2
    pool_max_size: int = 10


@dataclass
class StorageConfig:
    """S3-compatible storage (Cloudflare R2) for relocated assets."""
    r2_account_id: str = field(default_factory=lambda: os.getenv("R2_ACCOUNT_ID", ""))
    r2_access_key: str = field(default_factory=lambda: os.getenv("R2_ACCESS_KEY", ""))
    r2_secret_key: str = field(default_factory=lambda: os.getenv("R2_SECRET_KEY", ""))
    r2_bucket: str = field(default_factory=lambda: os.getenv("R2_BUCKET", "generations"))
    r2_public_url: str = field(default_factory=lambda: os.getenv("R2_PUBLIC_URL", ""))
    key_prefix: str = field(default_factory=lambda: os.getenv("STORAGE_KEY_PREFIX", "generations"))

    @property
    def endpoint_url(self) -> str:
        return f"https://{self.r2_account_id}.r2.cloudflarestorage.com"


@dataclass
class ModelConfig:
    """Model selection per engine kind."""

    # Still image engines
    still_economy: str = field(
        default_factory=lambda: os.getenv("STILL_ECONOMY_MODEL", "bytedance/seedream-4")
    )
    still_premium: str = field(
        default_factory=lambda: os.getenv("STILL_PREMIUM_MODEL", "google/nano-banana-pro")
    )
    still_size: str = field(default_factory=lambda: os.getenv("STILL_SIZE", "4K"))
    still_aspect_ratio: str = "match_input_image"

    # Video engines
    video_plain: str = field(default_factory=lambda: os.getenv("VIDEO_MODEL", "kwaivgi/kling-v2.1"))
    video_motion_transfer: str = field(
        default_factory=lambda: os.getenv("VIDEO_MOTION_MODEL", "kwaivgi/kling-v2.6-motion-control")
    )
    video_audio_driven: str = field(
        default_factory=lambda: os.getenv("VIDEO_AUDIO_MODEL", "veed/fabric-1.0")
    )
    video_default_duration: int = 5

    still_negative_prompt: str = field(default_factory=lambda: os.getenv("STILL_NEGATIVE_PROMPT", ""))
    video_negative_prompt: str = field(default_factory=lambda: os.getenv("VIDEO_NEGATIVE_PROMPT", ""))

    # Completion model
    completion_model: str = field(
        default_factory=lambda: os.getenv("COMPLETION_MODEL", "gemini-2.5-flash")
    )


@dataclass
class PollerConfig:
    """Deadlines for the provider poll loop (seconds)."""
    hard_deadline: float = field(default_factory=lambda: _env_float("POLL_HARD_DEADLINE", 240.0))
    video_hard_deadline: float = field(default_factory=lambda: _env_float("POLL_VIDEO_HARD_DEADLINE", 600.0))
    poll_interval: float = field(default_factory=lambda: _env_float("POLL_INTERVAL", 2.5))
    per_call_timeout: float = field(default_factory=lambda: _env_float("POLL_CALL_TIMEOUT", 15.0))
    cancel_on_timeout: bool = field(default_factory=lambda: _env_bool("POLL_CANCEL_ON_TIMEOUT", False))

    # Completion and storage calls
    completion_timeout: float = field(default_factory=lambda: _env_float("COMPLETION_TIMEOUT", 60.0))
    storage_timeout: float = field(default_factory=lambda: _env_float("STORAGE_TIMEOUT", 120.0))


@dataclass
class BillingConfig:
    """Credit costs per lane, in units."""
    still_economy_cost: int = 1
    still_premium_cost: int = 2
    video_short_cost: int = 5
    video_long_cost: int = 10
    video_short_max_seconds: int = 5
    reference_block_seconds: int = 5
    video_reference_cap_seconds: int = 30
    audio_reference_cap_seconds: int = 60

    # Free prompt previews per owner per day
    assist_daily_quota: int = field(default_factory=lambda: _env_int("ASSIST_DAILY_QUOTA", 20))


@dataclass
class RecoveryConfig:
    """Bounded retry/abandon policy for timed-out provider jobs."""
    max_attempts: int = field(default_factory=lambda: _env_int("RECOVERY_MAX_ATTEMPTS", 6))
    abandon_after_seconds: int = field(default_factory=lambda: _env_int("RECOVERY_ABANDON_AFTER", 6 * 3600))
    recover_on_startup: bool = field(default_factory=lambda: _env_bool("RECOVER_ON_STARTUP", True))
    # Pre-submission stages untouched this long are treated as interrupted
    stale_after_seconds: int = field(default_factory=lambda: _env_int("RECOVERY_STALE_AFTER", 900))


@dataclass
class StreamingConfig:
    """Realtime progress streaming."""
    chatter_interval: float = field(default_factory=lambda: _env_float("CHATTER_INTERVAL", 8.0))
    heartbeat_interval: float = 30.0
    subscriber_queue_size: int = 100


@dataclass
class Config:
    """Main configuration class."""

    api: APIConfig = field(default_factory=APIConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    models: ModelConfig = field(default_factory=ModelConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)

    # Run pipelines in this process as soon as a job is created.
    # Set false when separate worker processes claim from the queue.
    inline_dispatch: bool = field(default_factory=lambda: _env_bool("INLINE_DISPATCH", True))
    claim_poll_interval: float = field(default_factory=lambda: _env_float("CLAIM_POLL_INTERVAL", 2.0))

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls()

    def validate(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if not self.api.provider_api_token:
            issues.append("REPLICATE_API_TOKEN not configured")

        if not self.api.google_api_key:
            issues.append("GOOGLE_API_KEY not configured (needed for prompt synthesis)")

        if not self.database.url:
            issues.append("DATABASE_URL not configured (using in-memory store)")

        if not self.storage.r2_public_url:
            issues.append("R2_PUBLIC_URL not configured (asset relocation disabled)")

        if self.poller.poll_interval >= self.poller.hard_deadline:
            issues.append("POLL_INTERVAL must be shorter than POLL_HARD_DEADLINE")

        return issues


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reload_config():
    """Reload configuration from environment."""
    global _config
    _config = Config.from_env()
