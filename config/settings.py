from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TssSettings(BaseSettings):
    database_url: str = Field(default="sqlite:///data/tss.db", description="Database connection URL")

    environment: str = Field(default="development", description="Environment")
    log_level: str = Field(default="INFO", description="Logging level")

    # Development settings
    debug: bool = Field(default=False, description="Enable debug mode (SQL echo)")

    # Platform access for the directive applier and gateway bridge
    discord_token: str | None = Field(default=None, description="Discord bot token")

    # Warn engine
    warn_decay_amount: int = Field(default=1, ge=0, description="Points removed per elapsed decay interval")

    # Mute engine
    mute_max_timeout_days: int = Field(default=28, ge=1, description="Longest platform-native timeout")

    # Antinuke engine
    antinuke_threshold: int = Field(default=5, ge=1, description="Destructive actions per window that open an incident")
    antinuke_window_seconds: int = Field(default=10, ge=1, description="Sliding window for burst counting")
    antinuke_hard_ceiling: int = Field(default=20, ge=1, description="Burst size that suspends the offending actor")
    antinuke_cooldown_minutes: int = Field(default=15, ge=1, description="Quiet period after which an incident closes")

    # Sweeps
    sweep_interval_seconds: int = Field(default=60, ge=1, description="Delay between sweep passes")
    sweep_batch_size: int = Field(default=200, ge=1, description="Maximum rows handled per sweep pass")

    # Authorization
    capability_cache_ttl: int = Field(default=30, ge=0, description="Seconds a guild's capability grants stay cached")

    # Incident API
    api_host: str = Field(default="127.0.0.1", description="Incident API host")
    api_port: int = Field(default=7100, description="Incident API port")
    api_token: str | None = Field(default=None, description="Shared secret expected in the Authorization header")
    api_timeout_seconds: float = Field(default=5.0, gt=0, description="Per-request engine timeout")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings = TssSettings()
