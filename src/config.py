from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

# Application version
VERSION = "0.1.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8086
    LOG_LEVEL: str = "info"
    RELOAD: bool = False
    DOCS_URL: str = "/docs"
    OPENAPI_URL: str = "/openapi.json"
    ROOT_PATH: str = ""

    # Playlist origin
    PLAYLIST_URL: str = "https://gh-proxy.com/raw.githubusercontent.com/suxuang/myIPTV/main/ipv4.m3u"
    PLAYLIST_FETCH_TIMEOUT: float = 30.0
    # Seconds an ingested playlist is served from the cache before refetching
    PLAYLIST_CACHE_TTL: int = 3600

    # Default stream properties (overridden per source by user-agent / referrer tags)
    DEFAULT_USER_AGENT: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"

    # Logo hosts that win over any other logo when channels are merged
    TRUSTED_LOGO_HOSTS: List[str] = [
        "gitee.com",
        "github.com",
        "githubusercontent.com",
        "github.io",
    ]

    # Reachability validation
    VALIDATION_CONCURRENCY: int = 3
    VALIDATION_TIMEOUT_MS: int = 12000
    # Finished validation jobs kept in memory for polling/export
    VALIDATION_JOB_RETENTION: int = 20

    # External player capability
    FFPROBE_PATH: str = "ffprobe"
    FFMPEG_PATH: str = "ffmpeg"

    # Playback failover
    # Seconds a candidate may stay in loading before it is treated as failed
    FAILOVER_LOAD_TIMEOUT: float = 15.0
    # Pause before the next candidate is attached
    FAILOVER_ADVANCE_DELAY: float = 2.0
    # In-place retries of the current candidate for transient manifest/media errors
    FAILOVER_RECOVERY_ATTEMPTS: int = 1
    MAX_PLAYBACK_SESSIONS: int = 4

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",
        extra="ignore"
    )


# Global settings instance
settings = Settings()
