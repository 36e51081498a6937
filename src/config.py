from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional

# Application version
VERSION = "0.4.0"

# Name used for the per-application config directory
APP_NAME = "ttv-gateway"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "127.0.0.1"
    PORT: int = 9595
    LOG_LEVEL: str = "info"
    APP_DEBUG: bool = False
    # Optional TLS, handed straight to uvicorn
    SSL_CERTFILE: Optional[str] = None
    SSL_KEYFILE: Optional[str] = None

    # Upstream proxy
    # Static proxy ('scheme://host:port', scheme one of http/https/socks5/socks5h).
    # When unset, a proxy is negotiated with the tunnel broker at startup.
    PROXY: Optional[str] = None
    PROXY_TYPE: str = "direct"  # direct, lum
    # Region the broker should hand out tunnels for. Must be a region where
    # the platform does not serve ads.
    COUNTRY: str = "ru"
    # Don't write the broker identity back to disk
    DISCARD_CREDS: bool = False
    # Ignore the stored identity and negotiate with a fresh one
    REGEN_CREDS: bool = False
    # Overrides the platform config location for the identity record
    CONFIG_DIR: Optional[str] = None

    # Upstream platform
    CLIENT_ID: str = "kimne78kx3ncx6brgo4mv6wki5h1ko"
    # When set, always sent upstream instead of the client's User-Agent
    USER_AGENT: Optional[str] = None
    DEFAULT_USER_AGENT: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:109.0) Gecko/20100101 Firefox/115.0"
    # Non-identifying player capability flags copied from inbound requests.
    # Mirrors the web player's parameters and needs updating as it changes.
    PERMITTED_INCOMING_KEYS: List[str] = [
        "player_backend",
        "playlist_include_framerate",
        "reassignments_supported",
        "supported_codecs",
        "cdm",
        "player_version",
        "fast_bread",
        "allow_source",
        "warp",
        "transcode_mode",
    ]
    # Replace USER-IP markers in manifests before returning them
    REDACT_IP: bool = False

    # Outbound HTTP client
    CONNECT_TIMEOUT: float = 20.0
    RETRY_MIN_DELAY: float = 0.001
    RETRY_MAX_DELAY: float = 2.0
    RETRY_MAX_DURATION: float = 15.0

    # Request admission
    MAX_CONCURRENT_REQUESTS: int = 64
    REQUEST_TIMEOUT: float = 40.0

    # Optional features
    # Enables GET /truestat/{secret}; /status then reports 503 while unhealthy
    DEEP_STATUS_SECRET: Optional[str] = None
    # Accept /playlist/<id>.m3u8%3F<query> style URLs
    ALTERNATE_PATHS: bool = False
    ENABLE_GZIP: bool = False

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )

    @property
    def deep_status_enabled(self) -> bool:
        return bool(self.DEEP_STATUS_SECRET)


# Global settings instance
settings = Settings()
