"""
Settings for bizdesk.

Read from the environment (or ``.env``) with pydantic-settings. One
``Settings`` instance is shared by the API client, the session layer, the
real-time transport and the BFF service; tests build their own with
``Settings(_env_file=None, ...)``.
"""

from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime settings.

    Attributes:
        API_URL: Base URL of the business-management REST API, ``/api`` included
        SERVICE_NAME: Stamped on JSON log records and health responses
        LOG_JSON: Emit JSON lines instead of the colored development format
        SLOW_REQUEST_THRESHOLD_MS: BFF requests slower than this are logged
        MAX_RETRIES: Retries for transient backend database errors
        RETRY_DELAY_SECONDS: Linear backoff step between those retries
        TOKEN_DEFAULT_TTL_SECONDS: Expiry assumed for tokens without an exp claim
        PERMISSION_CACHE_TTL_SECONDS: Lifetime of the cached user profile
        PUSHER_APP_KEY: Real-time application key; empty disables live updates
        CHAT_SYNC_COMPANY_ID: Company followed by the server-side sync worker
    """

    # Backend API
    API_URL: str = Field(
        default="http://localhost:8000/api",
        description="Base URL of the business-management REST API",
    )

    # Application configuration
    APP_NAME: str = Field(
        default="BizDesk",
        description="Display name for the application",
    )
    SERVICE_NAME: str = Field(
        default="bizdesk",
        description="Service identifier used in logs and health responses",
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    # Server configuration
    HOST: str = Field(
        default="0.0.0.0",
        description="Server bind address",
    )
    PORT: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Server port number",
    )

    # Logging configuration
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    LOG_JSON: bool = Field(
        default=False,
        description="Emit JSON structured logs instead of human-readable lines",
    )

    SLOW_REQUEST_THRESHOLD_MS: float = Field(
        default=1000.0,
        gt=0,
        description="Log BFF requests slower than this many milliseconds",
    )

    # HTTP client configuration
    REQUEST_TIMEOUT: float = Field(
        default=10.0,
        gt=0,
        le=60.0,
        description="Default timeout for HTTP requests in seconds",
    )
    MAX_RETRIES: int = Field(
        default=3,
        ge=0,
        le=5,
        description="Retry attempts for transient backend database errors",
    )
    RETRY_DELAY_SECONDS: float = Field(
        default=0.8,
        ge=0,
        le=10.0,
        description="Base delay between retries, multiplied by the attempt number",
    )

    # Session configuration
    TOKEN_DEFAULT_TTL_SECONDS: int = Field(
        default=7 * 24 * 60 * 60,
        gt=0,
        description="Expiry assumed for tokens that carry no exp claim",
    )
    TOKEN_REFRESH_THRESHOLD_SECONDS: int = Field(
        default=5 * 60,
        ge=0,
        description="Refresh tokens this many seconds before they expire",
    )
    PERMISSION_CACHE_TTL_SECONDS: int = Field(
        default=15 * 60,
        gt=0,
        description="Lifetime of cached user permissions",
    )
    SESSION_COOKIE_NAME: str = Field(
        default="token",
        description="Cookie holding the bearer token for the BFF",
    )
    USER_COOKIE_NAME: str = Field(
        default="user_id",
        description="Cookie holding the signed-in user id for the BFF",
    )
    SESSION_COOKIE_SECURE: bool = Field(
        default=True,
        description="Mark session cookies as Secure",
    )

    # Real-time transport
    PUSHER_APP_KEY: str = Field(
        default="",
        description="Pusher application key",
    )
    PUSHER_APP_CLUSTER: str = Field(
        default="mt1",
        description="Pusher cluster name",
    )
    PUSHER_HOST: Optional[str] = Field(
        default=None,
        description="Custom websocket host (self-hosted Pusher-compatible servers)",
    )
    PUSHER_PORT: Optional[int] = Field(
        default=None,
        ge=1,
        le=65535,
        description="Custom websocket port",
    )
    PUSHER_SCHEME: Literal["http", "https"] = Field(
        default="https",
        description="Scheme of the custom websocket host",
    )
    BROADCAST_AUTH_PATH: str = Field(
        default="/broadcasting/auth",
        description="API path authorizing private channel subscriptions",
    )

    # Server-side chat synchronization
    CHAT_SYNC_ENABLED: bool = Field(
        default=False,
        description="Run the real-time chat sync worker inside the BFF",
    )
    CHAT_SYNC_COMPANY_ID: Optional[str] = Field(
        default=None,
        description="Company whose conversations the worker follows",
    )
    CHAT_SYNC_TOKEN: Optional[str] = Field(
        default=None,
        description="Service token used by the chat sync worker",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("API_URL")
    @classmethod
    def validate_api_url(cls, value: str) -> str:
        """Require an absolute http(s) URL; a trailing slash is dropped."""
        value = value.strip().rstrip("/")
        scheme, sep, host = value.partition("://")
        if not sep or scheme not in ("http", "https") or not host:
            raise ValueError(f"API_URL must be an absolute http(s) URL, got: {value!r}")
        return value

    @field_validator("BROADCAST_AUTH_PATH")
    @classmethod
    def validate_auth_path(cls, value: str) -> str:
        """Ensure the broadcast auth path is rooted."""
        return value if value.startswith("/") else f"/{value}"


# Global settings instance
settings = Settings()
