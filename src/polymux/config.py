"""Configuration management for Polymux"""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Polymux", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")

    # API Settings
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_prefix: str = Field(default="/api", description="API prefix")
    websocket_path: str = Field(default="/ws", description="Chat WebSocket path")

    # Provider catalog
    provider_catalog_file: Optional[Path] = Field(
        default=None,
        description="JSON file overlaying the built-in provider catalog",
    )

    # Subprocess CLI providers
    cursor_bin: str = Field(default="cursor-agent", description="Cursor agent binary path")
    codex_bin: str = Field(default="codex", description="Codex CLI binary path")
    cli_terminate_timeout_seconds: float = Field(
        default=5.0, description="Grace period between SIGTERM and SIGKILL"
    )
    cli_stream_limit: int = Field(
        default=4 * 1024 * 1024, description="Max bytes for one line of CLI output"
    )

    # HTTP streaming providers
    http_connect_timeout_seconds: float = Field(default=10.0, description="HTTP connect timeout")
    http_read_timeout_seconds: float = Field(default=300.0, description="HTTP read timeout")
    oauth_refresh_margin_seconds: int = Field(
        default=300, description="Refresh OAuth tokens this long before expiry"
    )
    default_temperature: float = Field(default=0.7, description="Default sampling temperature")
    default_max_tokens: int = Field(default=4096, description="Default max output tokens")

    # Native SDK provider
    tool_approval_timeout_seconds: float = Field(
        default=300.0, description="How long a tool approval request waits before denying"
    )

    # Output caps (characters of accumulated text per turn)
    sdk_output_limit: int = Field(default=200_000, description="Native SDK output cap")
    cli_output_limit: int = Field(default=200_000, description="CLI output cap")
    http_output_limit: int = Field(default=100_000, description="HTTP streaming output cap")

    # Session Management
    max_turns_per_user: int = Field(default=8, description="Max concurrent turns per user")
    conversation_ttl_seconds: int = Field(
        default=30 * 60, description="Idle time before a bot conversation session is evicted"
    )
    conversation_sweep_interval_seconds: Optional[int] = Field(
        default=None, description="Sweep interval (defaults to the TTL)"
    )
    conversation_history_messages: int = Field(
        default=40, description="Messages replayed to stateless backends per bot conversation"
    )

    # Bot replies
    dingtalk_max_chars: int = Field(default=6000, description="DingTalk reply cap")
    wechat_work_max_chars: int = Field(default=4000, description="WeChat Work reply cap")
    bot_default_max_chars: int = Field(default=4000, description="Reply cap for other platforms")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format (json or plain)")

    # Security
    user_id_header: str = Field(default="X-User-Id", description="Header carrying the authenticated user")
    cors_origins: List[str] = Field(
        default=["*"],
        description="CORS allowed origins",
    )

    @property
    def sweep_interval(self) -> int:
        """Effective conversation sweep interval"""
        return self.conversation_sweep_interval_seconds or self.conversation_ttl_seconds


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
