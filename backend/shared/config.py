"""
Central configuration for the match logger services.
Uses pydantic-settings for env-based config with validation.
"""
from __future__ import annotations

from enum import Enum
from functools import lru_cache
from urllib.parse import urlparse

from pydantic import Field, RedisDsn, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Root settings shared by the session service and the operator API."""

    model_config = SettingsConfigDict(
        env_prefix="ML_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────
    environment: Environment = Environment.DEV
    debug: bool = False
    log_level: str = "INFO"
    instance_id: str = Field(default="", description="Unique device/container ID, bound to every log line")
    operator_id: str = Field(default="", description="Operator recording the match")
    match_id: str = Field(default="", description="Match the session service attaches to on startup")

    # ── Logger backend ───────────────────────────────────────
    api_base_url: str = Field(default="http://localhost:8000")
    api_token: str = ""
    request_timeout_s: float = 10.0
    max_retries: int = 2
    events_page_size: int = 500

    # ── Redis (offline queue + push bridge) ──────────────────
    redis_url: RedisDsn = Field(default="redis://redis:6379/0")
    redis_max_connections: int = 10
    offline_queue_enabled: bool = True
    offline_queue_ttl_s: int = 86400 * 2
    push_bridge_enabled: bool = True

    # ── Clock ────────────────────────────────────────────────
    tick_interval_s: float = 1.0
    drift_threshold_s: float = 2.0
    drift_linger_s: float = 1.0
    resync_cooldown_s: float = 15.0

    # ── Reconciliation ───────────────────────────────────────
    ack_timeout_s: float = 10.0

    # ── Action flow ──────────────────────────────────────────
    rapid_input_buffer_s: float = 3.0

    # ── Period guards ────────────────────────────────────────
    regulation_half_min_s: int = 45 * 60
    extra_half_min_s: int = 15 * 60
    bypass_transition_guards: bool = Field(
        default=False,
        description="Disables minimum-duration guards. Controlled test environments only.",
    )

    # ── Destructive operations ───────────────────────────────
    reset_confirmation_text: str = "RESET"
    delete_confirmation_text: str = "DELETE"

    # ── API ──────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    cors_origins: list[str] = ["*"]

    # ── Observability ────────────────────────────────────────
    metrics_enabled: bool = True
    metrics_port: int = 9090

    @model_validator(mode="after")
    def strip_api_base_url(self) -> "Settings":
        """Normalize the backend base URL so paths can be joined with a leading slash."""
        base = self.api_base_url.rstrip("/")
        if not base.endswith("/api/v1"):
            base = f"{base}/api/v1"
        self.api_base_url = base
        return self

    @property
    def redis_url_str(self) -> str:
        return str(self.redis_url)

    @property
    def redis_url_safe_log(self) -> str:
        """URL with password redacted, for logging only."""
        try:
            u = urlparse(str(self.redis_url))
            netloc = (u.hostname or "?") + (f":{u.port}" if u.port else "")
            return f"{u.scheme}://{netloc}{u.path or ''}"
        except Exception:
            return "redis://***"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton access to validated settings."""
    return Settings()
