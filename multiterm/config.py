"""
Multiterm Configuration.

Environment-driven configuration using Pydantic Settings.
Every tunable of the session core (heartbeat, reconnection, locking,
storage, endpoint defaults) lives here with documented defaults.

Security Note:
- Never commit .env files to version control
- Bearer tokens are NOT configuration; they are read at connect time
  through the workspace token provider

Author: Backend Lead Developer
"""

from pydantic_settings import BaseSettings
from typing import Literal, Optional


class MultitermConfig(BaseSettings):
    """
    Configuration for the multi-session terminal core.

    Configuration Sources (priority order):
    1. Environment variables (prefix: MULTITERM_)
    2. .env file
    3. Default values
    """

    # Heartbeat
    heartbeat_interval_seconds: float = 15.0
    heartbeat_missed_limit: int = 3  # Unanswered pings before force-close

    # Reconnection (bounded exponential backoff)
    reconnect_max_attempts: int = 5
    reconnect_base_delay: float = 1.0  # seconds
    reconnect_max_delay: float = 30.0  # seconds
    reconnect_backoff_multiplier: float = 2.0
    reconnect_jitter_factor: float = 0.25  # ±25%

    # Connect attempts
    lock_ttl_seconds: float = 5.0
    connect_timeout_seconds: float = 5.0

    # Message pipeline
    drain_yield_seconds: float = 0.0  # 0 = yield to the loop without delay

    # Socket endpoint defaults (overridable by the persisted settings block)
    backend_host: str = "localhost"
    backend_port: int = 8080
    backend_secure: bool = False

    # Connection catalog (REST)
    catalog_base_url: str = "http://localhost:8080/api"
    catalog_timeout_seconds: float = 10.0

    # Persistence
    storage_backend: Literal["memory", "redis", "file"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    storage_path: Optional[str] = None
    storage_key_prefix: str = "multiterm"
    closed_history_limit: int = 50

    # Observability
    log_level: str = "INFO"

    class Config:
        env_prefix = "MULTITERM_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
