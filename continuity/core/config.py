"""
Supervisor Continuity - Configuration
=====================================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

import socket
from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Supervisor Continuity"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./continuity.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Instance Registry
    # ==========================================================================
    HOST_MACHINE: str = Field(default_factory=socket.gethostname)
    STALE_TIMEOUT_SECONDS: int = 120  # Supervisors (PS / MS)
    SUBAGENT_STALE_TIMEOUT_SECONDS: int = 900  # Sub-agents run long tool calls

    # ==========================================================================
    # Event Store
    # ==========================================================================
    EVENT_QUERY_DEFAULT_LIMIT: int = 100
    EVENT_QUERY_MAX_LIMIT: int = 1000

    # Slow-operation warning thresholds (milliseconds)
    EMIT_SLOW_MS: float = 10.0
    QUERY_SLOW_MS: float = 100.0
    REPLAY_SLOW_MS: float = 200.0

    # ==========================================================================
    # Heartbeat Monitor
    # ==========================================================================
    HEARTBEAT_MONITOR_ENABLED: bool = True
    HEARTBEAT_CHECK_INTERVAL_SECONDS: int = 30
    CANCEL_FIXES_ON_STALE: bool = False

    # ==========================================================================
    # Checkpoints
    # ==========================================================================
    CHECKPOINT_CONTEXT_THRESHOLD: int = 80  # percent of context window

    # ==========================================================================
    # Adaptive Fix Loop
    # ==========================================================================
    FIX_MAX_RETRIES: int = 3
    FIX_ATTEMPT_TIMEOUT_SECONDS: float = 600.0
    FIX_VERIFY_TIMEOUT_SECONDS: float = 300.0
    FIX_KNOWN_FIX_MIN_SUCCESS_RATE: float = 0.7
    HANDOFF_DIR: str = "docs/handoffs"

    # argv templates; {model}, {strategy}, {test_id} and {prompt} are substituted
    AGENT_COMMAND: list[str] = [
        "claude", "--print", "--output-format", "json", "--model", "{model}",
        "--dangerously-skip-permissions", "{prompt}",
    ]
    VERIFY_COMMAND: list[str] = ["python", "-m", "pytest", "-q", "{test_id}"]

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
