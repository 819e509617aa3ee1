"""
Unified Configuration Module for the submission pipeline

All configuration settings are centralized here.
Import from this module: from api.config import config
"""

import os
from typing import List, Optional
from dataclasses import dataclass, field


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class AppConfig:
    """Unified application configuration."""

    # === Server Settings ===
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8080"))
    # Base URL the CLI uses to reach a running server
    API_URL: str = os.getenv("API_URL", f"http://127.0.0.1:{os.getenv('PORT', '8080')}")
    DEBUG: bool = _env_bool("DEBUG", "false")

    # === CORS Settings ===
    CORS_ORIGINS: List[str] = field(default_factory=lambda: [
        origin.strip() for origin in
        os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
        if origin.strip()
    ])

    # === Persistence ===
    DATABASE_PATH: str = os.getenv("DATABASE_PATH", "./data/autoapply.db")

    # === Control surface ===
    # Shared secret expected in X-Core-Secret; empty disables the check.
    ORCHESTRATOR_SECRET: str = os.getenv("ORCHESTRATOR_SECRET", "")
    QUEUE_WORKER_ENABLED: bool = _env_bool("QUEUE_WORKER_ENABLED", "true")

    # === Job board API ===
    HH_API_BASE_URL: str = os.getenv("HH_API_BASE_URL", "https://api.hh.ru")
    HH_ACCESS_TOKEN: Optional[str] = os.getenv("HH_ACCESS_TOKEN")
    HH_USER_AGENT: str = os.getenv("HH_USER_AGENT", "hh-autoapply/1.0 (support@example.com)")
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "20"))

    # === Rate Limiting (platform allows ~200 applications/day) ===
    RATE_LIMIT_CAPACITY: int = int(os.getenv("RATE_LIMIT_CAPACITY", "20"))
    RATE_LIMIT_REFILL_RATE: int = int(os.getenv("RATE_LIMIT_REFILL_RATE", "8"))
    RATE_LIMIT_REFILL_INTERVAL_SECONDS: float = float(os.getenv("RATE_LIMIT_REFILL_INTERVAL_SECONDS", "3600"))
    RATE_LIMIT_IDLE_TTL_SECONDS: float = float(os.getenv("RATE_LIMIT_IDLE_TTL_SECONDS", "86400"))
    RATE_LIMIT_SWEEP_INTERVAL_SECONDS: float = float(os.getenv("RATE_LIMIT_SWEEP_INTERVAL_SECONDS", "3600"))

    # === Queue retries ===
    QUEUE_MAX_ATTEMPTS: int = int(os.getenv("QUEUE_MAX_ATTEMPTS", "5"))
    QUEUE_BASE_RETRY_DELAY_SECONDS: float = float(os.getenv("QUEUE_BASE_RETRY_DELAY_SECONDS", "20"))
    QUEUE_MAX_RETRY_DELAY_SECONDS: float = float(os.getenv("QUEUE_MAX_RETRY_DELAY_SECONDS", "1800"))  # 30m
    PLATFORM_RATE_LIMIT_FLOOR_SECONDS: float = float(os.getenv("PLATFORM_RATE_LIMIT_FLOOR_SECONDS", "60"))

    # === Eventual consistency handling (tuned against observed platform latency) ===
    READINESS_POLL_ATTEMPTS: int = int(os.getenv("READINESS_POLL_ATTEMPTS", "5"))
    READINESS_POLL_DELAY_SECONDS: float = float(os.getenv("READINESS_POLL_DELAY_SECONDS", "2.0"))
    TRANSACTION_RETRY_ATTEMPTS: int = int(os.getenv("TRANSACTION_RETRY_ATTEMPTS", "3"))
    TRANSACTION_RETRY_DELAY_SECONDS: float = float(os.getenv("TRANSACTION_RETRY_DELAY_SECONDS", "3.0"))
    IDEMPOTENCY_WINDOW_SECONDS: int = int(os.getenv("IDEMPOTENCY_WINDOW_SECONDS", "300"))

    # === Dispatcher ===
    DISPATCHER_MAX_CONCURRENCY: int = int(os.getenv("DISPATCHER_MAX_CONCURRENCY", "4"))
    DISPATCHER_MAX_IDLE_SLEEP_SECONDS: float = float(os.getenv("DISPATCHER_MAX_IDLE_SLEEP_SECONDS", "300"))
    STALE_SUBMITTING_SECONDS: float = float(os.getenv("STALE_SUBMITTING_SECONDS", "900"))

    # === Notifications ===
    NOTIFY_WEBHOOK_URL: str = os.getenv("NOTIFY_WEBHOOK_URL", "")

    # === Paths ===
    LOG_DIR: str = os.getenv("LOG_DIR", "./logs")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    def validate(self) -> List[str]:
        """Validate configuration and return list of missing required settings."""
        missing = []

        if not self.HH_ACCESS_TOKEN:
            missing.append("HH_ACCESS_TOKEN")
        if self.RATE_LIMIT_CAPACITY < 1:
            missing.append("RATE_LIMIT_CAPACITY (must be >= 1)")
        if self.RATE_LIMIT_REFILL_INTERVAL_SECONDS <= 0:
            missing.append("RATE_LIMIT_REFILL_INTERVAL_SECONDS (must be > 0)")

        return missing


# Global config instance
config = AppConfig()


def get_config() -> AppConfig:
    """Get the application configuration."""
    return config
