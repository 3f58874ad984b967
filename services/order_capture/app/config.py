"""
Configuration for the Order Capture service.

All settings are read from environment variables once, by the composition
root, and passed to the components that need them.
"""
import os
from dataclasses import dataclass, field
from typing import Optional


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff schedule used by the connection manager's retry executor.

    Attributes:
        max_attempts (int): Total attempts, including the first one
        initial_delay_ms (int): Delay before the second attempt
        max_delay_ms (int): Ceiling for any single delay
        backoff_factor (float): Multiplier applied per attempt
    """
    max_attempts: int = 3
    initial_delay_ms: int = 100
    max_delay_ms: int = 1000
    backoff_factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """
        Seconds to wait after the given failed attempt (1-based).

        Returns:
            min(initial_delay * backoff_factor^(attempt-1), max_delay) in seconds
        """
        delay_ms = self.initial_delay_ms * (self.backoff_factor ** (attempt - 1))
        return min(delay_ms, self.max_delay_ms) / 1000.0

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(
            max_attempts=_env_int("RETRY_MAX_ATTEMPTS", 3),
            initial_delay_ms=_env_int("RETRY_INITIAL_DELAY_MS", 100),
            max_delay_ms=_env_int("RETRY_MAX_DELAY_MS", 1000),
            backoff_factor=_env_float("RETRY_BACKOFF_FACTOR", 2.0),
        )


@dataclass(frozen=True)
class Settings:
    """
    Service settings.

    database_url has no default: a missing value is reported as a
    ConfigurationError by the connection manager instead of silently
    pointing at a local database.
    """
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_connect_timeout: int = 5
    database_statement_timeout_ms: int = 5000
    redis_url: Optional[str] = None
    idempotency_ttl: int = 86400
    ledger_path: str = ".orders.json"
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    workflow_engine_url: Optional[str] = None
    workflow_publishable_key: str = ""
    workflow_timeout: float = 5.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            database_pool_size=_env_int("DATABASE_POOL_SIZE", 5),
            database_connect_timeout=_env_int("DATABASE_CONNECT_TIMEOUT", 5),
            database_statement_timeout_ms=_env_int("DATABASE_STATEMENT_TIMEOUT_MS", 5000),
            redis_url=os.getenv("REDIS_URL") or None,
            idempotency_ttl=_env_int("IDEMPOTENCY_TTL", 86400),
            ledger_path=os.getenv("LEDGER_PATH", ".orders.json"),
            retry=RetryPolicy.from_env(),
            workflow_engine_url=os.getenv("WORKFLOW_ENGINE_URL") or None,
            workflow_publishable_key=os.getenv("WORKFLOW_PUBLISHABLE_KEY", ""),
            workflow_timeout=_env_float("WORKFLOW_TIMEOUT", 5.0),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
