"""
Database configuration and connection management for the Order Capture service.

This module owns the relational connection pool and the cache connection.
A single ConnectionManager is built by the composition root (see main.py)
and shared by every component that talks to infrastructure. It exposes a
small status state machine and a retry-with-backoff executor, which is the
only path other components use to reach the relational store.
"""
import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

import redis
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import ArgumentError, DataError, IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import RetryPolicy, Settings
from .errors import ConfigurationError, TransientInfrastructureError, ValidationError

logger = logging.getLogger(__name__)

# Base class for declarative models
Base = declarative_base()

T = TypeVar("T")

# Errors that are raised on the first occurrence instead of being retried
NON_RETRYABLE = (ConfigurationError, ValidationError)


class ConnectionStatus(str, Enum):
    NOT_INITIALIZED = "not_initialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class ConnectionHandle:
    """
    What a consumer gets back from ConnectionManager.get_connection().

    Attributes:
        engine (Engine): SQLAlchemy engine backing the shared pool
        session_factory (sessionmaker): Factory for short-lived sessions
        cache (redis.Redis): Cache client, or None when the cache is disabled
        status (ConnectionStatus): Status at the time the handle was issued
    """
    engine: Engine
    session_factory: sessionmaker
    cache: Optional[redis.Redis]
    status: ConnectionStatus


class ConnectionManager:
    """
    Lifecycle owner for the relational pool and the cache connection.

    State machine: NOT_INITIALIZED -> CONNECTING -> CONNECTED, or -> ERROR
    with the cause kept in last_error. Any consumer may ask for a connection;
    when the state is ERROR a fresh initialization is attempted before the
    call either succeeds or raises.
    """

    def __init__(
        self,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.retry_policy = settings.retry
        self._sleep = sleep
        self._lock = threading.Lock()
        self._status = ConnectionStatus.NOT_INITIALIZED
        self._last_error: Optional[BaseException] = None
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._cache: Optional[redis.Redis] = None

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def cache(self) -> Optional[redis.Redis]:
        """Cache client if the manager is connected and the cache is enabled."""
        if self._status != ConnectionStatus.CONNECTED:
            return None
        return self._cache

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    def _validate_settings(self) -> None:
        if not self.settings.database_url:
            raise ConfigurationError("DATABASE_URL is not configured")

    def _create_engine(self) -> Engine:
        url = self.settings.database_url
        try:
            if url.startswith("sqlite"):
                return create_engine(url, connect_args={"check_same_thread": False})
            connect_args = {
                "connect_timeout": self.settings.database_connect_timeout,
                "options": f"-c statement_timeout={self.settings.database_statement_timeout_ms}",
            }
            return create_engine(
                url,
                pool_size=self.settings.database_pool_size,
                pool_timeout=self.settings.database_connect_timeout,
                pool_pre_ping=True,
                connect_args=connect_args,
            )
        except (ArgumentError, ImportError) as e:
            raise ConfigurationError(f"Invalid DATABASE_URL: {e}") from e

    def _connect_cache(self) -> Optional[redis.Redis]:
        if not self.settings.redis_url:
            return None
        try:
            client = redis.from_url(
                self.settings.redis_url,
                decode_responses=True,
                socket_timeout=self.settings.database_connect_timeout,
            )
            client.ping()
            logger.info("Cache connection established")
            return client
        except redis.RedisError as e:
            logger.warning(f"Cache unavailable, continuing without it: {e}")
            return None

    def initialize(self) -> None:
        """
        Open the relational pool and the cache connection.

        Raises:
            ConfigurationError: If DATABASE_URL is missing or invalid
            Exception: Whatever the driver raised while testing the connection
        """
        self._status = ConnectionStatus.CONNECTING
        try:
            self._validate_settings()
            if self._engine is None:
                self._engine = self._create_engine()
                self._session_factory = sessionmaker(
                    autocommit=False, autoflush=False, bind=self._engine
                )
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Relational store connection established")
            self._cache = self._connect_cache()
        except Exception as e:
            logger.error(f"Database initialization failed: {e}")
            self._status = ConnectionStatus.ERROR
            self._last_error = e
            raise
        self._status = ConnectionStatus.CONNECTED
        self._last_error = None

    def get_connection(self) -> ConnectionHandle:
        """
        Return a handle to the shared pool, initializing it if needed.

        Returns:
            ConnectionHandle with the engine, session factory and cache client

        Raises:
            ConfigurationError: If required settings are missing
            Exception: The driver error if (re)initialization failed
        """
        if self._status != ConnectionStatus.CONNECTED:
            with self._lock:
                if self._status != ConnectionStatus.CONNECTED:
                    if self._status == ConnectionStatus.ERROR:
                        logger.info("Retrying database initialization after previous failure")
                    self.initialize()
        return ConnectionHandle(
            engine=self._engine,
            session_factory=self._session_factory,
            cache=self._cache,
            status=self._status,
        )

    async def execute_with_retry(
        self,
        operation: Callable[[ConnectionHandle], Union[T, Awaitable[T]]],
        context: str = "database operation",
        policy: Optional[RetryPolicy] = None,
    ) -> T:
        """
        Run an operation against the shared connection with bounded retries.

        The operation receives a ConnectionHandle. Synchronous operations are
        run in the threadpool; coroutine functions are awaited. Delays between
        attempts follow policy.delay_for() and are cancellable.

        Args:
            operation: Callable taking a ConnectionHandle
            context: Description used in logs and in the final error
            policy: Backoff schedule (defaults to the configured one)

        Returns:
            Whatever the operation returned

        Raises:
            ConfigurationError: Immediately, when settings are missing
            ValidationError: Immediately, when the payload is rejected
            TransientInfrastructureError: After the last failed attempt
        """
        policy = policy or self.retry_policy
        last_error: Optional[BaseException] = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                handle = await run_in_threadpool(self.get_connection)
                if inspect.iscoroutinefunction(operation):
                    return await operation(handle)
                return await run_in_threadpool(operation, handle)
            except (DataError, IntegrityError) as e:
                raise ValidationError(f"Rejected by relational store during {context}: {e.orig}") from e
            except NON_RETRYABLE:
                raise
            except Exception as e:
                last_error = e
                logger.warning(f"Attempt {attempt}/{policy.max_attempts} failed for {context}: {e}")
                if attempt < policy.max_attempts:
                    await self._sleep(policy.delay_for(attempt))

        raise TransientInfrastructureError(
            f"{context} failed after {policy.max_attempts} attempts: {last_error}",
            attempts=policy.max_attempts,
            context=context,
        ) from last_error

    def close(self) -> None:
        """Dispose the pool and the cache client and reset the status."""
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
                logger.info("Relational store connection closed")
            if self._cache is not None:
                self._cache.close()
            self._engine = None
            self._session_factory = None
            self._cache = None
            self._status = ConnectionStatus.NOT_INITIALIZED
            self._last_error = None
