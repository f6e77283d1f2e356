"""
Shared administrative connection pool.

One AdminPool per process, built lazily by ConnectionFactory on first use. The
first initialization attempt is the only one: its pool or its error is cached
and handed to every later caller until reset() is called explicitly.
"""

import time
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Optional
from weakref import WeakKeyDictionary

import psycopg2
from psycopg2 import pool

from tenantdb.config import (
    Config,
    LOGGER_NAME,
    POOL_MIN_CONN,
    POOL_MAX_CONN,
    POOL_HEALTH_CHECK_PERIOD,
    POOL_MAX_IDLE_TIME,
    POOL_MAX_LIFETIME,
    GREEN,
    RESET,
)
from tenantdb.errors import DatabaseConnectionError, StatementError, TenantOperatorError

logger = logging.getLogger(LOGGER_NAME).getChild("pgpool")


@dataclass
class _ConnectionInfo:
    created_at: float
    last_used: float
    last_checked: float


class RetainingConnectionPool(pool.ThreadedConnectionPool):
    """
    ThreadedConnectionPool that connects lazily but keeps returned connections

    psycopg2 closes a returned connection once minconn idle ones are held, so
    minconn is raised to maxconn after the (empty) initial fill.
    """

    def __init__(self, minconn, maxconn, *args, **kwargs):
        super().__init__(minconn, maxconn, *args, **kwargs)
        self.minconn = maxconn


class AdminPool:
    """
    Bounded, thread-safe pool of autocommit admin connections

    Health checks, idle reclamation and lifetime retirement happen when a
    connection is checked out; there is no background thread. Callers wait for
    a free slot instead of failing when all connections are in use.
    """

    def __init__(
        self,
        dsn: str,
        minconn: int = POOL_MIN_CONN,
        maxconn: int = POOL_MAX_CONN,
        health_check_period: float = POOL_HEALTH_CHECK_PERIOD,
        max_idle_time: float = POOL_MAX_IDLE_TIME,
        max_lifetime: float = POOL_MAX_LIFETIME,
        pool_class=RetainingConnectionPool,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.maxconn = maxconn
        self.health_check_period = health_check_period
        self.max_idle_time = max_idle_time
        self.max_lifetime = max_lifetime
        self._clock = clock
        self._pool = pool_class(minconn, maxconn, dsn)
        self._slots = threading.BoundedSemaphore(maxconn)
        self._info: "WeakKeyDictionary[object, _ConnectionInfo]" = WeakKeyDictionary()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _checked(self, conn, info: _ConnectionInfo, now: float) -> bool:
        if conn.closed:
            return False
        if now - info.created_at >= self.max_lifetime:
            logger.debug("Retiring admin connection past its lifetime")
            return False
        if now - info.last_used >= self.max_idle_time:
            logger.debug("Reclaiming idle admin connection")
            return False
        if now - info.last_checked >= self.health_check_period:
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
            except psycopg2.Error as e:
                logger.warning(f"Admin connection failed health check: {e}")
                return False
            info.last_checked = now
        return True

    def _usable(self, conn) -> bool:
        now = self._clock()
        with self._lock:
            info = self._info.get(conn)
            if info is None:
                self._info[conn] = _ConnectionInfo(now, now, now)
        if info is not None and not self._checked(conn, info, now):
            return False
        try:
            if not conn.autocommit:
                conn.autocommit = True
        except psycopg2.Error as e:
            logger.warning(f"Could not switch admin connection to autocommit: {e}")
            return False
        return True

    def _discard(self, conn):
        with self._lock:
            self._info.pop(conn, None)
        try:
            self._pool.putconn(conn, close=True)
        except pool.PoolError as e:
            logger.warning(f"Could not discard admin connection: {e}")

    def _acquire(self):
        if self._closed:
            raise DatabaseConnectionError("admin connection pool is closed")
        self._slots.acquire()
        try:
            # Each discarded connection frees a slot in the underlying pool
            for _ in range(self.maxconn + 1):
                conn = self._pool.getconn()
                if self._usable(conn):
                    return conn
                self._discard(conn)
        except (psycopg2.Error, pool.PoolError) as e:
            self._slots.release()
            raise DatabaseConnectionError(f"Could not acquire admin connection: {e}", cause=e) from e
        self._slots.release()
        raise DatabaseConnectionError("Could not acquire a healthy admin connection")

    def _release(self, conn, broken: bool = False):
        try:
            if broken or conn.closed:
                self._discard(conn)
            else:
                with self._lock:
                    info = self._info.get(conn)
                    if info is not None:
                        info.last_used = self._clock()
                self._pool.putconn(conn)
        finally:
            self._slots.release()

    @contextmanager
    def connection(self, timeout: Optional[float] = None):
        """
        Check out an autocommit connection

        Args:
            timeout: Optional per-operation limit in seconds, applied as
                statement_timeout for the duration of the checkout
        """
        conn = self._acquire()
        broken = False
        try:
            if timeout:
                with conn.cursor() as cur:
                    cur.execute("SET statement_timeout = %s", (int(timeout * 1000),))
            yield conn
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            broken = True
            raise
        except StatementError as e:
            if isinstance(e.cause, (psycopg2.OperationalError, psycopg2.InterfaceError)):
                broken = True
            raise
        finally:
            if timeout and not broken and not conn.closed:
                try:
                    with conn.cursor() as cur:
                        cur.execute("RESET statement_timeout")
                except psycopg2.Error as e:
                    logger.warning(f"Could not reset statement_timeout, discarding connection: {e}")
                    broken = True
            self._release(conn, broken=broken)

    def ping(self):
        """Run a trivial query to prove the server is reachable"""
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")

    def close(self):
        """Close every pooled connection; safe to call more than once"""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._info.clear()
        self._pool.closeall()
        logger.info("Admin connection pool closed")


class ConnectionFactory:
    """
    Owns the process-wide admin pool

    Concurrent first callers block until the single initialization attempt
    finishes. A failed attempt stays failed until reset().
    """

    def __init__(self, config: Config, pool_class=AdminPool):
        self.config = config
        self._pool_class = pool_class
        self._lock = threading.Lock()
        self._pool: Optional[AdminPool] = None
        self._error: Optional[TenantOperatorError] = None
        self._attempted = False

    def _build(self) -> AdminPool:
        dsn = self.config.admin_connection_string()
        try:
            admin_pool = self._pool_class(dsn)
        except psycopg2.Error as e:
            raise DatabaseConnectionError(f"Failed to create admin connection pool: {e}", cause=e) from e
        try:
            admin_pool.ping()
        except (psycopg2.Error, DatabaseConnectionError) as e:
            admin_pool.close()
            raise DatabaseConnectionError(f"Admin database is unreachable: {e}", cause=e) from e
        logger.info(f"{GREEN}Admin connection pool initialized{RESET}")
        return admin_pool

    def pool(self) -> AdminPool:
        """Return the shared pool, building it on first call"""
        with self._lock:
            if not self._attempted:
                self._attempted = True
                try:
                    self._pool = self._build()
                except TenantOperatorError as e:
                    logger.error(f"Admin pool initialization failed: {e}")
                    self._error = e
                except Exception as e:
                    logger.error(f"Admin pool initialization failed: {e!r}")
                    self._error = DatabaseConnectionError(f"Failed to create admin connection pool: {e!r}", cause=e)
            if self._error is not None:
                raise self._error
            return self._pool

    def close(self):
        """Release the pool; a no-op if it was never built"""
        with self._lock:
            if self._pool is not None:
                self._pool.close()

    def reset(self):
        """Drop the cached pool or cached failure so the next pool() call rebuilds"""
        with self._lock:
            if self._pool is not None:
                self._pool.close()
            self._pool = None
            self._error = None
            self._attempted = False
            logger.info("Admin connection factory reset")
