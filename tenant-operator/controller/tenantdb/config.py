"""
Configuration and logging for the tenant database controller.

Admin connection settings resolve with this precedence: a full connection string
(PG_ADMIN_DSN) wins over the discrete PG_* settings. Tenant-facing connection
strings written into credential Secrets use their own host/port/ssl-mode values,
falling back to the admin ones.
"""

import os
import sys
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

import psycopg2
from psycopg2.extensions import make_dsn, parse_dsn

from tenantdb.errors import ConfigError

# ANSI color codes
RED = "\033[91m"
WHITE = "\033[97m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RESET = "\033[0m"

LOGGER_NAME = "tenant-controller"

SSL_MODES = {"disable", "allow", "prefer", "require", "verify-ca", "verify-full"}

# Admin pool settings (seconds where applicable)
POOL_MIN_CONN = 0
POOL_MAX_CONN = 10
POOL_HEALTH_CHECK_PERIOD = 30
POOL_MAX_IDLE_TIME = 5 * 60
POOL_MAX_LIFETIME = 30 * 60

# Custom resource coordinates
CRD_GROUP = "db.tenancy.io"
CRD_VERSION = "v1alpha1"
CRD_PLURAL = "tenants"

CHECKSUM_ANNOTATION = "checksum/data"
SECRET_RETRY_DELAY = 0.01


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Configure structured JSON-line logging on stdout"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    return logging.getLogger(LOGGER_NAME)


def _parse_port(raw: str, variable: str) -> int:
    try:
        port = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{variable} must be an integer, got {raw!r}")
    if not 0 < port < 65536:
        raise ConfigError(f"{variable} out of range: {port}")
    return port


def _parse_sslmode(raw: str, variable: str) -> str:
    if raw not in SSL_MODES:
        raise ConfigError(f"{variable} must be one of {sorted(SSL_MODES)}, got {raw!r}")
    return raw


def _parse_int(raw: str, variable: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{variable} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables"""

    # Admin connection
    admin_dsn: str = ""
    db_host: str = "localhost"
    db_port: int = 5432
    db_sslmode: str = "disable"
    db_user: str = "postgres"
    db_password: str = ""
    db_name: str = "postgres"
    connect_timeout: int = 10
    statement_timeout: float = 0.0

    # Tenant-facing connection strings
    tenant_host: str = "localhost"
    tenant_port: int = 5432
    tenant_sslmode: str = "disable"

    # Controller settings
    secret_update_retries: int = 5
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """
        Build configuration from environment variables

        Args:
            environ: Mapping to read from, defaults to os.environ

        Returns:
            Validated Config

        Raises:
            ConfigError: when any value is malformed
        """
        env = os.environ if environ is None else environ

        admin_dsn = env.get("PG_ADMIN_DSN", "").strip()
        if admin_dsn:
            try:
                params = parse_dsn(admin_dsn)
            except psycopg2.ProgrammingError as e:
                raise ConfigError(f"PG_ADMIN_DSN is not a valid connection string: {e}")
            # Discrete PG_* settings are ignored; tenant defaults come from the DSN
            db_host = params.get("host", "localhost").split(",")[0]
            db_port = _parse_port(params.get("port", "5432").split(",")[0], "PG_ADMIN_DSN port")
            db_sslmode = _parse_sslmode(params.get("sslmode", "disable"), "PG_ADMIN_DSN sslmode")
        else:
            db_host = env.get("PG_HOST", "localhost")
            db_port = _parse_port(env.get("PG_PORT", "5432"), "PG_PORT")
            db_sslmode = _parse_sslmode(env.get("PG_SSLMODE", "disable"), "PG_SSLMODE")

        retries = _parse_int(env.get("SECRET_UPDATE_RETRIES", "5"), "SECRET_UPDATE_RETRIES")
        if retries < 1:
            raise ConfigError(f"SECRET_UPDATE_RETRIES must be positive, got {retries}")

        try:
            statement_timeout = float(env.get("STATEMENT_TIMEOUT", "0"))
        except ValueError:
            raise ConfigError(f"STATEMENT_TIMEOUT must be a number, got {env.get('STATEMENT_TIMEOUT')!r}")

        return cls(
            admin_dsn=admin_dsn,
            db_host=db_host,
            db_port=db_port,
            db_sslmode=db_sslmode,
            db_user=env.get("PG_ADMIN_USER", "postgres"),
            db_password=env.get("PG_ADMIN_PASSWORD", ""),
            db_name=env.get("PG_ADMIN_DATABASE", "postgres"),
            connect_timeout=_parse_int(env.get("PG_CONNECT_TIMEOUT", "10"), "PG_CONNECT_TIMEOUT"),
            statement_timeout=statement_timeout,
            tenant_host=env.get("TENANT_DB_HOST", db_host),
            tenant_port=_parse_port(env.get("TENANT_DB_PORT", str(db_port)), "TENANT_DB_PORT"),
            tenant_sslmode=_parse_sslmode(env.get("TENANT_DB_SSLMODE", db_sslmode), "TENANT_DB_SSLMODE"),
            secret_update_retries=retries,
            log_level=env.get("LOG_LEVEL", "INFO"),
        )

    def admin_connection_string(self) -> str:
        """Connection string for the admin pool; an explicit DSN overrides discrete settings"""
        if self.admin_dsn:
            return self.admin_dsn
        return make_dsn(
            host=self.db_host,
            port=self.db_port,
            sslmode=self.db_sslmode,
            user=self.db_user,
            password=self.db_password or None,
            dbname=self.db_name,
            connect_timeout=self.connect_timeout,
        )
