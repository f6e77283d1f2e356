"""
Idempotent PostgreSQL administration for tenant roles and databases.

Every operation can be re-run after a partial failure: objects that already
exist (or are already gone) are reported as skipped rather than raising.
Best-effort steps (the privilege grant and each teardown statement) never
raise; their failures are recorded in the returned OperationReport.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, NamedTuple, Optional, Sequence, Union

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2 import sql

from tenantdb.config import LOGGER_NAME, WHITE, YELLOW, RESET
from tenantdb.errors import StatementError
from tenantdb.pgpool import ConnectionFactory
from tenantdb.pgutil import generate_password, parse_duration, quote_ident, statement

logger = logging.getLogger(LOGGER_NAME).getChild("pgadmin")

ROLE_EXISTS = "SELECT 1 FROM pg_roles WHERE rolname = %s"
DATABASE_EXISTS = "SELECT 1 FROM pg_database WHERE datname = %s"
TERMINATE_DATABASE_SESSIONS = (
    "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
    "WHERE datname = %s AND pid <> pg_backend_pid()"
)
TERMINATE_USER_SESSIONS = (
    "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
    "WHERE usename = %s AND pid <> pg_backend_pid()"
)

_ALREADY_EXISTS = (pg_errors.DuplicateObject, pg_errors.DuplicateDatabase)


class Outcome(str, Enum):
    SUCCEEDED = "Succeeded"
    SKIPPED = "Skipped"
    FAILED = "Failed"


@dataclass
class StepResult:
    step: str
    outcome: Outcome
    error: Optional[str] = None


@dataclass
class OperationReport:
    """Per-step outcome of an administrative operation"""
    operation: str
    steps: List[StepResult] = field(default_factory=list)

    def add(self, step: str, outcome: Outcome, error: Optional[str] = None):
        self.steps.append(StepResult(step, outcome, error))

    def outcome_of(self, step: str) -> Optional[Outcome]:
        for result in self.steps:
            if result.step == step:
                return result.outcome
        return None

    def failed_steps(self) -> List[StepResult]:
        return [r for r in self.steps if r.outcome is Outcome.FAILED]

    @property
    def degraded(self) -> bool:
        return bool(self.failed_steps())


class Rotation(NamedTuple):
    password: str
    rotated: bool


Statement = Union[str, sql.Composed]


def _text(stmt: Statement) -> str:
    if isinstance(stmt, sql.Composable):
        return stmt.as_string(None)
    return stmt


class DatabaseAdministrator:
    """Creates, rotates, suspends and tears down tenant roles and databases"""

    def __init__(
        self,
        connections: ConnectionFactory,
        statement_timeout: Optional[float] = None,
        password_generator: Callable[[], str] = generate_password,
    ):
        self.connections = connections
        self.statement_timeout = statement_timeout or None
        self._generate_password = password_generator

    def _run(self, cur, stmt: Statement, params: Optional[Sequence] = None):
        try:
            cur.execute(stmt, params)
        except psycopg2.Error as e:
            raise StatementError(
                f"{_text(stmt).split(' ')[0]} failed: {str(e).strip()}",
                statement=_text(stmt),
                cause=e,
            ) from e

    def _exists(self, cur, query: str, name: str) -> bool:
        self._run(cur, query, (name,))
        return cur.fetchone() is not None

    def _best_effort(self, report: OperationReport, step: str, cur, stmt: Statement,
                     params: Optional[Sequence] = None) -> bool:
        try:
            self._run(cur, stmt, params)
        except StatementError as e:
            logger.warning(f"{YELLOW}{report.operation}: {step} failed, continuing: {e}{RESET}")
            report.add(step, Outcome.FAILED, str(e))
            return False
        report.add(step, Outcome.SUCCEEDED)
        return True

    def _connection(self, timeout: Optional[float]):
        return self.connections.pool().connection(timeout or self.statement_timeout)

    def role_exists(self, user: str, timeout: Optional[float] = None) -> bool:
        with self._connection(timeout) as conn:
            with conn.cursor() as cur:
                return self._exists(cur, ROLE_EXISTS, user)

    def database_exists(self, database: str, timeout: Optional[float] = None) -> bool:
        with self._connection(timeout) as conn:
            with conn.cursor() as cur:
                return self._exists(cur, DATABASE_EXISTS, database)

    def ensure_role_and_database(self, database: str, user: str,
                                 timeout: Optional[float] = None) -> OperationReport:
        """
        Make sure the login role and the database it owns exist

        The role starts with a throwaway random password that rotation replaces.
        The final GRANT is best-effort and never fails the operation.

        Args:
            database: Database name
            user: Login role name
            timeout: Optional per-operation limit in seconds

        Returns:
            OperationReport with steps create_role, create_database, grant_privileges
        """
        db = quote_ident(database)
        role = quote_ident(user)
        report = OperationReport("ensure_role_and_database")

        with self._connection(timeout) as conn:
            with conn.cursor() as cur:
                if self._exists(cur, ROLE_EXISTS, user):
                    report.add("create_role", Outcome.SKIPPED)
                else:
                    try:
                        self._run(cur, statement("CREATE ROLE {} WITH LOGIN PASSWORD %s", role),
                                  (self._generate_password(),))
                        logger.info(f"{WHITE}Created role: {user}{RESET}")
                        report.add("create_role", Outcome.SUCCEEDED)
                    except StatementError as e:
                        if not isinstance(e.cause, _ALREADY_EXISTS):
                            raise
                        report.add("create_role", Outcome.SKIPPED)

                if self._exists(cur, DATABASE_EXISTS, database):
                    report.add("create_database", Outcome.SKIPPED)
                else:
                    try:
                        self._run(cur, statement("CREATE DATABASE {} OWNER {}", db, role))
                        logger.info(f"{WHITE}Created database: {database} (owner {user}){RESET}")
                        report.add("create_database", Outcome.SUCCEEDED)
                    except StatementError as e:
                        if not isinstance(e.cause, _ALREADY_EXISTS):
                            raise
                        report.add("create_database", Outcome.SKIPPED)

                self._best_effort(report, "grant_privileges", cur,
                                  statement("GRANT ALL PRIVILEGES ON DATABASE {} TO {}", db, role))
        return report

    def rotate_password(self, user: str, interval: Optional[str] = "0s",
                        timeout: Optional[float] = None) -> Rotation:
        """
        Generate and apply a new password for the role

        The interval is validated but does not gate rotation: every call rotates.

        Returns:
            Rotation(password, rotated)
        """
        period = parse_duration(interval)
        role = quote_ident(user)
        password = self._generate_password()

        with self._connection(timeout) as conn:
            with conn.cursor() as cur:
                self._run(cur, statement("ALTER ROLE {} WITH PASSWORD %s", role), (password,))

        logger.info(f"Rotated password for role {user} (declared interval {period})")
        return Rotation(password, True)

    def teardown(self, database: str, user: str, timeout: Optional[float] = None) -> OperationReport:
        """
        Remove the tenant database and role

        Order: terminate sessions, revoke connect, drop database, drop owned
        objects, drop role. Each statement is best-effort; absent objects are skipped.

        Returns:
            OperationReport with one step per statement
        """
        db = quote_ident(database)
        role = quote_ident(user)
        report = OperationReport("teardown")

        with self._connection(timeout) as conn:
            with conn.cursor() as cur:
                db_present = self._exists(cur, DATABASE_EXISTS, database)
                role_present = self._exists(cur, ROLE_EXISTS, user)

                if db_present:
                    self._best_effort(report, "terminate_sessions", cur, TERMINATE_DATABASE_SESSIONS, (database,))
                    if role_present:
                        revoke = statement("REVOKE CONNECT ON DATABASE {} FROM PUBLIC, {}", db, role)
                    else:
                        revoke = statement("REVOKE CONNECT ON DATABASE {} FROM PUBLIC", db)
                    self._best_effort(report, "revoke_connect", cur, revoke)
                    if self._best_effort(report, "drop_database", cur, statement("DROP DATABASE IF EXISTS {}", db)):
                        logger.info(f"{WHITE}Dropped database: {database}{RESET}")
                else:
                    for step in ("terminate_sessions", "revoke_connect", "drop_database"):
                        report.add(step, Outcome.SKIPPED)

                if role_present:
                    self._best_effort(report, "drop_owned", cur, statement("DROP OWNED BY {}", role))
                    if self._best_effort(report, "drop_role", cur, statement("DROP ROLE IF EXISTS {}", role)):
                        logger.info(f"{WHITE}Dropped role: {user}{RESET}")
                else:
                    for step in ("drop_owned", "drop_role"):
                        report.add(step, Outcome.SKIPPED)
        return report

    def suspend_access(self, database: str, user: str, timeout: Optional[float] = None) -> OperationReport:
        """
        Cut the role off from the database without deleting any data

        Terminates the role's sessions, revokes its database privileges and
        turns it into a NOLOGIN role. Statement failures propagate.
        """
        db = quote_ident(database)
        role = quote_ident(user)
        report = OperationReport("suspend_access")

        with self._connection(timeout) as conn:
            with conn.cursor() as cur:
                if not self._exists(cur, ROLE_EXISTS, user):
                    for step in ("terminate_sessions", "revoke_privileges", "disable_login"):
                        report.add(step, Outcome.SKIPPED)
                    return report

                self._run(cur, TERMINATE_USER_SESSIONS, (user,))
                report.add("terminate_sessions", Outcome.SUCCEEDED)

                if self._exists(cur, DATABASE_EXISTS, database):
                    self._run(cur, statement("REVOKE ALL PRIVILEGES ON DATABASE {} FROM {}", db, role))
                    report.add("revoke_privileges", Outcome.SUCCEEDED)
                else:
                    report.add("revoke_privileges", Outcome.SKIPPED)

                self._run(cur, statement("ALTER ROLE {} NOLOGIN", role))
                report.add("disable_login", Outcome.SUCCEEDED)

        logger.info(f"{WHITE}Suspended access for role {user} on database {database}{RESET}")
        return report
