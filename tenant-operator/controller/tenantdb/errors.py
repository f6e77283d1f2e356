"""
Error taxonomy for the tenant database controller.

NotFoundError is the normal "needs creation" branch and never surfaces as a
reconciliation failure. ConflictError only escapes once the retry budget of a
Secret update is spent.
"""

from typing import Optional


class TenantOperatorError(Exception):
    """Base exception for all controller errors"""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        return self.message


class ConfigError(TenantOperatorError):
    """Malformed connection or controller configuration"""


class DatabaseConnectionError(TenantOperatorError):
    """Admin pool could not be initialized or a connection could not be acquired.

    A failed pool initialization is cached until the process restarts or the
    connection factory is reset explicitly.
    """


class StatementError(TenantOperatorError):
    """An administrative SQL statement failed"""

    def __init__(self, message: str, *, statement: str = "", cause: Optional[BaseException] = None):
        super().__init__(message, cause=cause)
        self.statement = statement


class NotFoundError(TenantOperatorError):
    """Requested object does not exist"""


class ConflictError(TenantOperatorError):
    """Concurrent modification persisted after the retry budget was exhausted"""


class OwnershipError(TenantOperatorError):
    """Owner reference could not be established"""


class SpecError(TenantOperatorError):
    """Desired state is invalid (bad duration, missing name, changed identity field)"""


class TeardownIncompleteError(TenantOperatorError):
    """Teardown left the role or database in place; deletion must be retried"""
