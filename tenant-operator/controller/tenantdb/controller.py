"""
Tenant Database Controller

Reconciles Tenant resources into a login role, a database owned by it and an
Opaque Secret carrying generated credentials on a PostgreSQL server.

Features:
- Idempotent provisioning of role and database
- Password rotation on every reconciliation
- Credential Secret sync with checksum drift detection
- Owner-linked Secrets garbage-collected with the Tenant
- Teardown or access suspension on deletion
- Status phase/message written back for every outcome
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Mapping, Optional

from tenantdb.config import Config, LOGGER_NAME, GREEN, RED, RESET
from tenantdb.errors import SpecError, TeardownIncompleteError
from tenantdb.pgadmin import DatabaseAdministrator, OperationReport
from tenantdb.pgutil import MAX_IDENTIFIER_LENGTH, parse_duration, tenant_uri
from tenantdb.secretsync import OwnerRefFunc, SecretSynchronizer

logger = logging.getLogger(LOGGER_NAME)


# ============================================================================
# DATA MODELS
# ============================================================================

class Phase(str, Enum):
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    READY = "Ready"
    DELETING = "Deleting"
    GONE = "Gone"
    ERROR = "Error"


def _validate_name(value, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise SpecError(f"spec.{field_name} is required")
    if len(value.encode()) > MAX_IDENTIFIER_LENGTH:
        raise SpecError(f"spec.{field_name} exceeds {MAX_IDENTIFIER_LENGTH} bytes")
    return value


@dataclass(frozen=True)
class TenantSpec:
    """Desired state of one tenant: a database and the login role owning it"""
    database_name: str
    user_name: str
    rotation_interval: str = "0s"
    drop_on_delete: bool = True

    @classmethod
    def from_dict(cls, spec: Optional[Mapping]) -> "TenantSpec":
        """
        Parse the Tenant's .spec, applying defaults

        Raises:
            SpecError: missing names or a malformed rotation interval
        """
        spec = spec or {}
        interval = spec.get("rotationInterval") or "0s"
        parse_duration(interval)
        drop = spec.get("dropOnDelete", True)
        if not isinstance(drop, bool):
            raise SpecError(f"spec.dropOnDelete must be a boolean, got {drop!r}")
        return cls(
            database_name=_validate_name(spec.get("databaseName"), "databaseName"),
            user_name=_validate_name(spec.get("userName"), "userName"),
            rotation_interval=interval,
            drop_on_delete=drop,
        )


@dataclass
class TenantStatus:
    """Observed state written back to the Tenant's .status"""
    phase: Phase = Phase.PENDING
    message: str = ""
    secret_name: Optional[str] = None
    last_rotated: Optional[str] = None

    def to_dict(self) -> dict:
        status = {
            "phase": self.phase.value,
            "message": self.message,
        }
        if self.secret_name is not None:
            status["secretName"] = self.secret_name
        if self.last_rotated is not None:
            status["lastRotated"] = self.last_rotated
        return status


StatusWriter = Callable[[TenantStatus], None]


def check_identity_unchanged(old: Optional[Mapping], new: Optional[Mapping]):
    """
    Reject changes to databaseName or userName after creation

    Raises:
        SpecError: when an identity field changed
    """
    old = old or {}
    new = new or {}
    for field_name in ("databaseName", "userName"):
        if old.get(field_name) and old.get(field_name) != new.get(field_name):
            raise SpecError(
                f"spec.{field_name} is immutable ({old.get(field_name)!r} -> {new.get(field_name)!r})"
            )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# RECONCILIATION CONTROLLER
# ============================================================================

class TenantController:
    """
    Composes the administrator and the Secret synchronizer per Tenant
    """

    def __init__(self, config: Config, administrator: DatabaseAdministrator,
                 synchronizer: SecretSynchronizer):
        self.config = config
        self.administrator = administrator
        self.synchronizer = synchronizer

    @staticmethod
    def secret_name(tenant_name: str) -> str:
        return f"{tenant_name}-credentials"

    def credential_data(self, spec: TenantSpec, password: str) -> Dict[str, bytes]:
        """Secret fields for a tenant credential"""
        cfg = self.config
        uri = tenant_uri(spec.user_name, password, cfg.tenant_host, cfg.tenant_port,
                         spec.database_name, cfg.tenant_sslmode)
        return {
            "username": spec.user_name.encode(),
            "password": password.encode(),
            "database": spec.database_name.encode(),
            "host": cfg.tenant_host.encode(),
            "port": str(cfg.tenant_port).encode(),
            "sslmode": cfg.tenant_sslmode.encode(),
            "uri": uri.encode(),
        }

    @staticmethod
    def _ready_message(report: OperationReport) -> str:
        failed = report.failed_steps()
        if not failed:
            return "Role, database and credentials are in sync"
        steps = ", ".join(r.step for r in failed)
        return f"Role, database and credentials are in sync ({steps} failed)"

    def reconcile(self, name: str, namespace: str, spec: TenantSpec,
                  owner: Optional[OwnerRefFunc], write_status: StatusWriter) -> TenantStatus:
        """
        Provision the tenant and publish its credentials

        Args:
            name: Tenant resource name
            namespace: Tenant namespace, where the Secret is written
            spec: Desired state
            owner: Owner capability for the credential Secret
            write_status: Receives every status transition

        Returns:
            The final (Ready) status

        Raises:
            Any failure, after phase Error has been written
        """
        logger.info(f"Reconciling tenant {namespace}/{name} (database={spec.database_name}, user={spec.user_name})")
        write_status(TenantStatus(Phase.PROVISIONING, "Provisioning role and database"))

        secret = self.secret_name(name)
        try:
            report = self.administrator.ensure_role_and_database(spec.database_name, spec.user_name)
            rotation = self.administrator.rotate_password(spec.user_name, spec.rotation_interval)
            self.synchronizer.upsert_secret(
                namespace,
                secret,
                self.credential_data(spec, rotation.password),
                owner,
            )
        except Exception as e:
            logger.error(f"{RED}Reconciliation of tenant {namespace}/{name} failed: {e}{RESET}")
            write_status(TenantStatus(Phase.ERROR, str(e)))
            raise

        status = TenantStatus(
            Phase.READY,
            self._ready_message(report),
            secret_name=secret,
            last_rotated=_now() if rotation.rotated else None,
        )
        write_status(status)
        logger.info(f"{GREEN}Tenant {namespace}/{name} is ready{RESET}")
        return status

    def finalize(self, name: str, namespace: str, spec: TenantSpec,
                 write_status: StatusWriter) -> TenantStatus:
        """
        Tear down (or suspend) the tenant before its finalizer is released

        With dropOnDelete the database and role are removed; otherwise the role
        only loses access and the data stays. The Secret goes away with its owner.

        Raises:
            TeardownIncompleteError: database or role could not be dropped
        """
        logger.info(f"Finalizing tenant {namespace}/{name} (dropOnDelete={spec.drop_on_delete})")
        write_status(TenantStatus(Phase.DELETING, "Removing tenant access"))

        try:
            if spec.drop_on_delete:
                report = self.administrator.teardown(spec.database_name, spec.user_name)
                leftovers = [r.step for r in report.failed_steps() if r.step in ("drop_database", "drop_role")]
                if leftovers:
                    raise TeardownIncompleteError(
                        f"teardown incomplete for tenant {namespace}/{name}: {', '.join(leftovers)} failed"
                    )
                message = "Database and role dropped"
            else:
                self.administrator.suspend_access(spec.database_name, spec.user_name)
                message = "Access suspended, database kept"
        except Exception as e:
            logger.error(f"{RED}Finalization of tenant {namespace}/{name} failed: {e}{RESET}")
            write_status(TenantStatus(Phase.ERROR, str(e)))
            raise

        status = TenantStatus(Phase.GONE, message)
        write_status(status)
        logger.info(f"{GREEN}Tenant {namespace}/{name} finalized: {message}{RESET}")
        return status
