"""
kopf event handlers for Tenant resources.

kopf delivers create/update/delete events, retries failed handlers and holds
the deletion finalizer until the delete handler returns.

Run with: kopf run -m tenantdb.handlers --all-namespaces
"""

import logging
from typing import Any

import kopf
from kubernetes import client, config as k8s_config

from tenantdb.config import Config, CRD_GROUP, CRD_VERSION, CRD_PLURAL, configure_logging
from tenantdb.controller import Phase, TenantController, TenantSpec, TenantStatus, check_identity_unchanged
from tenantdb.errors import SpecError
from tenantdb.pgadmin import DatabaseAdministrator
from tenantdb.pgpool import ConnectionFactory
from tenantdb.secretsync import SecretSynchronizer, owner_reference_for

FINALIZER = f"{CRD_GROUP}/teardown"
RETRY_DELAY = 30


def _load_kube_config(logger: logging.Logger):
    try:
        k8s_config.load_incluster_config()
    except k8s_config.ConfigException:
        logger.warning("Failed to load in-cluster config, trying local kubeconfig")
        k8s_config.load_kube_config()


def build_controller(cfg: Config, factory: ConnectionFactory, core_v1: client.CoreV1Api) -> TenantController:
    administrator = DatabaseAdministrator(factory, statement_timeout=cfg.statement_timeout)
    synchronizer = SecretSynchronizer(core_v1, retries=cfg.secret_update_retries)
    return TenantController(cfg, administrator, synchronizer)


def _status_writer(patch: kopf.Patch):
    def write(status: TenantStatus):
        patch.status.update(status.to_dict())
    return write


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **_: Any):
    cfg = Config.from_env()
    logger = configure_logging(cfg.log_level)

    settings.persistence.finalizer = FINALIZER
    settings.posting.level = logging.WARNING

    _load_kube_config(logger)
    memo.factory = ConnectionFactory(cfg)
    memo.controller = build_controller(cfg, memo.factory, client.CoreV1Api())
    logger.info("Tenant controller initialized")


@kopf.on.cleanup()
def shutdown(memo: kopf.Memo, **_: Any):
    factory = getattr(memo, "factory", None)
    if factory is not None:
        factory.close()


@kopf.on.create(CRD_GROUP, CRD_VERSION, CRD_PLURAL)
@kopf.on.update(CRD_GROUP, CRD_VERSION, CRD_PLURAL)
def reconcile_tenant(spec, body, name, namespace, patch, memo, old=None, new=None, **_: Any):
    """Provision the tenant; failures are retried by kopf"""
    write_status = _status_writer(patch)
    try:
        if old is not None and new is not None:
            check_identity_unchanged(old.get("spec"), new.get("spec"))
        tenant = TenantSpec.from_dict(spec)
    except SpecError as e:
        write_status(TenantStatus(Phase.ERROR, str(e)))
        raise kopf.PermanentError(str(e)) from e

    try:
        memo.controller.reconcile(name, namespace, tenant, owner_reference_for(body), write_status)
    except SpecError as e:
        raise kopf.PermanentError(str(e)) from e
    except Exception as e:
        raise kopf.TemporaryError(str(e), delay=RETRY_DELAY) from e


@kopf.on.delete(CRD_GROUP, CRD_VERSION, CRD_PLURAL)
def finalize_tenant(spec, name, namespace, patch, memo, **_: Any):
    """Tear down the tenant; the finalizer is only released when this returns"""
    write_status = _status_writer(patch)
    try:
        # The rotation interval plays no part in teardown
        tenant = TenantSpec.from_dict({**dict(spec or {}), "rotationInterval": "0s"})
    except SpecError as e:
        # Without both names nothing was ever provisioned
        write_status(TenantStatus(Phase.GONE, f"Invalid spec, nothing to tear down: {e}"))
        return

    try:
        memo.controller.finalize(name, namespace, tenant, write_status)
    except Exception as e:
        raise kopf.TemporaryError(str(e), delay=RETRY_DELAY) from e
