"""
Tests for credential Secret synchronization
"""

import base64
from collections import OrderedDict

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from tenantdb.config import CHECKSUM_ANNOTATION
from tenantdb.errors import ConflictError, OwnershipError
from tenantdb.secretsync import (
    SecretSynchronizer,
    UpsertResult,
    checksum_data,
    owner_reference_for,
)

DATA = {"username": b"app1", "password": b"s3cret", "uri": b"postgresql://app1@db/tenant1"}


def make_sync(core_v1, retries=5):
    return SecretSynchronizer(core_v1, retries=retries, sleep=lambda _: None)


def test_checksum_is_order_independent():
    forward = OrderedDict([("a", b"1"), ("b", b"2"), ("c", b"3")])
    backward = OrderedDict([("c", b"3"), ("b", b"2"), ("a", b"1")])

    assert checksum_data(forward) == checksum_data(backward), "Insertion order must not matter"
    assert checksum_data({"a": b"1"}) != checksum_data({"a": b"2"})


def test_checksum_separates_keys_and_values():
    assert checksum_data({"ab": b"c"}) != checksum_data({"a": b"bc"}), "NUL separators prevent collisions"
    assert len(checksum_data({})) == 64


def test_create_sets_type_annotation_and_owner(core_v1, tenant_body):
    sync = make_sync(core_v1)

    result = sync.upsert_secret("tenants", "acme-credentials", DATA, owner_reference_for(tenant_body))

    assert result is UpsertResult.CREATED
    stored = core_v1.secrets[("tenants", "acme-credentials")]
    assert stored.type == "Opaque"
    assert stored.metadata.annotations[CHECKSUM_ANNOTATION] == checksum_data(DATA)
    assert base64.b64decode(stored.data["password"]) == b"s3cret"
    [ref] = stored.metadata.owner_references
    assert (ref.kind, ref.name, ref.uid) == ("Tenant", "acme", "7f3c-uid")
    assert ref.controller is True and ref.block_owner_deletion is True


def test_unchanged_data_performs_no_write(core_v1):
    sync = make_sync(core_v1)

    sync.upsert_secret("tenants", "acme-credentials", DATA)
    version = core_v1.secrets[("tenants", "acme-credentials")].metadata.resource_version
    result = sync.upsert_secret("tenants", "acme-credentials", dict(reversed(list(DATA.items()))))

    assert result is UpsertResult.UNCHANGED
    assert core_v1.writes == 1, "Identical data must produce exactly one write"
    assert core_v1.secrets[("tenants", "acme-credentials")].metadata.resource_version == version


def test_changed_data_updates_secret(core_v1, tenant_body):
    sync = make_sync(core_v1)
    sync.upsert_secret("tenants", "acme-credentials", DATA, owner_reference_for(tenant_body))

    rotated = dict(DATA, password=b"n3w")
    result = sync.upsert_secret("tenants", "acme-credentials", rotated, owner_reference_for(tenant_body))

    stored = core_v1.secrets[("tenants", "acme-credentials")]
    assert result is UpsertResult.UPDATED
    assert base64.b64decode(stored.data["password"]) == b"n3w"
    assert stored.metadata.annotations[CHECKSUM_ANNOTATION] == checksum_data(rotated)
    assert len(stored.metadata.owner_references) == 1, "Owner reference should not be duplicated"


def test_checksum_drift_alone_triggers_update(core_v1):
    sync = make_sync(core_v1)
    sync.upsert_secret("tenants", "acme-credentials", DATA)
    core_v1.secrets[("tenants", "acme-credentials")].metadata.annotations[CHECKSUM_ANNOTATION] = "stale"

    result = sync.upsert_secret("tenants", "acme-credentials", DATA)

    assert result is UpsertResult.UPDATED
    stored = core_v1.secrets[("tenants", "acme-credentials")]
    assert stored.metadata.annotations[CHECKSUM_ANNOTATION] == checksum_data(DATA)


def test_update_never_changes_secret_type(core_v1):
    sync = make_sync(core_v1)
    sync.upsert_secret("tenants", "acme-credentials", DATA)
    core_v1.secrets[("tenants", "acme-credentials")].type = "kubernetes.io/basic-auth"

    sync.upsert_secret("tenants", "acme-credentials", dict(DATA, password=b"n3w"))

    assert core_v1.secrets[("tenants", "acme-credentials")].type == "kubernetes.io/basic-auth"


def test_update_retries_on_conflict(core_v1):
    sync = make_sync(core_v1)
    sync.upsert_secret("tenants", "acme-credentials", DATA)
    core_v1.replace_errors = [ApiException(status=409, reason="Conflict")] * 2

    result = sync.upsert_secret("tenants", "acme-credentials", dict(DATA, password=b"n3w"))

    assert result is UpsertResult.UPDATED
    assert core_v1.writes == 2


def test_conflict_retry_budget_is_bounded(core_v1):
    sync = make_sync(core_v1, retries=3)
    sync.upsert_secret("tenants", "acme-credentials", DATA)
    core_v1.replace_errors = [ApiException(status=409, reason="Conflict")] * 10

    with pytest.raises(ConflictError):
        sync.upsert_secret("tenants", "acme-credentials", dict(DATA, password=b"n3w"))

    assert len(core_v1.replace_errors) == 7, "Exactly three attempts should be made"


def test_other_update_errors_propagate_immediately(core_v1):
    sync = make_sync(core_v1)
    sync.upsert_secret("tenants", "acme-credentials", DATA)
    core_v1.replace_errors = [ApiException(status=403, reason="Forbidden"), ApiException(status=409)]

    with pytest.raises(ApiException) as exc:
        sync.upsert_secret("tenants", "acme-credentials", dict(DATA, password=b"n3w"))

    assert exc.value.status == 403
    assert len(core_v1.replace_errors) == 1, "No retry after a non-conflict error"


def test_owner_missing_uid_raises_ownership_error(core_v1, tenant_body):
    del tenant_body["metadata"]["uid"]
    sync = make_sync(core_v1)

    with pytest.raises(OwnershipError):
        sync.upsert_secret("tenants", "acme-credentials", DATA, owner_reference_for(tenant_body))

    assert core_v1.writes == 0, "Nothing should be created without an owner link"


def test_cross_namespace_owner_is_rejected(core_v1, tenant_body):
    sync = make_sync(core_v1)

    with pytest.raises(OwnershipError):
        sync.upsert_secret("elsewhere", "acme-credentials", DATA, owner_reference_for(tenant_body))


def test_secret_controlled_by_another_owner_is_rejected(core_v1, tenant_body):
    sync = make_sync(core_v1)
    sync.upsert_secret("tenants", "acme-credentials", DATA)
    core_v1.secrets[("tenants", "acme-credentials")].metadata.owner_references = [
        client.V1OwnerReference(api_version="apps/v1", kind="Deployment", name="other", uid="other-uid",
                                controller=True)
    ]

    with pytest.raises(OwnershipError):
        sync.upsert_secret("tenants", "acme-credentials", dict(DATA, password=b"n3w"),
                           owner_reference_for(tenant_body))


def test_read_errors_other_than_not_found_propagate(tenant_body):
    class BrokenApi:
        def read_namespaced_secret(self, name, namespace):
            raise ApiException(status=500, reason="Internal Server Error")

    with pytest.raises(ApiException):
        make_sync(BrokenApi()).upsert_secret("tenants", "acme-credentials", DATA)
