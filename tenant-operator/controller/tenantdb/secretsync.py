"""
Credential Secret synchronization.

Secrets are created as Opaque with a checksum annotation and a controller owner
reference to the Tenant, so they are garbage-collected with it. Updates only
happen when the data or checksum drifted, and are retried on write conflicts.
The Secret type is never touched after creation.
"""

import time
import base64
import random
import hashlib
import logging
from enum import Enum
from typing import Callable, Dict, Mapping, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from tenantdb.config import CHECKSUM_ANNOTATION, LOGGER_NAME, SECRET_RETRY_DELAY, WHITE, RESET
from tenantdb.errors import ConflictError, OwnershipError

logger = logging.getLogger(LOGGER_NAME).getChild("secretsync")

# Given the Secret's namespace, returns the owner reference to set on it
OwnerRefFunc = Callable[[str], client.V1OwnerReference]


class UpsertResult(str, Enum):
    CREATED = "Created"
    UPDATED = "Updated"
    UNCHANGED = "Unchanged"


def checksum_data(data: Mapping[str, bytes]) -> str:
    """
    Stable SHA-256 over a Secret's data

    Keys are visited in sorted order and each key and value is followed by a
    NUL byte, so insertion order never changes the result.
    """
    h = hashlib.sha256()
    for key in sorted(data):
        h.update(key.encode())
        h.update(b"\x00")
        h.update(data[key])
        h.update(b"\x00")
    return h.hexdigest()


def encode_data(data: Mapping[str, bytes]) -> Dict[str, str]:
    """Base64-encode values the way the API server stores Secret data"""
    return {key: base64.b64encode(value).decode() for key, value in data.items()}


def owner_reference_for(body: Mapping) -> OwnerRefFunc:
    """
    Build the owner capability for a namespaced custom resource

    Args:
        body: The owner object (apiVersion, kind, metadata.name/uid/namespace)

    Returns:
        Function that produces a controller owner reference for a dependent
        in the given namespace
    """
    metadata = body.get("metadata") or {}

    def owner_ref(namespace: str) -> client.V1OwnerReference:
        missing = [
            f for f, v in (
                ("apiVersion", body.get("apiVersion")),
                ("kind", body.get("kind")),
                ("metadata.name", metadata.get("name")),
                ("metadata.uid", metadata.get("uid")),
            ) if not v
        ]
        if missing:
            raise OwnershipError(f"owner is missing {', '.join(missing)}")
        owner_ns = metadata.get("namespace")
        if owner_ns and owner_ns != namespace:
            raise OwnershipError(
                f"cross-namespace owner reference not allowed: owner in {owner_ns}, dependent in {namespace}"
            )
        return client.V1OwnerReference(
            api_version=body["apiVersion"],
            kind=body["kind"],
            name=metadata["name"],
            uid=metadata["uid"],
            controller=True,
            block_owner_deletion=True,
        )

    return owner_ref


def set_controller_reference(metadata: client.V1ObjectMeta, ref: client.V1OwnerReference):
    """
    Put `ref` on the object as its controller

    Raises:
        OwnershipError: when another object already controls it
    """
    refs = list(metadata.owner_references or [])
    for existing in refs:
        if existing.controller and existing.uid != ref.uid:
            raise OwnershipError(
                f"object {metadata.namespace}/{metadata.name} is already controlled by "
                f"{existing.kind} {existing.name}"
            )
    refs = [r for r in refs if r.uid != ref.uid]
    refs.append(ref)
    metadata.owner_references = refs


class SecretSynchronizer:
    """Create-or-update of Opaque credential Secrets"""

    def __init__(
        self,
        core_v1: client.CoreV1Api,
        retries: int = 5,
        retry_delay: float = SECRET_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.v1 = core_v1
        self.retries = retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    def _read(self, namespace: str, name: str) -> Optional[client.V1Secret]:
        try:
            return self.v1.read_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def upsert_secret(
        self,
        namespace: str,
        name: str,
        data: Mapping[str, bytes],
        owner: Optional[OwnerRefFunc] = None,
    ) -> UpsertResult:
        """
        Create the Secret or bring its data up to date

        Args:
            namespace: Secret namespace
            name: Secret name
            data: Field name to raw bytes
            owner: Owner capability; when given the Secret is controlled by it

        Returns:
            UpsertResult describing the write that happened, if any

        Raises:
            OwnershipError: owner reference could not be set
            ConflictError: update kept conflicting for the whole retry budget
            ApiException: any other API failure
        """
        checksum = checksum_data(data)
        encoded = encode_data(data)

        existing = self._read(namespace, name)
        if existing is None:
            secret = client.V1Secret(
                api_version="v1",
                kind="Secret",
                metadata=client.V1ObjectMeta(
                    name=name,
                    namespace=namespace,
                    annotations={CHECKSUM_ANNOTATION: checksum},
                ),
                type="Opaque",
                data=encoded,
            )
            if owner is not None:
                set_controller_reference(secret.metadata, owner(namespace))
            self.v1.create_namespaced_secret(namespace, secret)
            logger.info(f"{WHITE}Created secret {namespace}/{name}{RESET}")
            return UpsertResult.CREATED

        annotations = existing.metadata.annotations or {}
        if (existing.data or {}) == encoded and annotations.get(CHECKSUM_ANNOTATION) == checksum:
            logger.debug(f"Secret {namespace}/{name} is up to date")
            return UpsertResult.UNCHANGED

        last_conflict = None
        for attempt in range(self.retries):
            if attempt:
                self._sleep(self.retry_delay * (1 + random.uniform(0, 0.1)))
            current = self.v1.read_namespaced_secret(name, namespace)
            current.metadata.annotations = dict(current.metadata.annotations or {})
            current.metadata.annotations[CHECKSUM_ANNOTATION] = checksum
            current.data = dict(encoded)
            if owner is not None:
                set_controller_reference(current.metadata, owner(namespace))
            try:
                self.v1.replace_namespaced_secret(name, namespace, current)
            except ApiException as e:
                if e.status != 409:
                    raise
                last_conflict = e
                logger.warning(f"Conflict updating secret {namespace}/{name} "
                               f"(attempt {attempt + 1}/{self.retries}), retrying")
                continue
            logger.info(f"{WHITE}Updated secret {namespace}/{name}{RESET}")
            return UpsertResult.UPDATED

        raise ConflictError(
            f"secret {namespace}/{name} kept conflicting after {self.retries} attempts",
            cause=last_conflict,
        )
