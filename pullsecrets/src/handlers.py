from __future__ import annotations

import base64
import binascii
import copy
import logging
from typing import Any, Protocol

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    V1LocalObjectReference,
    V1ObjectMeta,
    V1Secret,
)

from pullsecrets.src.controller import SyncResult
from pullsecrets.src.events import ReconcileKey

LOGGER = logging.getLogger(__name__)

DOCKER_CONFIG_JSON_KEY = ".dockerconfigjson"
DOCKER_CONFIG_JSON_TYPE = "kubernetes.io/dockerconfigjson"


class Lister(Protocol):
    def get(self, namespace: str, name: str) -> Any | None: ...

    def get_by_key(self, key: ReconcileKey) -> Any | None: ...


def describe_api_error(exc: ApiException) -> str:
    return f"{exc.status} {exc.reason}".strip()


def _payload_bytes(payload: str | bytes) -> bytes:
    if isinstance(payload, bytes):
        return payload
    return payload.encode("utf-8")


class ServiceAccountSync:
    """Ensure a service account lists the configured image pull secret exactly once.

    The account is read from the informer cache immediately before deciding,
    so a second run against an already-patched account issues no API call.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        lister: Lister,
        secret_name: str,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.lister = lister
        self.secret_name = secret_name
        self.logger = logger or LOGGER

    def __call__(self, key: ReconcileKey) -> SyncResult:
        account = self.lister.get_by_key(key)
        if account is None:
            self.logger.debug("Service account %s no longer exists; nothing to do", key)
            return SyncResult(key=key)

        references = list(account.image_pull_secrets or [])
        if any(reference.name == self.secret_name for reference in references):
            return SyncResult(key=key)

        # Never mutate the cached object; the watch stream refreshes it.
        updated = copy.deepcopy(account)
        updated.image_pull_secrets = [
            *copy.deepcopy(references),
            V1LocalObjectReference(name=self.secret_name),
        ]

        self.logger.info(
            "Adding image pull secret %s to service account %s/%s",
            self.secret_name,
            key.namespace,
            key.name,
        )
        try:
            self.core_api.replace_namespaced_service_account(
                name=key.name,
                namespace=key.namespace,
                body=updated,
            )
        except ApiException as exc:
            self.logger.warning(
                "Failed to update service account %s/%s: %s",
                key.namespace,
                key.name,
                describe_api_error(exc),
            )
            return SyncResult(key=key, actions=1, error=describe_api_error(exc))

        return SyncResult(key=key, actions=1)


def desired_secret(namespace: str, secret_name: str, payload: str | bytes) -> V1Secret:
    """Return the registry credential secret that should exist in *namespace*."""
    encoded = base64.b64encode(_payload_bytes(payload)).decode("ascii")
    return V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=V1ObjectMeta(name=secret_name, namespace=namespace),
        type=DOCKER_CONFIG_JSON_TYPE,
        data={DOCKER_CONFIG_JSON_KEY: encoded},
    )


def secret_payload(secret: Any) -> bytes | None:
    """Decode the ``.dockerconfigjson`` bytes of an existing secret.

    Returns None when the key is missing or is not valid base64.
    """
    data = getattr(secret, "data", None) or {}
    encoded = data.get(DOCKER_CONFIG_JSON_KEY)
    if encoded is None:
        return None
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return None


class NamespaceSync:
    """Ensure every namespace holds the registry credential secret with the configured payload.

    1. Namespaces gone from the cache, or terminating, are skipped.
    2. A missing secret is created.  A ``409 Conflict`` means another
       reconciliation won the race; it is reported as a failure so the key
       is retried and the next attempt finds the secret.
    3. A secret whose ``.dockerconfigjson`` bytes differ is updated in
       place; metadata, type and any other data keys are left untouched.
       The secret is never deleted and recreated.
    4. A secret with matching bytes is left alone.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace_lister: Lister,
        secret_lister: Lister,
        secret_name: str,
        payload: str | bytes,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace_lister = namespace_lister
        self.secret_lister = secret_lister
        self.secret_name = secret_name
        self.payload = _payload_bytes(payload)
        self.logger = logger or LOGGER

    def __call__(self, key: ReconcileKey) -> SyncResult:
        namespace_name = key.name
        namespace = self.namespace_lister.get_by_key(ReconcileKey(namespace="", name=namespace_name))
        if namespace is None:
            self.logger.debug("Namespace %s no longer exists; nothing to do", namespace_name)
            return SyncResult(key=key)

        phase = getattr(getattr(namespace, "status", None), "phase", None)
        if phase == "Terminating":
            self.logger.debug("Namespace %s is terminating; skipping secret sync", namespace_name)
            return SyncResult(key=key)

        desired = desired_secret(namespace_name, self.secret_name, self.payload)
        current = self.secret_lister.get(namespace_name, self.secret_name)

        if current is None:
            return self._create(key, desired)

        if secret_payload(current) == self.payload:
            return SyncResult(key=key)

        return self._update(key, current, desired)

    def _create(self, key: ReconcileKey, desired: V1Secret) -> SyncResult:
        self.logger.info("Creating secret %s/%s", key.name, self.secret_name)
        try:
            self.core_api.create_namespaced_secret(namespace=key.name, body=desired)
        except ApiException as exc:
            if exc.status == 409:
                self.logger.info(
                    "Secret %s/%s already exists; will re-check on retry",
                    key.name,
                    self.secret_name,
                )
            else:
                self.logger.warning(
                    "Failed to create secret %s/%s: %s",
                    key.name,
                    self.secret_name,
                    describe_api_error(exc),
                )
            return SyncResult(key=key, actions=1, error=describe_api_error(exc))
        return SyncResult(key=key, actions=1)

    def _update(self, key: ReconcileKey, current: Any, desired: V1Secret) -> SyncResult:
        updated = copy.deepcopy(current)
        data = dict(getattr(updated, "data", None) or {})
        data[DOCKER_CONFIG_JSON_KEY] = desired.data[DOCKER_CONFIG_JSON_KEY]
        updated.data = data

        self.logger.info("Updating secret %s/%s", key.name, self.secret_name)
        try:
            self.core_api.replace_namespaced_secret(
                name=self.secret_name,
                namespace=key.name,
                body=updated,
            )
        except ApiException as exc:
            self.logger.warning(
                "Failed to update secret %s/%s: %s",
                key.name,
                self.secret_name,
                describe_api_error(exc),
            )
            return SyncResult(key=key, actions=1, error=describe_api_error(exc))
        return SyncResult(key=key, actions=1)
