from __future__ import annotations

import base64
import copy
from typing import Any

import pytest
from kubernetes.client import (
    ApiException,
    V1LocalObjectReference,
    V1Namespace,
    V1NamespaceStatus,
    V1ObjectMeta,
    V1Secret,
    V1ServiceAccount,
)

from pullsecrets.src.events import ReconcileKey, key_for_object
from pullsecrets.src.handlers import (
    DOCKER_CONFIG_JSON_KEY,
    DOCKER_CONFIG_JSON_TYPE,
    NamespaceSync,
    ServiceAccountSync,
    desired_secret,
    secret_payload,
)

SECRET_NAME = "aurora-registry"
PAYLOAD = '{"auths":{"registry.example.com":{"auth":"dXNlcjpwYXNz"}}}'


class FakeLister:
    """Dict-backed stand-in for an informer cache."""

    def __init__(self, *objects: Any) -> None:
        self.store: dict[ReconcileKey, Any] = {}
        for obj in objects:
            self.put(obj)

    def put(self, obj: Any) -> None:
        self.store[key_for_object(obj)] = obj

    def get(self, namespace: str, name: str) -> Any | None:
        return self.store.get(ReconcileKey(namespace, name))

    def get_by_key(self, key: ReconcileKey) -> Any | None:
        return self.store.get(key)


class FakeCoreApi:
    """Records mutating calls; optionally refreshes a lister like the watch stream would."""

    def __init__(
        self,
        service_accounts: FakeLister | None = None,
        secrets: FakeLister | None = None,
        fail_with: ApiException | None = None,
    ) -> None:
        self.service_accounts = service_accounts
        self.secrets = secrets
        self.fail_with = fail_with
        self.calls: list[tuple[str, str, str, Any]] = []

    def _mutate(self, verb: str, namespace: str, name: str, body: Any, lister: FakeLister | None) -> Any:
        self.calls.append((verb, namespace, name, body))
        if self.fail_with is not None:
            raise self.fail_with
        stored = copy.deepcopy(body)
        version = int(getattr(stored.metadata, "resource_version", None) or 0)
        stored.metadata.resource_version = str(version + 1)
        if lister is not None:
            lister.put(stored)
        return stored

    def replace_namespaced_service_account(self, name: str, namespace: str, body: Any) -> Any:
        return self._mutate("replace_service_account", namespace, name, body, self.service_accounts)

    def create_namespaced_secret(self, namespace: str, body: Any) -> Any:
        return self._mutate("create_secret", namespace, body.metadata.name, body, self.secrets)

    def replace_namespaced_secret(self, name: str, namespace: str, body: Any) -> Any:
        return self._mutate("replace_secret", namespace, name, body, self.secrets)


def make_service_account(name: str, namespace: str, pull_secrets: list[str] | None) -> V1ServiceAccount:
    return V1ServiceAccount(
        metadata=V1ObjectMeta(name=name, namespace=namespace, resource_version="1"),
        image_pull_secrets=(
            None
            if pull_secrets is None
            else [V1LocalObjectReference(name=secret) for secret in pull_secrets]
        ),
    )


def make_namespace(name: str, phase: str = "Active") -> V1Namespace:
    return V1Namespace(
        metadata=V1ObjectMeta(name=name, resource_version="1"),
        status=V1NamespaceStatus(phase=phase),
    )


def make_secret(namespace: str, payload: bytes, extra: dict[str, str] | None = None) -> V1Secret:
    data = {DOCKER_CONFIG_JSON_KEY: base64.b64encode(payload).decode("ascii")}
    data.update(extra or {})
    return V1Secret(
        metadata=V1ObjectMeta(
            name=SECRET_NAME,
            namespace=namespace,
            resource_version="10",
            labels={"owner": "platform"},
        ),
        type=DOCKER_CONFIG_JSON_TYPE,
        data=data,
    )


def _pull_secret_names(account: V1ServiceAccount) -> list[str]:
    return [reference.name for reference in account.image_pull_secrets or []]


# ---------------------------------------------------------------------------
# ServiceAccountSync
# ---------------------------------------------------------------------------


def test_service_account_already_configured_is_noop() -> None:
    lister = FakeLister(make_service_account("default", "team-a", ["other", SECRET_NAME]))
    api = FakeCoreApi(service_accounts=lister)
    sync = ServiceAccountSync(core_api=api, lister=lister, secret_name=SECRET_NAME)

    result = sync(ReconcileKey("team-a", "default"))

    assert result.ok
    assert result.actions == 0
    assert api.calls == []


@pytest.mark.parametrize("existing", [None, [], ["a"], ["a", "b", "c"]])
def test_service_account_gets_credential_appended_exactly_once(existing: list[str] | None) -> None:
    account = make_service_account("builder", "ci", existing)
    lister = FakeLister(account)
    api = FakeCoreApi(service_accounts=lister)
    sync = ServiceAccountSync(core_api=api, lister=lister, secret_name=SECRET_NAME)

    result = sync(ReconcileKey("ci", "builder"))

    assert result.ok
    assert result.actions == 1
    assert len(api.calls) == 1
    verb, namespace, name, body = api.calls[0]
    assert (verb, namespace, name) == ("replace_service_account", "ci", "builder")
    names = _pull_secret_names(body)
    original = existing or []
    assert names == [*original, SECRET_NAME]
    assert len(set(names)) == len(original) + 1


def test_service_account_sync_does_not_mutate_cached_object() -> None:
    account = make_service_account("builder", "ci", ["a"])
    lister = FakeLister(account)
    api = FakeCoreApi()
    sync = ServiceAccountSync(core_api=api, lister=lister, secret_name=SECRET_NAME)

    sync(ReconcileKey("ci", "builder"))

    assert _pull_secret_names(account) == ["a"]


def test_service_account_sync_is_idempotent() -> None:
    lister = FakeLister(make_service_account("default", "team-a", ["a"]))
    api = FakeCoreApi(service_accounts=lister)
    sync = ServiceAccountSync(core_api=api, lister=lister, secret_name=SECRET_NAME)
    key = ReconcileKey("team-a", "default")

    first = sync(key)
    second = sync(key)

    assert first.actions == 1
    assert second.actions == 0
    assert len(api.calls) == 1
    assert _pull_secret_names(lister.get("team-a", "default")) == ["a", SECRET_NAME]


def test_service_account_missing_from_cache_is_noop() -> None:
    api = FakeCoreApi()
    sync = ServiceAccountSync(core_api=api, lister=FakeLister(), secret_name=SECRET_NAME)

    result = sync(ReconcileKey("team-a", "deleted"))

    assert result.ok
    assert api.calls == []


@pytest.mark.parametrize("status", [404, 409, 429, 500])
def test_service_account_update_failure_is_reported(status: int) -> None:
    lister = FakeLister(make_service_account("default", "team-a", []))
    api = FakeCoreApi(fail_with=ApiException(status=status, reason="boom"))
    sync = ServiceAccountSync(core_api=api, lister=lister, secret_name=SECRET_NAME)

    result = sync(ReconcileKey("team-a", "default"))

    assert not result.ok
    assert str(status) in (result.error or "")


def test_service_account_update_sends_reference_models() -> None:
    lister = FakeLister(make_service_account("default", "team-a", ["other"]))
    api = FakeCoreApi(service_accounts=lister)
    sync = ServiceAccountSync(core_api=api, lister=lister, secret_name=SECRET_NAME)

    sync(ReconcileKey("team-a", "default"))

    _, _, _, body = api.calls[0]
    assert isinstance(body, V1ServiceAccount)
    assert all(isinstance(ref, V1LocalObjectReference) for ref in body.image_pull_secrets)
    assert body.to_dict()["image_pull_secrets"] == [{"name": "other"}, {"name": SECRET_NAME}]


# ---------------------------------------------------------------------------
# desired_secret
# ---------------------------------------------------------------------------


def test_desired_secret_is_fully_specified() -> None:
    secret = desired_secret("team-a", SECRET_NAME, PAYLOAD)

    assert secret.metadata.name == SECRET_NAME
    assert secret.metadata.namespace == "team-a"
    assert secret.type == DOCKER_CONFIG_JSON_TYPE
    assert base64.b64decode(secret.data[DOCKER_CONFIG_JSON_KEY]) == PAYLOAD.encode()


def test_desired_secret_is_deterministic() -> None:
    assert (
        desired_secret("team-a", SECRET_NAME, PAYLOAD).to_dict()
        == desired_secret("team-a", SECRET_NAME, PAYLOAD.encode()).to_dict()
    )


def test_secret_payload_handles_missing_and_invalid_data() -> None:
    assert secret_payload(V1Secret(data=None)) is None
    assert secret_payload(V1Secret(data={DOCKER_CONFIG_JSON_KEY: "!!not base64!!"})) is None
    assert secret_payload(make_secret("team-a", b"abc")) == b"abc"


# ---------------------------------------------------------------------------
# NamespaceSync
# ---------------------------------------------------------------------------


def _namespace_sync(
    namespaces: FakeLister, secrets: FakeLister, api: FakeCoreApi
) -> NamespaceSync:
    return NamespaceSync(
        core_api=api,
        namespace_lister=namespaces,
        secret_lister=secrets,
        secret_name=SECRET_NAME,
        payload=PAYLOAD,
    )


def test_missing_secret_is_created_then_converges() -> None:
    namespaces = FakeLister(make_namespace("team-a"))
    secrets = FakeLister()
    api = FakeCoreApi(secrets=secrets)
    sync = _namespace_sync(namespaces, secrets, api)
    key = ReconcileKey("", "team-a")

    first = sync(key)
    second = sync(key)

    assert first.ok and first.actions == 1
    assert second.ok and second.actions == 0
    assert [call[0] for call in api.calls] == ["create_secret"]
    stored = secrets.get("team-a", SECRET_NAME)
    assert secret_payload(stored) == PAYLOAD.encode()
    assert stored.type == DOCKER_CONFIG_JSON_TYPE


def test_matching_secret_is_noop() -> None:
    namespaces = FakeLister(make_namespace("team-a"))
    secrets = FakeLister(make_secret("team-a", PAYLOAD.encode()))
    api = FakeCoreApi(secrets=secrets)

    result = _namespace_sync(namespaces, secrets, api)(ReconcileKey("", "team-a"))

    assert result.ok
    assert api.calls == []


def test_drifted_secret_is_updated_in_place_exactly_once() -> None:
    drifted = make_secret("team-a", b'{"auths":{}}', extra={"note": "a2VlcA=="})
    namespaces = FakeLister(make_namespace("team-a"))
    secrets = FakeLister(drifted)
    api = FakeCoreApi(secrets=secrets)
    sync = _namespace_sync(namespaces, secrets, api)
    key = ReconcileKey("", "team-a")

    first = sync(key)
    second = sync(key)

    assert first.ok and first.actions == 1
    assert second.actions == 0
    assert [call[0] for call in api.calls] == ["replace_secret"]
    _, namespace, name, body = api.calls[0]
    assert (namespace, name) == ("team-a", SECRET_NAME)
    assert secret_payload(body) == PAYLOAD.encode()
    assert body.metadata.labels == {"owner": "platform"}
    assert body.metadata.resource_version == "10"
    assert body.type == DOCKER_CONFIG_JSON_TYPE
    assert body.data["note"] == "a2VlcA=="
    # The cached object is untouched until the watch stream refreshes it.
    assert secret_payload(drifted) == b'{"auths":{}}'


def test_secret_with_undecodable_payload_is_repaired() -> None:
    broken = make_secret("team-a", b"")
    broken.data[DOCKER_CONFIG_JSON_KEY] = "%%%"
    namespaces = FakeLister(make_namespace("team-a"))
    secrets = FakeLister(broken)
    api = FakeCoreApi(secrets=secrets)

    result = _namespace_sync(namespaces, secrets, api)(ReconcileKey("", "team-a"))

    assert result.ok
    assert [call[0] for call in api.calls] == ["replace_secret"]


def test_create_conflict_is_reported_then_converged_on_retry() -> None:
    namespaces = FakeLister(make_namespace("team-a"))
    secrets = FakeLister()
    api = FakeCoreApi(secrets=secrets, fail_with=ApiException(status=409, reason="AlreadyExists"))
    sync = _namespace_sync(namespaces, secrets, api)
    key = ReconcileKey("", "team-a")

    first = sync(key)

    assert not first.ok
    assert "409" in (first.error or "")
    assert [call[0] for call in api.calls] == ["create_secret"]

    # Another writer created the secret with a different payload; the watch
    # stream delivers it before the retry.
    secrets.put(make_secret("team-a", b'{"auths":{}}'))
    api.fail_with = None

    second = sync(key)

    assert second.ok
    assert [call[0] for call in api.calls] == ["create_secret", "replace_secret"]
    assert secret_payload(secrets.get("team-a", SECRET_NAME)) == PAYLOAD.encode()


def test_update_failure_is_reported() -> None:
    namespaces = FakeLister(make_namespace("team-a"))
    secrets = FakeLister(make_secret("team-a", b"stale"))
    api = FakeCoreApi(fail_with=ApiException(status=409, reason="Conflict"))

    result = _namespace_sync(namespaces, secrets, api)(ReconcileKey("", "team-a"))

    assert not result.ok
    assert [call[0] for call in api.calls] == ["replace_secret"]


def test_terminating_namespace_is_skipped() -> None:
    namespaces = FakeLister(make_namespace("team-a", phase="Terminating"))
    api = FakeCoreApi()

    result = _namespace_sync(namespaces, FakeLister(), api)(ReconcileKey("", "team-a"))

    assert result.ok
    assert api.calls == []


def test_namespace_missing_from_cache_is_noop() -> None:
    api = FakeCoreApi()

    result = _namespace_sync(FakeLister(), FakeLister(), api)(ReconcileKey("", "gone"))

    assert result.ok
    assert api.calls == []
