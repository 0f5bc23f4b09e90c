from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Union

LOGGER = logging.getLogger(__name__)


class KeyExtractionError(ValueError):
    """Raised when an object carries no usable name to build a key from."""


@dataclass(frozen=True, order=True)
class ReconcileKey:
    """Identity of one reconciled object.

    Cluster-scoped objects (namespaces) use an empty ``namespace``.
    """

    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Tombstone delivered when an object vanished while the watch was down.

    ``obj`` is the last state the cache knew about and may be stale.
    """

    key: ReconcileKey
    obj: Any


@dataclass(frozen=True)
class Added:
    obj: Any


@dataclass(frozen=True)
class Updated:
    old: Any
    new: Any


@dataclass(frozen=True)
class Deleted:
    obj: Any


ResourceEvent = Union[Added, Updated, Deleted]


def _metadata_field(obj: Any, field_name: str) -> str | None:
    """Read a metadata field from a kubernetes model object or a raw dict."""
    if isinstance(obj, dict):
        metadata = obj.get("metadata") or {}
        camel = "".join(
            part if index == 0 else part.capitalize()
            for index, part in enumerate(field_name.split("_"))
        )
        value = metadata.get(camel, metadata.get(field_name))
    else:
        metadata = getattr(obj, "metadata", None)
        value = getattr(metadata, field_name, None)
    if value is None:
        return None
    return str(value)


def resource_version(obj: Any) -> str | None:
    return _metadata_field(obj, "resource_version")


def key_for_object(obj: Any) -> ReconcileKey:
    """Return the ``{namespace, name}`` key of *obj*, unwrapping tombstones."""
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key

    name = _metadata_field(obj, "name")
    if not name:
        raise KeyExtractionError(f"object has no metadata.name: {obj!r}")
    return ReconcileKey(namespace=_metadata_field(obj, "namespace") or "", name=name)


def namespace_key_for_object(obj: Any) -> ReconcileKey:
    """Map an object to the key of the namespace it lives in.

    A namespace maps to itself.  A namespaced object (a secret, for example)
    maps to its owning namespace so a change to it re-checks that namespace.
    """
    key = key_for_object(obj)
    if key.namespace:
        return ReconcileKey(namespace="", name=key.namespace)
    return key


class EventTranslator:
    """Decide per cache notification whether the affected object is enqueued.

    Holds the resync-suppression rule: an update whose old and new resource
    versions are equal is a cache resync artifact and never enqueues.
    """

    def __init__(
        self,
        enqueue: Callable[[Any], None],
        *,
        on_added: bool = True,
        on_updated: bool = True,
        on_deleted: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self.enqueue = enqueue
        self.on_added = on_added
        self.on_updated = on_updated
        self.on_deleted = on_deleted
        self.logger = logger or LOGGER

    def __call__(self, event: ResourceEvent) -> bool:
        if isinstance(event, Added):
            if not self.on_added:
                return False
            self.enqueue(event.obj)
            return True

        if isinstance(event, Updated):
            if not self.on_updated:
                return False
            if resource_version(event.old) == resource_version(event.new):
                return False
            self.enqueue(event.new)
            return True

        if isinstance(event, Deleted):
            if not self.on_deleted:
                return False
            self.enqueue(event.obj)
            return True

        self.logger.warning("Ignoring unknown resource event %r", event)
        return False
