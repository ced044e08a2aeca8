"""
Resource Store - Storage substrate for SchemaRegistry and Schema resources.

ResourceStore is the interface the reconcilers program against. It mirrors
the subset of a Kubernetes API server they need: get/list, metadata update,
status update with optimistic concurrency on ``resourceVersion``, and
namespaced secret lookup.

InMemoryStore is the implementation used by tests and standalone runs.
"""

import base64
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, NamedTuple, Optional, Tuple, Union

from events import EventBus, EventType, ResourceEvent
from models import KIND_SECRET, now_iso
from validation import AdmissionError, admit

logger = logging.getLogger(__name__)


class ResourceKey(NamedTuple):
    """Identity of a resource in the work queue."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


def resource_key(resource: Dict[str, Any]) -> ResourceKey:
    metadata = resource.get("metadata", {})
    return ResourceKey(
        resource["kind"], metadata.get("namespace", "default"), metadata["name"]
    )


class NotFoundError(Exception):
    """Raised when a resource or secret does not exist."""


class ConflictError(Exception):
    """Raised when a write carries a stale resourceVersion."""


class ResourceStore(ABC):
    """Abstract interface to the resource storage substrate."""

    @abstractmethod
    async def get(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        """
        Fetch a resource.

        Raises:
            NotFoundError: If the resource does not exist.
        """
        pass

    @abstractmethod
    async def list(
        self, kind: str, namespace: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """List resources of a kind, optionally restricted to one namespace."""
        pass

    @abstractmethod
    async def update(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        """
        Write a resource's metadata and spec (status is ignored).

        A deleting resource whose last finalizer is removed is purged.

        Raises:
            NotFoundError: If the resource no longer exists.
            ConflictError: If ``metadata.resourceVersion`` is stale.
        """
        pass

    @abstractmethod
    async def update_status(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        """
        Write a resource's status sub-document.

        Raises:
            NotFoundError: If the resource no longer exists.
            ConflictError: If ``metadata.resourceVersion`` is stale.
        """
        pass

    @abstractmethod
    async def get_secret(self, namespace: str, name: str) -> Dict[str, bytes]:
        """
        Fetch a secret's byte-valued data.

        Raises:
            NotFoundError: If the secret does not exist.
        """
        pass


def _decode_secret_data(secret: Dict[str, Any]) -> Dict[str, bytes]:
    """Merge a Secret manifest's base64 ``data`` and plain ``stringData``."""
    data: Dict[str, bytes] = {}
    for k, v in (secret.get("data") or {}).items():
        data[k] = base64.b64decode(v)
    for k, v in (secret.get("stringData") or {}).items():
        data[k] = v.encode()
    return data


class InMemoryStore(ResourceStore):
    """
    Dict-backed ResourceStore with API-server write semantics.

    - ``generation`` increments only when the spec changes.
    - ``resourceVersion`` increments on every write.
    - ``delete`` marks a resource with ``deletionTimestamp`` while
      finalizers remain, otherwise removes it.
    - Reads return deep copies, so callers never alias stored state.
    - Creates and spec changes pass through the admission validators.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        validate: bool = True,
    ):
        self._event_bus = event_bus
        self._validate = validate
        self._resources: Dict[ResourceKey, Dict[str, Any]] = {}
        self._secrets: Dict[Tuple[str, str], Dict[str, bytes]] = {}
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    async def _publish(
        self,
        event_type: EventType,
        resource: Dict[str, Any],
        old_resource: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(
            ResourceEvent.from_resource(
                event_type, copy.deepcopy(resource), old_resource
            )
        )

    def _lookup(self, key: ResourceKey) -> Dict[str, Any]:
        stored = self._resources.get(key)
        if stored is None:
            raise NotFoundError(f"{key.kind} {key.namespace}/{key.name} not found")
        return stored

    def _check_version(self, stored: Dict[str, Any], resource: Dict[str, Any]) -> None:
        expected = stored["metadata"]["resourceVersion"]
        given = resource.get("metadata", {}).get("resourceVersion")
        if given is not None and given != expected:
            key = resource_key(resource)
            raise ConflictError(
                f"Operation cannot be fulfilled on {key}: the object has been "
                f"modified (resourceVersion {given} != {expected})"
            )

    # ==================== ResourceStore ====================

    async def get(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        return copy.deepcopy(self._lookup(ResourceKey(kind, namespace, name)))

    async def list(
        self, kind: str, namespace: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(resource)
            for key, resource in sorted(self._resources.items())
            if key.kind == kind and (namespace is None or key.namespace == namespace)
        ]

    async def update(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        key = resource_key(resource)
        stored = self._lookup(key)
        self._check_version(stored, resource)

        new_spec = resource.get("spec") or {}
        if self._validate and new_spec != stored.get("spec"):
            admit(key.kind, new_spec, stored.get("spec"))

        old = copy.deepcopy(stored)
        metadata = stored["metadata"]
        new_metadata = resource.get("metadata", {})
        metadata["finalizers"] = list(new_metadata.get("finalizers") or [])
        metadata["labels"] = dict(new_metadata.get("labels") or {})
        metadata["annotations"] = dict(new_metadata.get("annotations") or {})
        if new_spec != stored.get("spec"):
            stored["spec"] = copy.deepcopy(new_spec)
            metadata["generation"] += 1
        metadata["resourceVersion"] = self._next_version()

        if metadata.get("deletionTimestamp") and not metadata["finalizers"]:
            del self._resources[key]
            logger.info(f"Purged {key}: all finalizers removed")
            await self._publish(EventType.DELETED, stored, old)
            return copy.deepcopy(stored)

        await self._publish(EventType.MODIFIED, stored, old)
        return copy.deepcopy(stored)

    async def update_status(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        key = resource_key(resource)
        stored = self._lookup(key)
        self._check_version(stored, resource)

        old = copy.deepcopy(stored)
        stored["status"] = copy.deepcopy(resource.get("status") or {})
        stored["metadata"]["resourceVersion"] = self._next_version()

        await self._publish(EventType.STATUS_UPDATED, stored, old)
        return copy.deepcopy(stored)

    async def get_secret(self, namespace: str, name: str) -> Dict[str, bytes]:
        secret = self._secrets.get((namespace, name))
        if secret is None:
            raise NotFoundError(f'secrets "{name}" not found in namespace {namespace}')
        return dict(secret)

    # ==================== Writes from the outside world ====================

    async def create(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a resource.

        Raises:
            ConflictError: If a resource with the same key exists.
            AdmissionError: If the spec fails validation.
        """
        resource = copy.deepcopy(resource)
        metadata = resource.setdefault("metadata", {})
        metadata.setdefault("namespace", "default")
        key = resource_key(resource)

        if key in self._resources:
            raise ConflictError(f"{key} already exists")
        if self._validate:
            admit(key.kind, resource.get("spec") or {})

        metadata["generation"] = 1
        metadata["resourceVersion"] = self._next_version()
        metadata["finalizers"] = list(metadata.get("finalizers") or [])
        metadata["creationTimestamp"] = now_iso()
        metadata.pop("deletionTimestamp", None)
        resource.setdefault("spec", {})
        resource.setdefault("status", {})

        self._resources[key] = resource
        logger.info(f"Created {key}")
        await self._publish(EventType.CREATED, resource)
        return copy.deepcopy(resource)

    async def apply(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        """Create a resource, or replace the spec of an existing one."""
        resource = copy.deepcopy(resource)
        resource.setdefault("metadata", {}).setdefault("namespace", "default")
        key = resource_key(resource)

        stored = self._resources.get(key)
        if stored is None:
            return await self.create(resource)

        current = copy.deepcopy(stored)
        current["spec"] = resource.get("spec") or {}
        return await self.update(current)

    async def delete(self, kind: str, namespace: str, name: str) -> None:
        """
        Request deletion of a resource.

        Raises:
            NotFoundError: If the resource does not exist.
        """
        key = ResourceKey(kind, namespace, name)
        stored = self._lookup(key)
        old = copy.deepcopy(stored)

        if not stored["metadata"].get("finalizers"):
            del self._resources[key]
            logger.info(f"Deleted {key}")
            await self._publish(EventType.DELETED, stored, old)
            return

        if not stored["metadata"].get("deletionTimestamp"):
            stored["metadata"]["deletionTimestamp"] = now_iso()
            stored["metadata"]["resourceVersion"] = self._next_version()
            logger.info(
                f"Marked {key} for deletion, waiting on finalizers: "
                f"{stored['metadata']['finalizers']}"
            )
            await self._publish(EventType.MODIFIED, stored, old)

    async def put_secret(
        self, namespace: str, name: str, data: Dict[str, Union[str, bytes]]
    ) -> None:
        """Create or replace a secret. String values are UTF-8 encoded."""
        existed = (namespace, name) in self._secrets
        self._secrets[(namespace, name)] = {
            k: v.encode() if isinstance(v, str) else v for k, v in data.items()
        }
        await self._publish(
            EventType.MODIFIED if existed else EventType.CREATED,
            {"kind": KIND_SECRET, "metadata": {"namespace": namespace, "name": name}},
        )

    async def delete_secret(self, namespace: str, name: str) -> None:
        if self._secrets.pop((namespace, name), None) is None:
            raise NotFoundError(f'secrets "{name}" not found in namespace {namespace}')
        await self._publish(
            EventType.DELETED,
            {"kind": KIND_SECRET, "metadata": {"namespace": namespace, "name": name}},
        )

    async def load_manifest(self, document: Dict[str, Any]) -> None:
        """
        Apply one manifest document: a Secret, SchemaRegistry or Schema.

        Raises:
            AdmissionError: If a resource spec fails validation.
            ValueError: If the document has no kind or name.
        """
        kind = document.get("kind")
        metadata = document.get("metadata") or {}
        if not kind or not metadata.get("name"):
            raise ValueError("manifest documents need a kind and metadata.name")

        if kind == KIND_SECRET:
            await self.put_secret(
                metadata.get("namespace", "default"),
                metadata["name"],
                _decode_secret_data(document),
            )
            return

        await self.apply(
            {
                "kind": kind,
                "metadata": {
                    "name": metadata["name"],
                    "namespace": metadata.get("namespace", "default"),
                    "labels": metadata.get("labels") or {},
                    "annotations": metadata.get("annotations") or {},
                },
                "spec": document.get("spec") or {},
            }
        )


__all__ = [
    "AdmissionError",
    "ConflictError",
    "InMemoryStore",
    "NotFoundError",
    "ResourceKey",
    "ResourceStore",
    "resource_key",
]
