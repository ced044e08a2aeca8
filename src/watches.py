"""
Dependency Watch Router - Maps resource and secret changes to work queue keys.

A change to a secret re-triggers the SchemaRegistries whose auth refers to
it, and a change to a SchemaRegistry re-triggers the Schemas registered
against it, independent of their requeue timers.
"""

import logging
from typing import List

from pydantic import ValidationError

from events import EventType, ResourceEvent
from models import (
    KIND_SCHEMA,
    KIND_SCHEMA_REGISTRY,
    KIND_SECRET,
    ConnectivityStatus,
    RegistryEndpoint,
)
from store import ResourceKey, ResourceStore, resource_key

logger = logging.getLogger(__name__)

MANAGED_KINDS = (KIND_SCHEMA_REGISTRY, KIND_SCHEMA)


async def registries_for_secret(
    store: ResourceStore, namespace: str, secret_name: str
) -> List[ResourceKey]:
    """Keys of SchemaRegistries in ``namespace`` whose auth references the secret."""
    keys = []
    for registry in await store.list(KIND_SCHEMA_REGISTRY, namespace):
        try:
            endpoint = RegistryEndpoint.from_resource(registry)
        except ValidationError:
            continue
        if secret_name in endpoint.auth.secret_refs():
            keys.append(resource_key(registry))
    return keys


async def schemas_for_registry(
    store: ResourceStore, namespace: str, registry_name: str
) -> List[ResourceKey]:
    """
    Keys of Schemas whose registryRef resolves to the given SchemaRegistry.

    Schemas in every namespace are considered, since a registryRef may
    name a registry in another namespace. An empty ref namespace means
    the Schema's own namespace.
    """
    keys = []
    for schema in await store.list(KIND_SCHEMA):
        ref = (schema.get("spec") or {}).get("registryRef") or {}
        if ref.get("name") != registry_name:
            continue
        key = resource_key(schema)
        if (ref.get("namespace") or key.namespace) == namespace:
            keys.append(key)
    return keys


def _connection_changed(event: ResourceEvent) -> bool:
    old = ConnectivityStatus.from_resource(event.old_resource or {})
    new = ConnectivityStatus.from_resource(event.resource)
    return old.state != new.state


async def route_event(store: ResourceStore, event: ResourceEvent) -> List[ResourceKey]:
    """
    Return the keys to enqueue for an event.

    Status-only writes never re-trigger their own resource. A registry's
    status write only re-triggers its Schemas when the connection state
    changed.
    """
    if event.kind == KIND_SECRET:
        keys = await registries_for_secret(store, event.namespace, event.name)
        if keys:
            logger.info(
                f"Secret {event.namespace}/{event.name} changed, "
                f"re-reconciling {len(keys)} registr{'y' if len(keys) == 1 else 'ies'}"
            )
        return keys

    if event.kind not in MANAGED_KINDS:
        return []

    keys = []
    if event.event_type != EventType.STATUS_UPDATED:
        keys.append(ResourceKey(event.kind, event.namespace, event.name))

    if event.kind == KIND_SCHEMA_REGISTRY:
        if event.event_type != EventType.STATUS_UPDATED or _connection_changed(event):
            keys.extend(
                await schemas_for_registry(store, event.namespace, event.name)
            )

    return keys
