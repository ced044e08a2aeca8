"""Unit tests for the dependency watch router."""

import pytest

from events import EventType, ResourceEvent
from store import InMemoryStore, ResourceKey
from watches import registries_for_secret, route_event, schemas_for_registry

REGISTRY_KEY = ResourceKey("SchemaRegistry", "kafka", "main")
SCHEMA_KEY = ResourceKey("Schema", "kafka", "users")


def secret_event(name="registry-creds", namespace="kafka"):
    return ResourceEvent(
        event_type=EventType.MODIFIED,
        kind="Secret",
        namespace=namespace,
        name=name,
        resource={"kind": "Secret", "metadata": {"name": name, "namespace": namespace}},
    )


def with_connection(resource, state):
    return dict(resource, status={"connectionStatus": state})


@pytest.fixture
def unvalidated_store():
    return InMemoryStore(validate=False)


@pytest.mark.asyncio
class TestRegistriesForSecret:
    """Tests for registries_for_secret()."""

    async def test_matches_basic_auth_ref(self, store, registry_resource):
        """Test matching a basic auth secretRef."""
        await store.create(registry_resource)
        keys = await registries_for_secret(store, "kafka", "registry-creds")
        assert keys == [REGISTRY_KEY]

    async def test_other_secret_ignored(self, store, registry_resource):
        """Test that an unrelated secret matches nothing."""
        await store.create(registry_resource)
        assert await registries_for_secret(store, "kafka", "other") == []

    async def test_same_name_other_namespace_ignored(self, store, registry_resource):
        """Test that a same-named secret in another namespace matches nothing."""
        await store.create(registry_resource)
        assert await registries_for_secret(store, "apps", "registry-creds") == []

    async def test_matches_mtls_ca_ref(self, store, registry_resource):
        """Test matching both mutual TLS secrets."""
        registry_resource["spec"]["auth"] = {
            "type": "MTLS",
            "mtls": {"certSecretRef": "client", "caSecretRef": "ca"},
        }
        await store.create(registry_resource)
        assert await registries_for_secret(store, "kafka", "client") == [REGISTRY_KEY]
        assert await registries_for_secret(store, "kafka", "ca") == [REGISTRY_KEY]

    async def test_unparsable_registry_skipped(
        self, unvalidated_store, registry_resource
    ):
        """Test that a registry with an unparsable spec is skipped."""
        registry_resource["spec"]["auth"] = {"type": "BASIC"}
        await unvalidated_store.create(registry_resource)
        assert await registries_for_secret(
            unvalidated_store, "kafka", "registry-creds"
        ) == []


@pytest.mark.asyncio
class TestSchemasForRegistry:
    """Tests for schemas_for_registry()."""

    async def test_same_namespace_ref(self, store, schema_resource):
        """Test a registryRef in the schema's namespace."""
        await store.create(schema_resource)
        assert await schemas_for_registry(store, "kafka", "main") == [SCHEMA_KEY]

    async def test_other_registry_ignored(self, store, schema_resource):
        """Test that schemas of another registry are not matched."""
        await store.create(schema_resource)
        assert await schemas_for_registry(store, "kafka", "backup") == []

    async def test_cross_namespace_ref(self, store, schema_resource):
        """Test a cross-namespace registryRef."""
        schema_resource["metadata"]["namespace"] = "apps"
        schema_resource["spec"]["registryRef"] = {"name": "main", "namespace": "kafka"}
        await store.create(schema_resource)

        assert await schemas_for_registry(store, "kafka", "main") == [
            ResourceKey("Schema", "apps", "users")
        ]
        assert await schemas_for_registry(store, "apps", "main") == []


@pytest.mark.asyncio
class TestRouteEvent:
    """Tests for route_event()."""

    async def test_secret_routes_to_registries(self, store, registry_resource):
        """Test that a secret event routes to its registries."""
        await store.create(registry_resource)
        assert await route_event(store, secret_event()) == [REGISTRY_KEY]

    async def test_unrelated_secret(self, store, registry_resource):
        """Test that an unrelated secret event routes nowhere."""
        await store.create(registry_resource)
        assert await route_event(store, secret_event(name="unrelated")) == []

    async def test_unmanaged_kind(self, store):
        """Test that an unmanaged kind routes nowhere."""
        event = ResourceEvent(
            event_type=EventType.CREATED,
            kind="ConfigMap",
            namespace="kafka",
            name="settings",
            resource={},
        )
        assert await route_event(store, event) == []

    async def test_schema_change_routes_to_itself(self, store, schema_resource):
        """Test that a Schema change routes to itself."""
        created = await store.create(schema_resource)
        event = ResourceEvent.from_resource(EventType.MODIFIED, created)
        assert await route_event(store, event) == [SCHEMA_KEY]

    async def test_schema_status_write_not_routed(self, store, schema_resource):
        """Test that a Schema status write is not routed."""
        created = await store.create(schema_resource)
        event = ResourceEvent.from_resource(
            EventType.STATUS_UPDATED, dict(created, status={"schemaId": 1}), created
        )
        assert await route_event(store, event) == []

    async def test_registry_change_routes_to_schemas(
        self, store, registry_resource, schema_resource
    ):
        """Test that a registry change routes to its schemas."""
        registry = await store.create(registry_resource)
        await store.create(schema_resource)

        event = ResourceEvent.from_resource(EventType.MODIFIED, registry)
        assert await route_event(store, event) == [REGISTRY_KEY, SCHEMA_KEY]

    async def test_registry_deletion_routes_to_schemas(
        self, store, registry_resource, schema_resource
    ):
        """Test that a registry deletion routes to its schemas."""
        registry = await store.create(registry_resource)
        await store.create(schema_resource)

        event = ResourceEvent.from_resource(EventType.DELETED, registry)
        assert await route_event(store, event) == [REGISTRY_KEY, SCHEMA_KEY]

    async def test_registry_connection_change_routes_to_schemas(
        self, store, registry_resource, schema_resource
    ):
        """Test that a connection status change routes to schemas."""
        registry = await store.create(registry_resource)
        await store.create(schema_resource)

        event = ResourceEvent.from_resource(
            EventType.STATUS_UPDATED,
            with_connection(registry, "Connected"),
            with_connection(registry, "Unreachable"),
        )
        assert await route_event(store, event) == [SCHEMA_KEY]

    async def test_registry_health_refresh_not_routed(
        self, store, registry_resource, schema_resource
    ):
        """Test that an unchanged health refresh is not routed."""
        registry = await store.create(registry_resource)
        await store.create(schema_resource)

        event = ResourceEvent.from_resource(
            EventType.STATUS_UPDATED,
            with_connection(registry, "Connected"),
            with_connection(registry, "Connected"),
        )
        assert await route_event(store, event) == []
