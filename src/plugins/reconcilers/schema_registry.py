"""
SchemaRegistry Reconciler - Periodic connectivity check of a registry endpoint.

Each pass resolves credentials, builds a client and health-checks the registry,
then records the outcome as ``connectionStatus`` plus a Ready condition.
A failed check is a status, not an error: every pass, whatever its
outcome, schedules the next one after the health check interval.
"""

import logging
from typing import List

from pydantic import ValidationError

from credentials import ConfigurationError, resolve_credentials
from models import (
    CONDITION_READY,
    KIND_SCHEMA_REGISTRY,
    REASON_CONNECTED,
    REASON_CONNECTION_FAILED,
    ConditionStatus,
    ConnectionState,
    RegistryEndpoint,
    now_iso,
)
from plugins.reconcilers.base import (
    ReconcileResult,
    ReconcilerContext,
    ReconcilerPlugin,
)
from registry_client import RegistryError, SchemaRegistryClient
from store import ResourceKey

logger = logging.getLogger(__name__)

REASON_INVALID_SPEC = "InvalidSpec"


class SchemaRegistryReconciler(ReconcilerPlugin):
    """Keeps SchemaRegistry status in line with the registry's reachability."""

    @property
    def name(self) -> str:
        return "schema-registry"

    @property
    def resource_types(self) -> List[str]:
        return [KIND_SCHEMA_REGISTRY]

    async def reconcile(
        self, key: ResourceKey, ctx: ReconcilerContext
    ) -> ReconcileResult:
        interval = ctx.config.controller.health_check_interval

        resource = await ctx.get(key)
        if resource is None:
            logger.debug(f"{key} no longer exists, nothing to do")
            return ReconcileResult(success=True, message="Resource deleted")

        reason = REASON_CONNECTED
        message = "Successfully connected to Schema Registry"
        try:
            endpoint = RegistryEndpoint.from_resource(resource)
            credentials = await resolve_credentials(
                endpoint.auth, key.namespace, ctx.store
            )
            client = SchemaRegistryClient.from_endpoint(
                endpoint,
                credentials,
                default_timeout=ctx.config.controller.default_request_timeout,
            )
            await client.health_check()
        except ValidationError as e:
            reason, message = REASON_INVALID_SPEC, str(e)
        except ConfigurationError as e:
            reason, message = e.reason, str(e)
        except RegistryError as e:
            reason, message = REASON_CONNECTION_FAILED, str(e)

        connected = reason == REASON_CONNECTED
        if connected:
            logger.info(f"Schema Registry health check succeeded for {key}")
        else:
            logger.warning(f"Schema Registry {key} not ready ({reason}): {message}")

        # Re-fetch so the status write carries the latest resourceVersion
        resource = await ctx.get(key)
        if resource is None:
            return ReconcileResult(success=True, message="Resource deleted")

        status = resource.setdefault("status", {})
        status["connectionStatus"] = (
            ConnectionState.CONNECTED if connected else ConnectionState.UNREACHABLE
        ).value
        status["lastChecked"] = now_iso()
        status["observedGeneration"] = resource["metadata"].get("generation", 0)
        ctx.set_condition(
            resource,
            CONDITION_READY,
            ConditionStatus.TRUE if connected else ConditionStatus.FALSE,
            reason,
            message,
        )
        await ctx.update_status(resource)

        return ReconcileResult(
            success=connected, message=message, requeue_after=interval
        )
