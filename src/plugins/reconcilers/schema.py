"""
Schema Reconciler - Registers schema subjects and cleans them up on deletion.

The lifecycle is driven by two facts about the resource, whether deletion
has been requested and whether our finalizer is attached, which together
give the DeletionState the reconciler switches on.

Remote cleanup is bounded-effort. When the owning SchemaRegistry is gone
or unusable the subject is left in the registry and the finalizer is
removed anyway. When the registry refuses the delete, the attempt is
retried up to ``max_deletion_attempts`` times before the subject is
abandoned the same way.
"""

import logging
from enum import Enum
from typing import Any, Dict, List

from pydantic import ValidationError

from credentials import ConfigurationError, resolve_credentials
from models import (
    CONDITION_READY,
    KIND_SCHEMA,
    KIND_SCHEMA_REGISTRY,
    REASON_DELETION_FAILED,
    REASON_REGISTERED,
    REASON_REGISTRATION_FAILED,
    ConditionStatus,
    RegistrationStatus,
    RegistryEndpoint,
    SchemaSubject,
    now_iso,
)
from plugins.reconcilers.base import (
    ReconcileResult,
    ReconcilerContext,
    ReconcilerPlugin,
)
from registry_client import RegisteredSchema, RegistryError, SchemaRegistryClient
from store import ResourceKey

logger = logging.getLogger(__name__)

REASON_CLIENT_BUILD_FAILED = "ClientBuildFailed"
REASON_INVALID_SPEC = "InvalidSpec"


class DeletionState(Enum):
    """Where a Schema stands in its finalizer lifecycle."""

    NEEDS_FINALIZER = "NeedsFinalizer"  # live, finalizer not yet attached
    ACTIVE = "Active"  # live, finalizer attached
    FINALIZING = "Finalizing"  # deletion requested, cleanup pending
    RELEASED = "Released"  # deletion requested, nothing left for us to do


def deletion_state(resource: Dict[str, Any], finalizer: str) -> DeletionState:
    metadata = resource.get("metadata", {})
    deleting = bool(metadata.get("deletionTimestamp"))
    attached = finalizer in (metadata.get("finalizers") or [])

    if deleting:
        return DeletionState.FINALIZING if attached else DeletionState.RELEASED
    return DeletionState.ACTIVE if attached else DeletionState.NEEDS_FINALIZER


def registered_message(registered: RegisteredSchema) -> str:
    if registered.version is None:
        return f"Schema registered with ID {registered.id}"
    return (
        f"Schema registered with ID {registered.id}, version {registered.version}"
    )


class SchemaReconciler(ReconcilerPlugin):
    """Keeps one registry subject in line with a Schema resource."""

    @property
    def name(self) -> str:
        return "schema"

    @property
    def resource_types(self) -> List[str]:
        return [KIND_SCHEMA]

    async def reconcile(
        self, key: ResourceKey, ctx: ReconcilerContext
    ) -> ReconcileResult:
        finalizer = ctx.config.controller.finalizer_name

        resource = await ctx.get(key)
        if resource is None:
            logger.debug(f"{key} no longer exists, nothing to do")
            return ReconcileResult(success=True, message="Resource deleted")

        state = deletion_state(resource, finalizer)

        if state == DeletionState.RELEASED:
            return ReconcileResult(success=True, message="Awaiting removal")

        if state == DeletionState.FINALIZING:
            return await self._finalize(key, resource, ctx)

        if state == DeletionState.NEEDS_FINALIZER:
            await ctx.add_finalizer(resource, finalizer)
            logger.info(f"Added finalizer {finalizer} to {key}")
            resource = await ctx.get(key)
            if resource is None:
                return ReconcileResult(success=True, message="Resource deleted")

        return await self._register(key, resource, ctx)

    async def _build_client(
        self, subject: SchemaSubject, namespace: str, ctx: ReconcilerContext
    ) -> SchemaRegistryClient:
        """
        Build a client for the SchemaRegistry a Schema points at.

        Raises:
            ConfigurationError: If the registry is missing, its spec is
                invalid, or its credentials cannot be resolved.
        """
        registry_key = ResourceKey(
            KIND_SCHEMA_REGISTRY,
            subject.registry_namespace(namespace),
            subject.registry_ref.name,
        )
        registry = await ctx.get(registry_key)
        if registry is None:
            raise ConfigurationError(
                f'failed to get SchemaRegistry "{registry_key.name}" '
                f"in namespace {registry_key.namespace}: not found",
                reason=REASON_CLIENT_BUILD_FAILED,
            )

        try:
            endpoint = RegistryEndpoint.from_resource(registry)
        except ValidationError as e:
            raise ConfigurationError(
                f"SchemaRegistry {registry_key.name} has an invalid spec: {e}",
                reason=REASON_CLIENT_BUILD_FAILED,
            )

        credentials = await resolve_credentials(
            endpoint.auth, registry_key.namespace, ctx.store
        )
        return SchemaRegistryClient.from_endpoint(
            endpoint,
            credentials,
            default_timeout=ctx.config.controller.default_request_timeout,
        )

    async def _set_failed(
        self,
        key: ResourceKey,
        ctx: ReconcilerContext,
        reason: str,
        message: str,
    ) -> ReconcileResult:
        """Record Ready=False on a fresh copy and schedule a retry."""
        resource = await ctx.get(key)
        if resource is not None:
            ctx.set_condition(
                resource, CONDITION_READY, ConditionStatus.FALSE, reason, message
            )
            await ctx.update_status(resource)
        return ReconcileResult(
            success=False,
            message=message,
            requeue_after=ctx.config.controller.registration_retry_interval,
        )

    async def _register(
        self, key: ResourceKey, resource: Dict[str, Any], ctx: ReconcilerContext
    ) -> ReconcileResult:
        try:
            subject = SchemaSubject.from_resource(resource)
        except ValidationError as e:
            logger.error(f"Invalid spec on {key}: {e}")
            return await self._set_failed(key, ctx, REASON_INVALID_SPEC, str(e))

        try:
            client = await self._build_client(subject, key.namespace, ctx)
        except ConfigurationError as e:
            logger.error(f"Failed to build Schema Registry client for {key}: {e}")
            return await self._set_failed(
                key, ctx, REASON_CLIENT_BUILD_FAILED, str(e)
            )

        logger.info(
            f"Registering schema {subject.subject} "
            f"(type {subject.schema_type.value}) for {key}"
        )
        try:
            registered = await client.register_schema(
                subject.subject,
                subject.content,
                subject.schema_type,
                subject.references,
            )
        except RegistryError as e:
            logger.error(f"Failed to register schema {subject.subject}: {e}")
            return await self._set_failed(
                key, ctx, REASON_REGISTRATION_FAILED, str(e)
            )

        result_message = registered_message(registered)
        if subject.compatibility_level:
            try:
                await client.set_compatibility(
                    subject.subject, subject.compatibility_level
                )
            except RegistryError as e:
                # The schema is registered; the level is retried on the next pass
                logger.warning(
                    f"Failed to set compatibility level "
                    f"{subject.compatibility_level} on {subject.subject}: {e}"
                )
                result_message = f"{result_message} (compatibility not set: {e})"

        resource = await ctx.get(key)
        if resource is None:
            return ReconcileResult(success=True, message="Resource deleted")

        status = RegistrationStatus.from_resource(
            resource, ctx.config.controller.finalizer_name
        )
        status.schema_id = registered.id
        status.version = registered.version
        status.registered_at = now_iso()
        status.observed_generation = resource["metadata"].get("generation", 0)
        resource["status"] = status.to_dict()
        ctx.set_condition(
            resource,
            CONDITION_READY,
            ConditionStatus.TRUE,
            REASON_REGISTERED,
            registered_message(registered),
        )
        await ctx.update_status(resource)

        logger.info(
            f"Schema {subject.subject} registered for {key}: "
            f"id={registered.id} version={registered.version}"
        )
        return ReconcileResult(success=True, message=result_message)

    async def _finalize(
        self, key: ResourceKey, resource: Dict[str, Any], ctx: ReconcilerContext
    ) -> ReconcileResult:
        controller_config = ctx.config.controller
        finalizer = controller_config.finalizer_name

        try:
            subject = SchemaSubject.from_resource(resource)
            client = await self._build_client(subject, key.namespace, ctx)
        except (ValidationError, ConfigurationError) as e:
            logger.info(
                f"Could not build client while deleting {key}, "
                f"skipping registry cleanup: {e}"
            )
        else:
            logger.info(f"Deleting subject {subject.subject} from registry for {key}")
            try:
                await client.delete_subject(subject.subject)
            except RegistryError as e:
                status = RegistrationStatus.from_resource(resource, finalizer)
                attempts = status.deletion_attempts + 1
                if attempts < controller_config.max_deletion_attempts:
                    logger.error(
                        f"Failed to delete subject {subject.subject} "
                        f"(attempt {attempts}): {e}"
                    )
                    resource.setdefault("status", {})["deletionAttempts"] = attempts
                    ctx.set_condition(
                        resource,
                        CONDITION_READY,
                        ConditionStatus.FALSE,
                        REASON_DELETION_FAILED,
                        str(e),
                    )
                    await ctx.update_status(resource)
                    return ReconcileResult(
                        success=False,
                        message=str(e),
                        requeue_after=controller_config.registration_retry_interval,
                    )
                logger.warning(
                    f"Giving up on deleting subject {subject.subject} after "
                    f"{attempts} attempts, leaving it in the registry: {e}"
                )

        await ctx.remove_finalizer(resource, finalizer)
        logger.info(f"Removed finalizer {finalizer} from {key}")
        return ReconcileResult(success=True, message="Finalizer removed")
