"""
Reconciler Plugin Base - Abstract interface for reconciler plugins.

A reconciler plugin owns the reconciliation logic for one or more resource
kinds. The controller hands it one resource key at a time; the plugin
fetches the resource, drives the outside world toward the spec and
reports back through the resource's status.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from config import Config
from models import Condition, ConditionStatus, set_condition
from store import NotFoundError, ResourceKey, ResourceStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result from a reconciler's reconcile() call."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[float] = None


class ReconcilerContext:
    """
    Context provided to reconciler plugins by the controller.

    Gives reconcilers access to the resource store, configuration and a
    few helpers for the metadata and status edits every reconciler makes.
    """

    def __init__(self, store: ResourceStore, config: Config):
        self.store = store
        self.config = config

    async def get(self, key: ResourceKey) -> Optional[Dict[str, Any]]:
        """
        Fetch the current state of a resource.

        Returns:
            The resource dict, or None if it no longer exists.
        """
        try:
            return await self.store.get(key.kind, key.namespace, key.name)
        except NotFoundError:
            return None

    async def update(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        """Write metadata and spec. ConflictError propagates to the controller."""
        return await self.store.update(resource)

    async def update_status(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        """Write the status sub-document. ConflictError propagates to the controller."""
        return await self.store.update_status(resource)

    @staticmethod
    def set_condition(
        resource: Dict[str, Any],
        condition_type: str,
        status: ConditionStatus,
        reason: str,
        message: str = "",
    ) -> None:
        """Set a condition on the resource dict in place, stamped with its generation."""
        status_doc = resource.setdefault("status", {})
        conditions = status_doc.setdefault("conditions", [])
        set_condition(
            conditions,
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                observed_generation=resource["metadata"].get("generation", 0),
            ),
        )

    async def add_finalizer(
        self, resource: Dict[str, Any], finalizer: str
    ) -> Dict[str, Any]:
        """
        Attach a finalizer and persist it.

        Returns:
            The resource as written, with its new resourceVersion.
        """
        finalizers = resource["metadata"].setdefault("finalizers", [])
        if finalizer in finalizers:
            return resource
        finalizers.append(finalizer)
        return await self.store.update(resource)

    async def remove_finalizer(
        self, resource: Dict[str, Any], finalizer: str
    ) -> Dict[str, Any]:
        """
        Detach a finalizer and persist it. Removing the last finalizer of a
        deleting resource lets the store purge it.
        """
        finalizers = resource["metadata"].get("finalizers") or []
        if finalizer not in finalizers:
            return resource
        resource["metadata"]["finalizers"] = [f for f in finalizers if f != finalizer]
        return await self.store.update(resource)


class ReconcilerPlugin(ABC):
    """
    Abstract base class for reconciler plugins.

    Reconcilers are registered per resource kind; third-party reconcilers
    are discovered via Python entry points in the
    'schema_operator.reconcilers' group.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this reconciler."""
        pass

    @property
    @abstractmethod
    def resource_types(self) -> List[str]:
        """Resource kinds this reconciler handles."""
        pass

    @abstractmethod
    async def reconcile(
        self, key: ResourceKey, ctx: ReconcilerContext
    ) -> ReconcileResult:
        """
        Reconcile a single resource.

        Must be idempotent: the same key may be delivered again at any
        time. Remote and configuration failures are reported through the
        resource's conditions and a requeue delay, not raised.

        Args:
            key: Kind, namespace and name of the resource.
            ctx: ReconcilerContext for store access and status helpers.

        Returns:
            ReconcileResult indicating success/failure and when to run again.
        """
        pass
