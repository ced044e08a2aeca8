"""
Operator Controller - Main reconciliation loop.

Similar to Kubernetes controllers, continuously reconciles desired state
with actual state. Store events are routed to resource keys, keys are
queued on a level-triggered work queue, and a fixed pool of workers hands
each key to the reconciler plugin registered for its kind.
"""

import asyncio
import logging
import time
from typing import List, Optional

from config import Config, get_config
from events import EventBus, ResourceEvent
from plugins.reconcilers.base import ReconcilerContext
from plugins.registry import PluginRegistry, get_registry
from store import ConflictError, ResourceKey, ResourceStore
from watches import route_event
from workqueue import WorkQueue

logger = logging.getLogger(__name__)


class Controller:
    """
    Main controller that implements the reconciliation loop.

    A key is processed by at most one worker at a time; distinct keys are
    processed concurrently, up to ``max_concurrent_reconciles``.
    """

    def __init__(
        self,
        store: ResourceStore,
        registry: Optional[PluginRegistry] = None,
        config: Optional[Config] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.registry = registry or get_registry()
        self.config = config or get_config()
        self.running = False
        self._event_bus = event_bus

        controller_config = self.config.controller
        self.queue = WorkQueue(
            base_delay=controller_config.backoff_base_delay,
            max_delay=controller_config.backoff_max_delay,
            jitter_factor=controller_config.backoff_jitter_factor,
        )
        self.ctx = ReconcilerContext(store=self.store, config=self.config)

        self._subscriber_id: Optional[str] = None
        self._tasks: List[asyncio.Task] = []

    def _watched(self, namespace: str) -> bool:
        watch_namespace = self.config.operator.watch_namespace
        return not watch_namespace or namespace == watch_namespace

    async def start(self):
        """Start the controller: resync, watch for events and run the workers."""
        logger.info("Starting Operator Controller")
        self.running = True

        if self._event_bus is not None:
            self._subscriber_id, subscription = await self._event_bus.subscribe()
            self._tasks.append(asyncio.create_task(self._watch_loop(subscription)))

        await self.resync()
        if self.config.controller.resync_interval > 0:
            self._tasks.append(asyncio.create_task(self._resync_loop()))

        for i in range(self.config.controller.max_concurrent_reconciles):
            self._tasks.append(asyncio.create_task(self._worker(i)))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Controller tasks cancelled")
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the controller, cancelling in-flight reconciliations."""
        logger.info("Stopping Operator Controller")
        self.running = False
        self.queue.shutdown()

        if self._event_bus is not None and self._subscriber_id is not None:
            await self._event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def resync(self) -> int:
        """
        Queue every existing resource of a kind some reconciler handles.

        Returns:
            The number of keys queued.
        """
        count = 0
        for kind in self.registry.list_resource_types():
            for resource in await self.store.list(kind):
                metadata = resource["metadata"]
                key = ResourceKey(kind, metadata["namespace"], metadata["name"])
                if self._watched(key.namespace):
                    self.queue.add(key)
                    count += 1
        logger.info(f"Resync queued {count} resources")
        return count

    async def _resync_loop(self) -> None:
        """Requeue every watched resource each ``resync_interval`` seconds."""
        interval = self.config.controller.resync_interval
        while self.running:
            await asyncio.sleep(interval)
            try:
                await self.resync()
            except Exception as e:
                logger.error(f"Periodic resync failed: {e}", exc_info=True)

    def trigger_reconciliation(self, kind: str, namespace: str, name: str) -> None:
        """Queue a resource for reconciliation now."""
        self.queue.add(ResourceKey(kind, namespace, name))

    async def _watch_loop(self, subscription) -> None:
        """Turn store events into queued keys."""
        async for event in subscription:
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(
                    f"Error routing {event.event_type.value} event for "
                    f"{event.kind}/{event.namespace}/{event.name}: {e}",
                    exc_info=True,
                )

    async def handle_event(self, event: ResourceEvent) -> None:
        """Queue the keys an event affects."""
        for key in await route_event(self.store, event):
            if not self._watched(key.namespace):
                continue
            if self.registry.has_reconciler_for_resource_type(key.kind):
                self.queue.add(key)

    async def _worker(self, worker_id: int) -> None:
        logger.debug(f"Worker {worker_id} started")
        while self.running:
            key = await self.queue.get()
            if key is None:
                break
            try:
                await self.reconcile_key(key)
            finally:
                self.queue.done(key)
        logger.debug(f"Worker {worker_id} stopped")

    async def reconcile_key(self, key: ResourceKey) -> None:
        """
        Run one reconcile pass for a key and schedule what follows.

        A requested requeue replaces any backoff. Conflicts and unexpected
        errors are retried with exponential backoff per key.
        """
        reconciler = self.registry.get_reconciler_for_resource_type(key.kind)
        if reconciler is None:
            logger.warning(f"No reconciler registered for kind {key.kind}, dropping {key}")
            return

        start_time = time.monotonic()
        try:
            result = await asyncio.wait_for(
                reconciler.reconcile(key, self.ctx),
                timeout=self.config.controller.reconcile_timeout,
            )
        except ConflictError as e:
            delay = self.queue.add_rate_limited(key)
            logger.info(f"Conflict reconciling {key}, retrying in {delay:.1f}s: {e}")
            return
        except asyncio.TimeoutError:
            delay = self.queue.add_rate_limited(key)
            logger.error(
                f"Reconciliation of {key} timed out after "
                f"{self.config.controller.reconcile_timeout}s, retrying in {delay:.1f}s"
            )
            return
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            logger.error(
                f"Error reconciling {key}, retrying in {delay:.1f}s: {e}",
                exc_info=True,
            )
            return

        duration = time.monotonic() - start_time
        logger.debug(
            f"Reconciled {key} in {duration:.2f}s: "
            f"success={result.success} message={result.message}"
        )

        self.queue.forget(key)
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)
