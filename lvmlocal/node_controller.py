"""Controller keeping this node's LVMNode resource in step with its volume groups."""

from __future__ import annotations

import copy
import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from lvmlocal.resources import (
    NODE_POLL_INTERVAL,
    DeletedFinalStateUnknown,
    LVMNode,
    ObjectMeta,
    OwnerReference,
    VolumeGroup,
    meta_namespace_key,
)
from lvmlocal.workqueue import RateLimitingQueue, ShutDown, split_meta_namespace_key

logger = logging.getLogger(__name__)

_CACHE_SYNC_POLL = 0.1


class NodeClient(Protocol):
    """Writes LVMNode objects to the API server."""

    def create(self, node: LVMNode) -> Any: ...

    def update(self, node: LVMNode) -> Any: ...


class NodeController:
    """Creates or updates the LVMNode object of one node.

    ``get_node(namespace, name)`` returns the cached object (a mapping or an
    LVMNode) or None when it does not exist; ``list_volume_groups()`` returns
    the volume groups present on the node.
    """

    def __init__(
        self,
        node_id: str,
        namespace: str,
        owner_ref: OwnerReference,
        get_node: Callable[[str, str], Any],
        list_volume_groups: Callable[[], list[VolumeGroup]],
        client: NodeClient,
        queue: RateLimitingQueue | None = None,
        poll_interval: float = NODE_POLL_INTERVAL,
        synced: Callable[[], bool] | None = None,
    ) -> None:
        self.node_id = node_id
        self.namespace = namespace
        self.owner_ref = owner_ref
        self._get_node = get_node
        self._list_volume_groups = list_volume_groups
        self.client = client
        self.queue = queue if queue is not None else RateLimitingQueue(name="Node")
        self.poll_interval = poll_interval
        self._synced = synced or (lambda: True)

    def sync_handler(self, key: str) -> None:
        """Sync the node named by a 'namespace/name' key; invalid keys are dropped."""
        try:
            namespace, name = split_meta_namespace_key(key)
        except ValueError:
            logger.error("invalid resource key: %s", key)
            return
        self.sync_node(namespace, name)

    def sync_node(self, namespace: str, name: str) -> None:
        """Bring the LVMNode object in line with the node's volume groups."""
        cached = self._get_node(namespace, name)
        node: LVMNode | None = None
        if cached is not None:
            structured = self._structured(cached)
            if structured is None:
                raise ValueError(f"couldn't get node object {cached!r}")
            node = copy.deepcopy(structured)

        vgs = list(self._list_volume_groups())

        if node is None:
            node = LVMNode(
                metadata=ObjectMeta(
                    name=name,
                    namespace=namespace,
                    owner_references=[dataclasses.replace(self.owner_ref)],
                ),
                volume_groups=vgs,
            )
            logger.info("lvm node controller: creating new node object for %r", node)
            try:
                self.client.create(node)
            except Exception as exc:
                raise RuntimeError(f"create lvm node {namespace}/{name}: {exc}") from exc
            logger.info("lvm node controller: created node object %s/%s", namespace, name)
            return

        update_required = False
        owner_refs, required = self.is_owner_refs_update_required(
            node.metadata.owner_references
        )
        if required:
            logger.info(
                "lvm node controller: node owner references updated current=%r, required=%r",
                node.metadata.owner_references,
                owner_refs,
            )
            node.metadata.owner_references = owner_refs
            update_required = True

        if node.volume_groups != vgs:
            logger.info(
                "lvm node controller: node volume groups updated current=%r, required=%r",
                node.volume_groups,
                vgs,
            )
            node.volume_groups = vgs
            update_required = True

        if not update_required:
            return

        logger.info("lvm node controller: updating node object with %r", node)
        try:
            self.client.update(node)
        except Exception as exc:
            raise RuntimeError(f"update lvm node {namespace}/{name}: {exc}") from exc
        logger.info("lvm node controller: updated node object %s/%s", namespace, name)

    @staticmethod
    def _structured(obj: Any) -> LVMNode | None:
        if isinstance(obj, LVMNode):
            return obj
        if not isinstance(obj, Mapping):
            logger.error("couldn't convert %r to an lvm node object", obj)
            return None
        try:
            return LVMNode.from_dict(obj)
        except (TypeError, ValueError, KeyError) as exc:
            logger.error("err %s, while converting unstructured obj to typed object", exc)
            return None

    def add_node(self, obj: Any) -> None:
        """Handle an add event."""
        node = self._structured(obj)
        if node is None:
            logger.error("couldn't get node object %r", obj)
            return
        logger.info("Got add event for lvm node %s/%s", node.namespace, node.name)
        self.enqueue_node(node)

    def update_node(self, old: Any, new: Any) -> None:
        """Handle an update event."""
        node = self._structured(new)
        if node is None:
            logger.error("couldn't get node object %r", new)
            return
        logger.info("Got update event for lvm node %s/%s", node.namespace, node.name)
        self.enqueue_node(node)

    def delete_node(self, obj: Any) -> None:
        """Handle a delete event, including tombstones."""
        node = self._structured(obj) if not isinstance(obj, DeletedFinalStateUnknown) else None
        if node is None:
            if not isinstance(obj, DeletedFinalStateUnknown):
                logger.error("couldn't get object from tombstone %r", obj)
                return
            inner = obj.obj
            if isinstance(inner, LVMNode):
                node = inner
            elif isinstance(inner, Mapping):
                node = self._structured(inner)
            if node is None:
                logger.error("tombstone contained object that is not a lvmnode %r", obj)
                return
        logger.info("Got delete event for node %s/%s", node.namespace, node.name)
        self.enqueue_node(node)

    def enqueue_node(self, node: LVMNode) -> None:
        """Queue the node's key, if it is this node's object."""
        if node.namespace != self.namespace or node.name != self.node_id:
            logger.warning("skipping lvm node object %s/%s", node.namespace, node.name)
            return
        try:
            key = meta_namespace_key(node)
        except TypeError as exc:
            logger.error("%s", exc)
            return
        self.queue.add(key)

    def _run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def run(self, threadiness: int, stop_event: threading.Event) -> None:
        """Run workers and poll the volume groups until stop_event is set."""
        workers: list[threading.Thread] = []
        try:
            logger.info("Starting Node controller")
            logger.info("Waiting for informer caches to sync")
            while not self._synced():
                if stop_event.wait(_CACHE_SYNC_POLL):
                    raise RuntimeError("failed to wait for caches to sync")

            logger.info("Starting Node workers")
            for _ in range(threadiness):
                worker = threading.Thread(target=self._run_worker, daemon=True)
                worker.start()
                workers.append(worker)
            logger.info("Started Node workers")

            item = f"{self.namespace}/{self.node_id}"
            delay = 0.0
            while not stop_event.wait(delay):
                self.queue.add(item)
                delay = self.poll_interval
            logger.info("Shutting down Node controller")
        finally:
            self.queue.shut_down()
            deadline = time.monotonic() + 5.0
            for worker in workers:
                worker.join(max(0.0, deadline - time.monotonic()))

    def process_next_work_item(self) -> bool:
        """Process one queued key; return False once the queue is shut down."""
        try:
            obj = self.queue.get()
        except ShutDown:
            return False
        try:
            if not isinstance(obj, str):
                self.queue.forget(obj)
                logger.error("expected string in workqueue but got %r", obj)
                return True
            try:
                self.sync_handler(obj)
            except Exception as exc:
                self.queue.add_rate_limited(obj)
                logger.error("error syncing '%s': %s, requeuing", obj, exc)
                return True
            self.queue.forget(obj)
            logger.info("Successfully synced '%s'", obj)
            return True
        finally:
            self.queue.done(obj)

    def is_owner_refs_update_required(
        self, owner_refs: list[OwnerReference]
    ) -> tuple[list[OwnerReference], bool]:
        """Return the owner references to set and whether they changed."""
        required = self.owner_ref
        refs = list(owner_refs)
        for idx, ref in enumerate(refs):
            if ref.uid != required.uid:
                continue
            if ref.controller != required.controller:
                refs[idx] = dataclasses.replace(ref, controller=required.controller)
                return refs, True
            return refs, False
        refs.append(required)
        return refs, True