"""Controller that creates and removes the LVM snapshots owned by this node."""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from lvmlocal.resources import (
    SNAPSHOT_FAST_DELAY,
    SNAPSHOT_MAX_FAST_ATTEMPTS,
    SNAPSHOT_SLOW_DELAY,
    STATUS_PENDING,
    DeletedFinalStateUnknown,
    LVMSnapshot,
    meta_namespace_key,
)
from lvmlocal.workqueue import (
    ItemFastSlowRateLimiter,
    RateLimitingQueue,
    ShutDown,
    split_meta_namespace_key,
)

logger = logging.getLogger(__name__)

_CACHE_SYNC_POLL = 0.1


class SnapshotOperations(Protocol):
    """LVM operations and status updates the controller relies on."""

    def destroy_snapshot(self, snap: LVMSnapshot) -> None: ...

    def remove_snap_finalizer(self, snap: LVMSnapshot) -> None: ...

    def create_snapshot(self, snap: LVMSnapshot) -> None: ...

    def update_snap_info(self, snap: LVMSnapshot) -> None: ...


def _default_queue() -> RateLimitingQueue:
    limiter = ItemFastSlowRateLimiter(
        SNAPSHOT_FAST_DELAY, SNAPSHOT_SLOW_DELAY, SNAPSHOT_MAX_FAST_ATTEMPTS
    )
    return RateLimitingQueue(limiter, name="Snap")


class SnapController:
    """Reconciles LVMSnapshot objects whose owner is this node.

    ``get_snapshot(namespace, name)`` returns the cached object (a mapping or
    an LVMSnapshot) or None when it does not exist.
    """

    def __init__(
        self,
        node_id: str,
        get_snapshot: Callable[[str, str], Any],
        lvm: SnapshotOperations,
        queue: RateLimitingQueue | None = None,
        synced: Callable[[], bool] | None = None,
    ) -> None:
        self.node_id = node_id
        self._get_snapshot = get_snapshot
        self.lvm = lvm
        self.queue = queue if queue is not None else _default_queue()
        self._synced = synced or (lambda: True)

    @staticmethod
    def _is_deletion_candidate(snap: LVMSnapshot) -> bool:
        return snap.deletion_timestamp is not None

    @staticmethod
    def _structured(obj: Any) -> LVMSnapshot | None:
        if isinstance(obj, LVMSnapshot):
            return obj
        if not isinstance(obj, Mapping):
            logger.error("couldn't convert %r to an lvm snapshot object", obj)
            return None
        try:
            return LVMSnapshot.from_dict(obj)
        except (TypeError, ValueError, KeyError) as exc:
            logger.error("err %s, while converting unstructured obj to typed object", exc)
            return None

    def sync_handler(self, key: str) -> None:
        """Sync the snapshot named by a 'namespace/name' key."""
        try:
            namespace, name = split_meta_namespace_key(key)
        except ValueError:
            logger.error("invalid resource key: %s", key)
            return

        cached = self._get_snapshot(namespace, name)
        if cached is None:
            logger.error("lvm snapshot '%s' has been deleted", key)
            return
        snap = self._structured(cached)
        if snap is None:
            snap = LVMSnapshot()
        self.sync_snap(copy.deepcopy(snap))

    def enqueue_snap(self, snap: Any) -> None:
        """Queue the snapshot's 'namespace/name' key."""
        try:
            key = meta_namespace_key(snap)
        except TypeError as exc:
            logger.error("%s", exc)
            return
        self.queue.add(key)

    def sync_snap(self, snap: LVMSnapshot) -> None:
        """Create or destroy the snapshot to match the object's desired state."""
        if self._is_deletion_candidate(snap):
            self.lvm.destroy_snapshot(snap)
            self.lvm.remove_snap_finalizer(snap)
        elif snap.state == STATUS_PENDING:
            self.lvm.create_snapshot(snap)
            self.lvm.update_snap_info(snap)

    def add_snap(self, obj: Any) -> None:
        """Handle an add event."""
        snap = self._structured(obj)
        if snap is None:
            logger.error("couldn't get snapshot object %r", obj)
            return
        if snap.owner_node_id != self.node_id:
            return
        logger.info("Got add event for Snapshot %s/%s", snap.vol_group, snap.name)
        self.enqueue_snap(snap)

    def update_snap(self, old: Any, new: Any) -> None:
        """Handle an update event; only deletions are of interest."""
        snap = self._structured(new)
        if snap is None:
            logger.error("couldn't get snap object %r", new)
            return
        if snap.owner_node_id != self.node_id:
            return
        if self._is_deletion_candidate(snap):
            logger.info("Got update event for Snapshot %s/%s", snap.vol_group, snap.name)
            self.enqueue_snap(snap)

    def delete_snap(self, obj: Any) -> None:
        """Handle a delete event, including tombstones."""
        snap = None if isinstance(obj, DeletedFinalStateUnknown) else self._structured(obj)
        if snap is None:
            if not isinstance(obj, DeletedFinalStateUnknown):
                logger.error("couldn't get object from tombstone %r", obj)
                return
            inner = obj.obj
            if isinstance(inner, (LVMSnapshot, Mapping)):
                snap = self._structured(inner)
            if snap is None:
                logger.error("tombstone contained object that is not a lvmsnapshot %r", obj)
                return
        if snap.owner_node_id != self.node_id:
            return
        logger.info("Got delete event for Snapshot %s/%s", snap.vol_group, snap.name)
        self.enqueue_snap(snap)

    def _run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def run(self, threadiness: int, stop_event: threading.Event) -> None:
        """Run workers until stop_event is set."""
        workers: list[threading.Thread] = []
        try:
            logger.info("Starting Snap controller")
            logger.info("Waiting for informer caches to sync")
            while not self._synced():
                if stop_event.wait(_CACHE_SYNC_POLL):
                    raise RuntimeError("failed to wait for caches to sync")

            logger.info("Starting Snap workers")
            for _ in range(threadiness):
                worker = threading.Thread(target=self._run_worker, daemon=True)
                worker.start()
                workers.append(worker)
            logger.info("Started Snap workers")
            stop_event.wait()
            logger.info("Shutting down Snap workers")
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