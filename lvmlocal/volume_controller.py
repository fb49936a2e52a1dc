"""Controller that provisions and removes the LVM volumes owned by this node."""

from __future__ import annotations

import copy
import logging
import re
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from lvmlocal.resources import (
    STATUS_FAILED,
    STATUS_READY,
    DeletedFinalStateUnknown,
    ErrorCode,
    ExecError,
    LVMVolume,
    VolumeError,
    VolumeGroup,
    meta_namespace_key,
)
from lvmlocal.workqueue import RateLimitingQueue, ShutDown, split_meta_namespace_key

logger = logging.getLogger(__name__)

_CACHE_SYNC_POLL = 0.1
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


class VolumeOperations(Protocol):
    """LVM operations and status updates the controller relies on."""

    def destroy_volume(self, vol: LVMVolume) -> None: ...

    def remove_vol_finalizer(self, vol: LVMVolume) -> None: ...

    def create_volume(self, vol: LVMVolume) -> None: ...

    def update_vol_info(self, vol: LVMVolume, state: str) -> None: ...

    def update_vol_group(self, vol: LVMVolume, vg_name: str) -> LVMVolume: ...

    def list_volume_groups(self) -> list[VolumeGroup]: ...


def _parse_int(text: str) -> int:
    if _INTEGER_RE.fullmatch(text) is None:
        raise ValueError(f'parsing "{text}": invalid syntax')
    return int(text)


class VolController:
    """Reconciles LVMVolume objects whose owner is this node.

    ``get_volume(namespace, name)`` returns the cached object (a mapping or an
    LVMVolume) or None when it does not exist.
    """

    def __init__(
        self,
        node_id: str,
        get_volume: Callable[[str, str], Any],
        lvm: VolumeOperations,
        queue: RateLimitingQueue | None = None,
        synced: Callable[[], bool] | None = None,
    ) -> None:
        self.node_id = node_id
        self._get_volume = get_volume
        self.lvm = lvm
        self.queue = queue if queue is not None else RateLimitingQueue(name="Vol")
        self._synced = synced or (lambda: True)

    @staticmethod
    def _is_deletion_candidate(vol: LVMVolume) -> bool:
        return vol.deletion_timestamp is not None

    @staticmethod
    def _structured(obj: Any) -> LVMVolume | None:
        if isinstance(obj, LVMVolume):
            return obj
        if not isinstance(obj, Mapping):
            logger.error("couldn't convert %r to an lvm volume object", obj)
            return None
        try:
            return LVMVolume.from_dict(obj)
        except (TypeError, ValueError, KeyError) as exc:
            logger.error("err %s, while converting unstructured obj to typed object", exc)
            return None

    def sync_handler(self, key: str) -> None:
        """Sync the volume named by a 'namespace/name' key."""
        try:
            namespace, name = split_meta_namespace_key(key)
        except ValueError:
            logger.error("invalid resource key: %s", key)
            return

        logger.info("Getting lvmvol object name:%s, ns:%s from cache", name, namespace)
        cached = self._get_volume(namespace, name)
        if cached is None:
            logger.error("lvmvolume '%s' has been deleted", key)
            return
        vol = self._structured(cached)
        if vol is None:
            vol = LVMVolume()
        self.sync_vol(copy.deepcopy(vol))

    def add_vol(self, obj: Any) -> None:
        """Handle an add event."""
        vol = self._structured(obj)
        if vol is None:
            logger.error("couldn't get Vol object %r", obj)
            return
        if vol.owner_node_id != self.node_id:
            return
        logger.info("Got add event for Vol %s", vol.name)
        self.enqueue_vol(vol)

    def update_vol(self, old: Any, new: Any) -> None:
        """Handle an update event; only deletions are of interest."""
        vol = self._structured(new)
        if vol is None:
            logger.error("couldn't get Vol object %r", new)
            return
        if vol.owner_node_id != self.node_id:
            return
        if self._is_deletion_candidate(vol):
            logger.info(
                "Got update event for deleted Vol %s, Deletion timestamp %s",
                vol.name,
                vol.deletion_timestamp,
            )
            self.enqueue_vol(vol)

    def delete_vol(self, obj: Any) -> None:
        """Handle a delete event, including tombstones."""
        vol = None if isinstance(obj, DeletedFinalStateUnknown) else self._structured(obj)
        if vol is None:
            if not isinstance(obj, DeletedFinalStateUnknown):
                logger.error("couldn't get object from tombstone %r", obj)
                return
            inner = obj.obj
            if isinstance(inner, (LVMVolume, Mapping)):
                vol = self._structured(inner)
            if vol is None:
                logger.error("tombstone contained object that is not a lvmvolume %r", obj)
                return
        if vol.owner_node_id != self.node_id:
            return
        logger.info("Got delete event for Vol %s", vol.name)
        self.enqueue_vol(vol)

    def enqueue_vol(self, vol: Any) -> None:
        """Queue the volume's 'namespace/name' key."""
        try:
            key = meta_namespace_key(vol)
        except TypeError as exc:
            logger.error("%s", exc)
            return
        self.queue.add(key)

    def sync_vol(self, vol: LVMVolume) -> None:
        """Create or destroy the volume to match the object's desired state."""
        if self._is_deletion_candidate(vol):
            self.lvm.destroy_volume(vol)
            self.lvm.remove_vol_finalizer(vol)
            return

        if vol.state == STATUS_FAILED:
            logger.warning(
                "Skipping retrying lvm volume provisioning as its already in failed state: %r",
                vol.error,
            )
            return
        if vol.state == STATUS_READY:
            logger.info("lvm volume already provisioned")
            return

        err: Exception | None = None
        if vol.vol_group:
            try:
                self.lvm.create_volume(vol)
            except Exception as exc:
                err = exc
            else:
                self.lvm.update_vol_info(vol, STATUS_READY)
                return

        vgs = self.get_vg_priority_list(vol)

        if not vgs:
            err = ValueError(
                f'no vg available to serve volume request having regex="{vol.vg_pattern}"'
                f' & capacity="{vol.capacity}"'
            )
            logger.error("lvm volume %s - %s", vol.name, err)
        else:
            for vg in vgs:
                # Record the volume group first so a crash cannot leak a volume.
                try:
                    vol = self.lvm.update_vol_group(vol, vg.name)
                except Exception as exc:
                    logger.error("failed to update volGroup to %s: %s", vg.name, exc)
                    raise
                try:
                    self.lvm.create_volume(vol)
                except Exception as exc:
                    err = exc
                    continue
                self.lvm.update_vol_info(vol, STATUS_READY)
                return

        vol.error = self.transform_lvm_error(err if err is not None else RuntimeError(""))
        self.lvm.update_vol_info(vol, STATUS_FAILED)

    def get_vg_priority_list(self, vol: LVMVolume) -> list[VolumeGroup]:
        """Return matching volume groups that fit the volume, least free space first."""
        try:
            pattern = re.compile(vol.vg_pattern)
        except re.error as exc:
            raise ValueError(
                f"invalid regular expression {vol.vg_pattern} for lvm volume {vol.name}: {exc}"
            ) from exc
        try:
            capacity = _parse_int(vol.capacity)
        except ValueError as exc:
            raise ValueError(
                f"invalid requested capacity {vol.capacity} for lvm volume {vol.name}: {exc}"
            ) from exc

        try:
            vgs = self.lvm.list_volume_groups()
        except Exception as exc:
            raise RuntimeError(f"failed to list vgs available on node: {exc}") from exc

        thin = vol.thin_provision == "yes"
        filtered = [
            vg
            for vg in vgs
            if pattern.search(vg.name) and (thin or vg.free >= capacity)
        ]
        return sorted(filtered, key=lambda vg: vg.free)

    def transform_lvm_error(self, err: BaseException) -> VolumeError:
        """Turn a provisioning failure into the error recorded on the volume."""
        vol_err = VolumeError(code=ErrorCode.INTERNAL, message=str(err))
        if not isinstance(err, ExecError):
            return vol_err
        output = err.output
        text = output.decode(errors="replace") if isinstance(output, bytes) else str(output)
        if "insufficient free space" in text.lower():
            vol_err.code = ErrorCode.INSUFFICIENT_CAPACITY
        return vol_err

    def _run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def run(self, threadiness: int, stop_event: threading.Event) -> None:
        """Run workers until stop_event is set."""
        workers: list[threading.Thread] = []
        try:
            logger.info("Starting Vol controller")
            logger.info("Waiting for informer caches to sync")
            while not self._synced():
                if stop_event.wait(_CACHE_SYNC_POLL):
                    raise RuntimeError("failed to wait for caches to sync")

            logger.info("Starting Vol workers")
            for _ in range(threadiness):
                worker = threading.Thread(target=self._run_worker, daemon=True)
                worker.start()
                workers.append(worker)
            logger.info("Started Vol workers")
            stop_event.wait()
            logger.info("Shutting down Vol workers")
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