import threading

import pytest

from lvmlocal.resources import (
    STATUS_PENDING,
    STATUS_READY,
    DeletedFinalStateUnknown,
    LVMSnapshot,
    ObjectMeta,
)
from lvmlocal.snapshot_controller import SnapController
from lvmlocal.workqueue import ItemFastSlowRateLimiter, RateLimitingQueue, ShutDown

NODE = "node-1"
NS = "openebs"


class FakeLVM:
    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on

    def _record(self, op, snap):
        self.calls.append((op, snap.name))
        if op == self.fail_on:
            raise RuntimeError(f"{op} failed")

    def destroy_snapshot(self, snap):
        self._record("destroy", snap)

    def remove_snap_finalizer(self, snap):
        self._record("finalizer", snap)

    def create_snapshot(self, snap):
        self._record("create", snap)

    def update_snap_info(self, snap):
        self._record("update", snap)


def make_snap(name="snap-a", owner=NODE, state=STATUS_PENDING, deleted=None):
    return LVMSnapshot(
        metadata=ObjectMeta(name=name, namespace=NS, deletion_timestamp=deleted),
        owner_node_id=owner,
        vol_group="lvmvg",
        state=state,
    )


def make_controller(store=None, lvm=None, queue=None, synced=None):
    store = store if store is not None else {}
    lvm = lvm or FakeLVM()
    controller = SnapController(
        NODE,
        lambda ns, name: store.get((ns, name)),
        lvm,
        queue=queue
        or RateLimitingQueue(ItemFastSlowRateLimiter(0.0, 0.0, 1), name="Snap"),
        synced=synced,
    )
    return controller, lvm


def test_add_snap_enqueues_own_snapshot():
    controller, _ = make_controller()
    controller.add_snap(make_snap().to_dict())
    assert controller.queue.get(timeout=1) == f"{NS}/snap-a"


def test_add_snap_ignores_other_node():
    controller, _ = make_controller()
    controller.add_snap(make_snap(owner="other").to_dict())
    assert len(controller.queue) == 0


def test_add_snap_ignores_non_mapping():
    controller, _ = make_controller()
    controller.add_snap(42)
    assert len(controller.queue) == 0


def test_update_snap_only_for_deletion_candidate():
    controller, _ = make_controller()
    controller.update_snap(None, make_snap().to_dict())
    assert len(controller.queue) == 0
    controller.update_snap(None, make_snap(deleted="2021-01-01T00:00:00Z").to_dict())
    assert controller.queue.get(timeout=1) == f"{NS}/snap-a"


def test_delete_snap_from_tombstone():
    controller, _ = make_controller()
    tomb = DeletedFinalStateUnknown(key=f"{NS}/snap-a", obj=make_snap())
    controller.delete_snap(tomb)
    assert controller.queue.get(timeout=1) == f"{NS}/snap-a"


def test_delete_snap_tombstone_with_foreign_object():
    controller, _ = make_controller()
    controller.delete_snap(DeletedFinalStateUnknown(key="x", obj="junk"))
    assert len(controller.queue) == 0


def test_sync_snap_pending_creates_and_updates():
    controller, lvm = make_controller()
    controller.sync_snap(make_snap())
    assert lvm.calls == [("create", "snap-a"), ("update", "snap-a")]


def test_sync_snap_ready_does_nothing():
    controller, lvm = make_controller()
    controller.sync_snap(make_snap(state=STATUS_READY))
    assert lvm.calls == []


def test_sync_snap_deletion_destroys_then_removes_finalizer():
    controller, lvm = make_controller()
    controller.sync_snap(make_snap(deleted="2021-01-01T00:00:00Z"))
    assert lvm.calls == [("destroy", "snap-a"), ("finalizer", "snap-a")]


def test_sync_snap_destroy_failure_keeps_finalizer():
    controller, lvm = make_controller(lvm=FakeLVM(fail_on="destroy"))
    with pytest.raises(RuntimeError, match="destroy failed"):
        controller.sync_snap(make_snap(deleted="2021-01-01T00:00:00Z"))
    assert lvm.calls == [("destroy", "snap-a")]


def test_sync_snap_create_failure_skips_update():
    controller, lvm = make_controller(lvm=FakeLVM(fail_on="create"))
    with pytest.raises(RuntimeError):
        controller.sync_snap(make_snap())
    assert lvm.calls == [("create", "snap-a")]


def test_sync_handler_reads_cache():
    store = {(NS, "snap-a"): make_snap().to_dict()}
    controller, lvm = make_controller(store=store)
    controller.sync_handler(f"{NS}/snap-a")
    assert lvm.calls == [("create", "snap-a"), ("update", "snap-a")]


def test_sync_handler_missing_and_invalid_keys():
    controller, lvm = make_controller()
    controller.sync_handler(f"{NS}/missing")
    controller.sync_handler("a/b/c")
    assert lvm.calls == []


def test_process_next_work_item_success_forgets():
    store = {(NS, "snap-a"): make_snap()}
    controller, lvm = make_controller(store=store)
    controller.queue.add(f"{NS}/snap-a")
    assert controller.process_next_work_item() is True
    assert controller.queue.rate_limiter.num_requeues(f"{NS}/snap-a") == 0
    assert len(controller.queue) == 0
    assert ("create", "snap-a") in lvm.calls


def test_process_next_work_item_failure_requeues():
    store = {(NS, "snap-a"): make_snap()}
    controller, _ = make_controller(store=store, lvm=FakeLVM(fail_on="create"))
    key = f"{NS}/snap-a"
    controller.queue.add(key)
    assert controller.process_next_work_item() is True
    assert controller.queue.rate_limiter.num_requeues(key) == 1
    assert controller.queue.get(timeout=1) == key


def test_process_next_work_item_after_shutdown():
    controller, _ = make_controller()
    controller.queue.shut_down()
    assert controller.process_next_work_item() is False


def test_run_shuts_down_queue_when_stopped():
    controller, _ = make_controller()
    stop = threading.Event()
    stop.set()
    controller.run(2, stop)
    assert controller.queue.shutting_down is True
    with pytest.raises(ShutDown):
        controller.queue.get(timeout=1)


def test_run_fails_when_caches_never_sync():
    controller, _ = make_controller(synced=lambda: False)
    stop = threading.Event()
    stop.set()
    with pytest.raises(RuntimeError, match="caches to sync"):
        controller.run(1, stop)


def test_default_queue_uses_fast_slow_limiter():
    controller = SnapController(NODE, lambda ns, name: None, FakeLVM())
    limiter = controller.queue.rate_limiter
    assert isinstance(limiter, ItemFastSlowRateLimiter)
    assert limiter.fast_delay == 5.0
    assert limiter.slow_delay == 30.0
    assert limiter.max_fast_attempts == 12