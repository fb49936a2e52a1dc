import threading

import pytest

from lvmlocal.workqueue import (
    ItemExponentialFailureRateLimiter,
    ItemFastSlowRateLimiter,
    RateLimitingQueue,
    ShutDown,
    default_controller_rate_limiter,
    split_meta_namespace_key,
)


def test_exponential_doubles_until_capped():
    limiter = ItemExponentialFailureRateLimiter(1.0, 10.0)
    delays = [limiter.when("a") for _ in range(6)]
    assert delays[0] == 1.0
    assert delays[1] == 2 * delays[0]
    assert delays[2] == 2 * delays[1]
    assert delays[-1] == 10.0
    assert max(delays) == 10.0


def test_exponential_counts_and_forgets():
    limiter = ItemExponentialFailureRateLimiter(1.0, 10.0)
    limiter.when("a")
    limiter.when("a")
    limiter.when("b")
    assert limiter.num_requeues("a") == 2
    assert limiter.num_requeues("b") == 1
    limiter.forget("a")
    assert limiter.num_requeues("a") == 0
    assert limiter.when("a") == 1.0


def test_exponential_huge_exponent_is_capped():
    limiter = ItemExponentialFailureRateLimiter(0.005, 1000.0)
    for _ in range(3000):
        delay = limiter.when("x")
    assert delay == 1000.0


def test_fast_slow_limiter():
    limiter = ItemFastSlowRateLimiter(5, 30, 12)
    delays = [limiter.when("snap") for _ in range(14)]
    assert delays[:12] == [5] * 12
    assert delays[12:] == [30, 30]
    assert limiter.num_requeues("snap") == 14
    limiter.forget("snap")
    assert limiter.num_requeues("snap") == 0
    assert limiter.when("snap") == 5


def test_default_limiter_bucket_kicks_in_after_burst():
    limiter = default_controller_rate_limiter()
    first = limiter.when("item-0")
    for index in range(1, 100):
        limiter.when(f"item-{index}")
    after_burst = limiter.when("item-100")
    assert first < 1.0
    assert after_burst > first
    assert limiter.num_requeues("item-0") == 1


def test_queue_deduplicates_and_keeps_order():
    queue = RateLimitingQueue(name="Vol")
    queue.add("a")
    queue.add("b")
    queue.add("a")
    assert len(queue) == 2
    assert queue.get() == "a"
    assert queue.get() == "b"
    assert len(queue) == 0


def test_item_added_while_processing_is_requeued_on_done():
    queue = RateLimitingQueue()
    queue.add("a")
    item = queue.get()
    queue.add("a")
    assert len(queue) == 0
    queue.done(item)
    assert len(queue) == 1
    assert queue.get() == "a"


def test_done_without_readd_does_not_requeue():
    queue = RateLimitingQueue()
    queue.add("a")
    queue.done(queue.get())
    assert len(queue) == 0


def test_get_times_out():
    queue = RateLimitingQueue()
    with pytest.raises(TimeoutError):
        queue.get(timeout=0.01)


def test_shut_down_drains_then_raises():
    queue = RateLimitingQueue()
    queue.add("a")
    queue.shut_down()
    queue.add("b")
    assert queue.shutting_down
    assert queue.get() == "a"
    with pytest.raises(ShutDown):
        queue.get(timeout=1)


def test_shut_down_wakes_waiting_getter():
    queue = RateLimitingQueue()
    outcome = []

    def worker():
        try:
            queue.get()
        except ShutDown:
            outcome.append("shutdown")

    thread = threading.Thread(target=worker)
    thread.start()
    queue.shut_down()
    thread.join(timeout=2)
    assert thread.is_alive() is False
    assert outcome == ["shutdown"]
    assert len(queue) == 0
    with pytest.raises(ShutDown):
        queue.get(timeout=1)


def test_add_after_delivers_later():
    queue = RateLimitingQueue()
    queue.add_after("late", 0.05)
    assert len(queue) == 0
    assert queue.get(timeout=2) == "late"


def test_add_rate_limited_uses_limiter():
    limiter = ItemFastSlowRateLimiter(0, 0, 1)
    queue = RateLimitingQueue(rate_limiter=limiter)
    queue.add_rate_limited("k")
    assert queue.get(timeout=1) == "k"
    assert limiter.num_requeues("k") == 1
    queue.forget("k")
    assert limiter.num_requeues("k") == 0


@pytest.mark.parametrize(
    "key, expected",
    [("openebs/node-1", ("openebs", "node-1")), ("node-1", ("", "node-1"))],
)
def test_split_meta_namespace_key(key, expected):
    assert split_meta_namespace_key(key) == expected


def test_split_meta_namespace_key_rejects_extra_parts():
    with pytest.raises(ValueError, match="unexpected key format"):
        split_meta_namespace_key("a/b/c")