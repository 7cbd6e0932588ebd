"""
The tests of the per-key work queue with simulated reconciliations.

The reconciliations are replaced with the fakes that only record
their calls and their concurrency, and return the prescribed results.
"""
import asyncio
import collections

import pytest

from clusterreg._cogs.structs.references import ObjectKey
from clusterreg._core.reactor.queueing import WorkQueue
from clusterreg._core.reactor.reconciling import Result

KEY1 = ObjectKey('ns1', 'rc1')
KEY2 = ObjectKey('ns1', 'rc2')


def is_pending(queue: WorkQueue, key: ObjectKey) -> bool:
    """ Either running/awaiting in a worker, or scheduled for later. """
    return key in queue._streams or key in queue._timers


class FakeReconcile:

    def __init__(self, *results, duration: float = 0.0):
        super().__init__()
        self.results = collections.deque(results)
        self.duration = duration
        self.calls = []
        self.running = collections.Counter()
        self.max_per_key = 0
        self.max_total = 0

    async def __call__(self, key):
        self.calls.append(key)
        self.running[key] += 1
        self.max_per_key = max(self.max_per_key, self.running[key])
        self.max_total = max(self.max_total, sum(self.running.values()))
        try:
            await asyncio.sleep(self.duration)
            result = self.results.popleft() if self.results else Result()
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.running[key] -= 1


@pytest.fixture(autouse=True)
def fast_queueing(settings):
    settings.queueing.idle_timeout = 0.05
    settings.queueing.exit_timeout = 0.5
    settings.queueing.error_base_delay = 0.01
    return settings


@pytest.fixture()
async def queue_factory(settings):
    queues = []

    def factory(reconcile):
        queue = WorkQueue(reconcile=reconcile, settings=settings)
        queues.append(queue)
        return queue

    yield factory

    for queue in queues:
        await queue.close()


async def test_triggers_are_coalesced_before_the_start(queue_factory):
    reconcile = FakeReconcile()
    queue = queue_factory(reconcile)

    queue.enqueue(KEY1)
    queue.enqueue(KEY1)
    queue.enqueue(KEY1)
    await queue.join(timeout=1)

    assert reconcile.calls == [KEY1]


async def test_triggers_during_a_reconciliation_lead_to_one_more(queue_factory):
    reconcile = FakeReconcile(duration=0.05)
    queue = queue_factory(reconcile)

    queue.enqueue(KEY1)
    await asyncio.sleep(0.01)  # let it start
    queue.enqueue(KEY1)
    queue.enqueue(KEY1)
    await queue.join(timeout=1)

    assert reconcile.calls == [KEY1, KEY1]
    assert reconcile.max_per_key == 1


async def test_different_keys_run_in_parallel(queue_factory):
    reconcile = FakeReconcile(duration=0.05)
    queue = queue_factory(reconcile)

    queue.enqueue(KEY1)
    queue.enqueue(KEY2)
    await queue.join(timeout=1)

    assert sorted(reconcile.calls) == [KEY1, KEY2]
    assert reconcile.max_total == 2


async def test_worker_limit(settings, queue_factory):
    settings.queueing.worker_limit = 1
    reconcile = FakeReconcile(duration=0.02)
    queue = queue_factory(reconcile)

    queue.enqueue(KEY1)
    queue.enqueue(KEY2)
    await queue.join(timeout=1)

    assert sorted(reconcile.calls) == [KEY1, KEY2]
    assert reconcile.max_total == 1


async def test_requeue_on_request(queue_factory, timer):
    reconcile = FakeReconcile(Result(requeue_after=0.1), Result())
    queue = queue_factory(reconcile)

    with timer:
        queue.enqueue(KEY1)
        await asyncio.sleep(0.05)
        assert reconcile.calls == [KEY1]
        assert is_pending(queue, KEY1)
        await asyncio.sleep(0.1)
        await queue.join(timeout=1)

    assert reconcile.calls == [KEY1, KEY1]
    assert not is_pending(queue, KEY1)
    assert timer.seconds >= 0.1


async def test_retries_with_backoff_after_failures(queue_factory, caplog):
    reconcile = FakeReconcile(ValueError('boom'), ValueError('boom'), Result())
    queue = queue_factory(reconcile)

    queue.enqueue(KEY1)
    await asyncio.sleep(0.2)  # 0.01 + 0.02 of backoffs, plus the idling
    await queue.join(timeout=1)

    assert reconcile.calls == [KEY1, KEY1, KEY1]
    assert 'retrying in 0.010s' in caplog.text
    assert 'retrying in 0.020s' in caplog.text
    assert not is_pending(queue, KEY1)


async def test_failures_do_not_affect_other_keys(queue_factory):
    class Reconcile(FakeReconcile):
        async def __call__(self, key):
            await super().__call__(key)
            if key == KEY1:
                raise ValueError('boom')
            return Result()

    reconcile = Reconcile()
    queue = queue_factory(reconcile)

    queue.enqueue(KEY1)
    queue.enqueue(KEY2)
    await asyncio.sleep(0.03)

    assert reconcile.calls.count(KEY2) == 1
    assert reconcile.calls.count(KEY1) >= 2


@pytest.mark.parametrize('failures, expected', [
    (1, 0.005),
    (2, 0.01),
    (3, 0.02),
    (10, 2.56),
    (19, 1000.0),
    (1000, 1000.0),
])
def test_backoff(settings, failures, expected):
    settings.queueing.error_base_delay = 0.005
    queue = WorkQueue(reconcile=FakeReconcile(), settings=settings)
    assert queue.get_backoff(failures) == pytest.approx(expected)


async def test_only_the_earliest_requeue_is_kept(queue_factory):
    reconcile = FakeReconcile()
    queue = queue_factory(reconcile)

    queue.enqueue_after(KEY1, 10)
    queue.enqueue_after(KEY1, 0.02)
    queue.enqueue_after(KEY1, 5)
    await asyncio.sleep(0.05)

    assert reconcile.calls == [KEY1]
    await queue.join(timeout=1)
    assert not is_pending(queue, KEY1)


async def test_idle_workers_exit(queue_factory):
    reconcile = FakeReconcile()
    queue = queue_factory(reconcile)

    queue.enqueue(KEY1)
    await asyncio.sleep(0.01)
    assert len(queue) == 1
    await asyncio.sleep(0.1)
    assert len(queue) == 0


async def test_closed_queue_accepts_nothing(queue_factory):
    reconcile = FakeReconcile()
    queue = queue_factory(reconcile)
    queue.enqueue_after(KEY1, 0.01)

    await queue.close()
    queue.enqueue(KEY2)
    queue.enqueue_after(KEY2, 0.01)
    await asyncio.sleep(0.05)

    assert queue.closed
    assert reconcile.calls == []
    assert not is_pending(queue, KEY1)
    assert not is_pending(queue, KEY2)


async def test_close_lets_running_reconciliations_finish(queue_factory):
    reconcile = FakeReconcile(duration=0.05)
    queue = queue_factory(reconcile)

    queue.enqueue(KEY1)
    await asyncio.sleep(0.01)
    await queue.close()

    assert reconcile.calls == [KEY1]
    assert reconcile.running[KEY1] == 0
    assert len(queue) == 0
