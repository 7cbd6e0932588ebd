"""
The per-key work queue of the reconciliations.

The watch-streams of all the watched resources (the registered clusters
themselves, and their derived objects in the hubs) put the keys of the
registered clusters to be reconciled into this queue.

Every key is handled sequentially in its own worker task: there is never more
than one reconciliation of the same registered cluster at a time.
Different keys are reconciled in parallel (optionally up to a limit).

The triggers of the same key are coalesced: if a key is triggered several
times while its reconciliation is running, it is reconciled only once more
after that. The reconciliation is level-triggered (it always re-reads the
latest state), so the individual triggers carry no information.

To prevent the memory leaks over the long run, the per-key queues and workers
are destroyed if no new triggers arrive for some time. The destruction delay
prevents the too often destruction and re-creation of the workers.

The delayed requeues (as requested by the reconciliation, or as a backoff
after its failures) are timers that put the key into the queue again later.
"""
import asyncio
import contextlib
import enum
import logging
from collections.abc import Awaitable, Callable, MutableMapping
from typing import TYPE_CHECKING, NamedTuple

from clusterreg._cogs.configs import configuration
from clusterreg._cogs.helpers import typedefs
from clusterreg._cogs.structs import references
from clusterreg._core.reactor import reconciling

logger = logging.getLogger(__name__)

Reconcile = Callable[[references.ObjectKey], Awaitable[reconciling.Result]]


# The signals sent from the queue to the per-key workers.
class Signal(enum.Enum):
    TRIGGER = enum.auto()  # reconcile the key (again)
    EOS = enum.auto()  # end of stream: exit the worker


if TYPE_CHECKING:
    SignalQueue = asyncio.Queue[Signal]
else:
    SignalQueue = asyncio.Queue


class Stream(NamedTuple):
    """ A single key's stream of triggers. """
    backlog: SignalQueue


Streams = MutableMapping[references.ObjectKey, Stream]


class WorkQueue:

    def __init__(
            self,
            *,
            reconcile: Reconcile,
            settings: configuration.OperatorSettings,
    ) -> None:
        super().__init__()
        self._reconcile = reconcile
        self._settings = settings
        self._streams: Streams = {}
        self._tasks: set[typedefs.Task] = set()
        self._timers: dict[references.ObjectKey, tuple[float, typedefs.TimerHandle]] = {}
        self._failures: dict[references.ObjectKey, int] = {}
        self._signaller = asyncio.Condition()
        self._closed = False
        limit = settings.queueing.worker_limit
        self._limiter = asyncio.Semaphore(limit) if limit is not None else None

    def __len__(self) -> int:
        return len(self._streams)

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, key: references.ObjectKey) -> None:
        """
        Trigger the reconciliation of the key as soon as possible.

        Either feed the existing worker of the key, or start a new worker.
        """
        if self._closed:
            return
        try:
            self._streams[key].backlog.put_nowait(Signal.TRIGGER)
        except KeyError:
            self._streams[key] = Stream(backlog=asyncio.Queue())
            self._streams[key].backlog.put_nowait(Signal.TRIGGER)
            task = asyncio.create_task(self._worker(key), name=f'worker for {key}')
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def enqueue_after(self, key: references.ObjectKey, delay: float) -> None:
        """
        Trigger the reconciliation of the key after a delay.

        Only the earliest of the requested requeues is kept for every key.
        A requeue does not prevent the reconciliation on the watch-events
        in the meantime, if they happen.
        """
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        if key in self._timers:
            existing_when, existing_handle = self._timers[key]
            if existing_when <= when:
                return
            existing_handle.cancel()
        handle = loop.call_at(when, self._fire, key)
        self._timers[key] = (when, handle)

    def _fire(self, key: references.ObjectKey) -> None:
        self._timers.pop(key, None)
        self.enqueue(key)

    async def _worker(self, key: references.ObjectKey) -> None:
        """
        A single worker for a single key, running in its own task.

        The worker is time-limited: it exits as soon as all the key's triggers
        have been processed and there are no new triggers for some time of idling.
        The queue will spawn a new worker when (and if) new triggers arrive.
        """
        backlog = self._streams[key].backlog
        try:
            while True:

                # Get a trigger ASAP (no delay) if possible. But expect the queue can be empty.
                # Save memory by finishing the worker if the backlog is empty for some time.
                try:
                    signal = await asyncio.wait_for(backlog.get(),
                                                    timeout=self._settings.queueing.idle_timeout)
                except asyncio.TimeoutError:
                    # The timeout can happen while the queue is filled: depending on the order
                    # in which the coros/waiters are checked once control returns to asyncio.
                    # So, exit only if it is truly empty; if not, run as normally.
                    # There MUST be NO async/await-code between "break" and "finally".
                    if backlog.empty():
                        break
                    else:
                        continue

                # Coalesce all the triggers accumulated so far into one reconciliation.
                signals = {signal}
                while not backlog.empty():
                    signals.add(backlog.get_nowait())

                # Exit gracefully and immediately on the end-of-stream marker.
                if Signal.EOS in signals:
                    break

                await self._process(key)

        finally:
            # Whether an exception or a break or a success, garbage-collect our queue.
            # The queue must not be left in the streams without a corresponding worker.
            with contextlib.suppress(KeyError):
                del self._streams[key]

            # Notify the depletion routine about the changes in the workers' overall state.
            async with self._signaller:
                self._signaller.notify_all()

    async def _process(self, key: references.ObjectKey) -> None:
        async with self._limiter if self._limiter is not None else contextlib.nullcontext():
            try:
                result = await self._reconcile(key)
            except Exception:
                failures = self._failures.get(key, 0) + 1
                self._failures[key] = failures
                delay = self.get_backoff(failures)
                logger.exception(f"Reconciliation of {key} has failed; retrying in {delay:.3f}s.")
                self.enqueue_after(key, delay)
            else:
                self._failures.pop(key, None)
                if result.requeue_after is not None:
                    logger.debug(f"Reconciliation of {key} is requeued in {result.requeue_after}s.")
                    self.enqueue_after(key, result.requeue_after)

    def get_backoff(self, failures: int) -> float:
        """ The exponential backoff: the base delay doubled on every failure, capped. """
        base = self._settings.queueing.error_base_delay
        cap = self._settings.queueing.error_max_delay
        return min(base * 2 ** min(failures - 1, 64), cap)

    async def join(self, timeout: float | None = None) -> None:
        """ Wait until all the workers have finished (e.g. became idle and exited). """
        async with self._signaller:
            await asyncio.wait_for(self._signaller.wait_for(lambda: not self._streams), timeout)

    async def close(self) -> None:
        """
        Stop accepting new triggers, let the running reconciliations finish, stop all workers.
        """
        self._closed = True
        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        # Notify all the workers to finish now. Wake them up if they are waiting in the queue.
        for stream in self._streams.values():
            stream.backlog.put_nowait(Signal.EOS)

        # Wait for the queues to be depleted, but only if there are some workers running.
        # Continue with the tasks termination if the timeout is reached, no matter the queues.
        async with self._signaller:
            try:
                await asyncio.wait_for(
                    self._signaller.wait_for(lambda: not self._streams),
                    timeout=self._settings.queueing.exit_timeout)
            except asyncio.TimeoutError:
                pass  # if not depleted as configured, proceed with what's left and cancel it.

        # The last check if the termination is going to be graceful or not.
        if self._streams:
            logger.warning(f"Unfinished reconciliations left for {list(self._streams)!r}.")

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
