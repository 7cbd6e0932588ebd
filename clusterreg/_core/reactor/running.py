import asyncio
import contextlib
import logging
import signal
import threading
from collections.abc import Collection

from clusterreg._cogs.clients import auth
from clusterreg._cogs.configs import configuration, connections
from clusterreg._cogs.helpers import typedefs
from clusterreg._cogs.structs import references
from clusterreg._core.engines import hubs
from clusterreg._core.intents import filters
from clusterreg._core.reactor import observation, queueing, reconciling

logger = logging.getLogger(__name__)


def run(
        *,
        config: connections.ControllerConfig,
        settings: configuration.OperatorSettings | None = None,
        namespaces: Collection[references.NamespacePattern] = (),
        stop_flag: asyncio.Event | None = None,
) -> None:
    """
    Run the whole controller synchronously.

    This function should be used to run the controller in normal sync mode.
    """
    with contextlib.suppress(asyncio.CancelledError):
        asyncio.run(controller(
            config=config,
            settings=settings,
            namespaces=namespaces,
            stop_flag=stop_flag,
        ))


async def controller(
        *,
        config: connections.ControllerConfig,
        settings: configuration.OperatorSettings | None = None,
        namespaces: Collection[references.NamespacePattern] = (),
        stop_flag: asyncio.Event | None = None,
) -> None:
    """
    Run the whole controller asynchronously.

    The namespaces, if passed explicitly, override the ones from the config.
    The controller runs until stopped by a signal, by the stop-flag, or until
    any of the watch-streams fails with an unrecoverable error.
    """
    settings = settings if settings is not None else configuration.OperatorSettings()
    patterns = tuple(namespaces) or tuple(config.namespaces)

    compute = auth.APIContext(config.compute)
    registry = hubs.HubRegistry.from_configs(config.hubs, settings=settings)
    reconciler = reconciling.Reconciler(compute=compute, hubs=registry, settings=settings)
    queue = queueing.WorkQueue(reconcile=reconciler, settings=settings)
    try:
        tasks = spawn_tasks(
            compute=compute,
            registry=registry,
            queue=queue,
            settings=settings,
            namespaces=patterns,
            stop_flag=stop_flag,
        )
        await run_tasks(tasks)
    finally:
        await queue.close()
        await registry.close()
        await compute.close()


def spawn_tasks(
        *,
        compute: auth.APIContext,
        registry: hubs.HubRegistry,
        queue: queueing.WorkQueue,
        settings: configuration.OperatorSettings,
        namespaces: Collection[references.NamespacePattern],
        stop_flag: asyncio.Event | None = None,
) -> list[typedefs.Task]:
    """
    Spawn all the root tasks: one watch-stream per watched resource per API server.
    """
    loop = asyncio.get_running_loop()
    tasks: list[typedefs.Task] = []

    signal_flag: asyncio.Future[signal.Signals] = loop.create_future()
    tasks.append(asyncio.create_task(_stop_flag_checker(signal_flag, stop_flag),
                                     name="stop-flag checker"))

    tasks.append(asyncio.create_task(observation.observe(
        context=compute,
        settings=settings,
        event_filter=filters.PRIMARY_FILTER,
        queue=queue,
        namespaces=namespaces,
    ), name=f"watcher of {filters.PRIMARY_FILTER.resource} at {compute.server}"))

    for hub in registry:
        for event_filter in filters.HUB_FILTERS:
            tasks.append(asyncio.create_task(observation.observe(
                context=hub.context,
                settings=settings,
                event_filter=event_filter,
                queue=queue,
                namespaces=namespaces,
            ), name=f"watcher of {event_filter.resource} at hub {hub.name}"))

    # On Ctrl+C or pod termination, cancel all tasks gracefully.
    if threading.current_thread() is threading.main_thread():
        try:
            loop.add_signal_handler(signal.SIGINT, signal_flag.set_result, signal.SIGINT)
            loop.add_signal_handler(signal.SIGTERM, signal_flag.set_result, signal.SIGTERM)
        except NotImplementedError:
            logger.warning("OS signals are ignored: can't add signal handler in Windows.")
    else:
        logger.warning("OS signals are ignored: running not in the main thread.")

    return tasks


async def run_tasks(root_tasks: Collection[typedefs.Task]) -> None:
    """
    Run the root tasks until one of them exits; then stop all others.

    The root tasks are expected to run forever. Once any of them exits,
    the whole controller should exit. The errors of the exited tasks
    (except for the cancellations) are re-raised.
    """
    try:
        done, pending = await asyncio.wait(root_tasks, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _stop(root_tasks)
        raise

    await _stop(pending)
    for task in done:
        exc = None if task.cancelled() else task.exception()
        if exc is not None:
            raise exc


async def _stop(tasks: Collection[typedefs.Task]) -> None:
    tasks = list(tasks)
    for task in tasks:
        task.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for task, result in zip(tasks, results):
        if isinstance(result, Exception):
            logger.error(f"Root task {task.get_name()!r} has failed: {result!r}")


async def _stop_flag_checker(
        signal_flag: asyncio.Future[signal.Signals],
        stop_flag: asyncio.Event | None,
) -> None:
    """
    A root task for external stopping by a signal or a stop-flag. Once set,
    this task will exit, and thus all other root tasks will be cancelled.
    """
    flags: list[asyncio.Future[object]] = [signal_flag]
    if stop_flag is not None:
        flags.append(asyncio.ensure_future(stop_flag.wait()))

    try:
        done, pending = await asyncio.wait(flags, return_when=asyncio.FIRST_COMPLETED)
        result = done.pop().result()
    except asyncio.CancelledError:
        pass  # the controller is stopping for any other reason
    else:
        if isinstance(result, signal.Signals):
            logger.info("Signal %s is received. The controller is stopping.", result.name)
        else:
            logger.info("Stop-flag is set. The controller is stopping.")
    finally:
        for flag in flags[1:]:
            flag.cancel()
