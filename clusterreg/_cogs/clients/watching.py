"""
Watching and streaming watch-events.

Every watched resource (the registered clusters in the compute API,
the managed clusters & manifest works in every hub) is watched infinitely:
first, the objects are listed, and the listing is yielded as pseudo-events
(with type ``None``); then, the watch-stream continues from the listing's
resource version; if the stream is disconnected, it is resumed from the last
seen resource version; if the resource version is gone (HTTP 410),
the whole cycle is restarted with a new listing.
"""
import asyncio
import enum
import logging
from collections.abc import AsyncIterator
from typing import cast

import aiohttp

from clusterreg._cogs.clients import api, auth, errors, fetching
from clusterreg._cogs.configs import configuration
from clusterreg._cogs.structs import bodies, references

logger = logging.getLogger(__name__)

SUPPORTED_EVENT_TYPES = frozenset({'ADDED', 'MODIFIED', 'DELETED'})
HTTP_GONE = 410
HTTP_TOO_MANY_REQUESTS = 429
DEFAULT_THROTTLING_DELAY = 1

# The disconnects that end one watch-request, but not the watching.
DISCONNECTS = (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError)


class WatchingError(Exception):
    """
    Raised when an unexpected error happens in the watch-stream API.
    """


class Bookmark(enum.Enum):
    """ Special marks sent in the stream among raw events. """
    LISTED = enum.auto()  # the listing is over, now streaming.


def _describe(resource: references.Resource, namespace: references.Namespace) -> str:
    where = f'in {namespace!r}' if namespace is not None else 'cluster-wide'
    return f"{resource} {where}"


def _throttling_delay(exc: errors.APIClientError) -> float | None:
    """ How long to wait if the server throttles the client; ``None`` for other errors. """
    if exc.status != HTTP_TOO_MANY_REQUESTS:
        return None
    retry_after = exc.details.get('retryAfterSeconds') if exc.details else None
    return retry_after or DEFAULT_THROTTLING_DELAY


async def infinite_watch(
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace = None,
        _iterations: int | None = None,  # for tests only: how many listing cycles to make.
) -> AsyncIterator[Bookmark | bodies.RawEvent]:
    """
    Stream the watch-events infinitely, relisting whenever needed.

    It only exits with the errors which cannot be fixed by relisting:
    the client-side API errors (except for throttling) and :class:`WatchingError`.
    """
    what = _describe(resource, namespace)
    logger.debug(f"Starting the watch-stream for {what} at {context.server}.")
    cycles = 0
    try:
        while _iterations is None or cycles < _iterations:
            cycles += 1
            try:
                async for raw_event in continuous_watch(
                    context=context,
                    settings=settings,
                    resource=resource,
                    namespace=namespace,
                ):
                    yield raw_event
            except errors.APIClientError as e:
                delay = _throttling_delay(e)
                if delay is None:
                    raise
                logger.warning(f"The server throttles the watching of {what}; "
                               f"retrying in {delay} seconds: {e}")
                await asyncio.sleep(delay)
            await asyncio.sleep(settings.watching.reconnect_backoff)
    finally:
        logger.debug(f"Stopping the watch-stream for {what} at {context.server}.")


async def continuous_watch(
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
) -> AsyncIterator[Bookmark | bodies.RawEvent]:
    """
    List the objects, then watch them from the listed version until it is gone.

    The listed objects are yielded as pseudo-events with type ``None``,
    followed by :attr:`Bookmark.LISTED` (even if nothing was listed).
    """
    try:
        objs, resource_version = await fetching.list_objs(
            context=context,
            settings=settings,
            resource=resource,
            namespace=namespace,
            logger=logger,
        )
    except DISCONNECTS:
        return

    for obj in objs:
        yield {'type': None, 'object': obj}
    yield Bookmark.LISTED

    # Every single watch-request ends on the server's timeout; so, resume from the last version.
    while True:
        async for raw_input in watch_objs(
            context=context,
            settings=settings,
            resource=resource,
            namespace=namespace,
            since=resource_version,
        ):
            raw_type = raw_input['type']
            raw_object = raw_input['object']

            if raw_type == 'ERROR':
                if cast(bodies.RawError, raw_object).get('code') == HTTP_GONE:
                    logger.debug(f"The resource version is gone; relisting {_describe(resource, namespace)}.")
                    return
                raise WatchingError(f"Error in the watch-stream: {raw_object}")

            if raw_type not in SUPPORTED_EVENT_TYPES:
                logger.warning(f"Ignoring an unsupported event type: {raw_input!r}")
                continue

            body = cast(bodies.RawBody, raw_object)
            resource_version = bodies.get_resource_version(body) or resource_version
            yield cast(bodies.RawEvent, raw_input)

        await asyncio.sleep(settings.watching.reconnect_backoff)


async def watch_objs(
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        since: str | None = None,
) -> AsyncIterator[bodies.RawInput]:
    """
    Make one watch-request and yield its raw events until disconnected.
    """
    params = {'watch': 'true'}
    if since is not None:
        params['resourceVersion'] = since
    if settings.watching.server_timeout is not None:
        params['timeoutSeconds'] = str(settings.watching.server_timeout)

    connect_timeout = next((
        timeout for timeout in [
            settings.watching.connect_timeout,
            settings.networking.connect_timeout,
            settings.networking.request_timeout,
        ] if timeout is not None
    ), None)
    timeout = aiohttp.ClientTimeout(total=settings.watching.client_timeout,
                                    sock_connect=connect_timeout)

    try:
        async for raw_input in api.stream(
            resource.get_url(namespace=namespace, params=params),
            context=context,
            settings=settings,
            timeout=timeout,
            logger=logger,
        ):
            yield raw_input
    except DISCONNECTS:
        pass
