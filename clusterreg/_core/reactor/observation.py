"""
Observation of the watched resources and feeding the work queue.

The watch-streams only deliver the new state of the objects. The filters
need both the old and the new states to decide if a change is interesting,
so the last seen state of every object is kept in memory per watch-stream.

After every (re-)listing, the objects that were seen before but are absent
in the new listing are considered deleted (the deletion events could be lost
while the watch-stream was disconnected).
"""
import logging
from collections.abc import Iterable, MutableMapping

from clusterreg._cogs.clients import auth, watching
from clusterreg._cogs.configs import configuration
from clusterreg._cogs.structs import bodies, references
from clusterreg._core.intents import filters
from clusterreg._core.reactor import queueing

logger = logging.getLogger(__name__)

CacheKey = tuple[str | None, str | None]
Cache = MutableMapping[CacheKey, bodies.RawBody]


def _cache_key(body: bodies.RawBody) -> CacheKey:
    return bodies.get_namespace(body), bodies.get_name(body)


async def observe(
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        event_filter: filters.EventFilter,
        queue: queueing.WorkQueue,
        namespaces: Iterable[references.NamespacePattern] = ('*',),
        namespace: references.Namespace = None,
) -> None:
    """
    Watch one resource in one API server infinitely, and enqueue the keys.
    """
    cache: Cache = {}
    listed: set[CacheKey] = set()
    patterns = tuple(namespaces)
    stream = watching.infinite_watch(
        context=context,
        settings=settings,
        resource=event_filter.resource,
        namespace=namespace,
    )
    async for raw_event in stream:
        if raw_event is watching.Bookmark.LISTED:
            forget_unlisted(cache=cache, listed=listed,
                            event_filter=event_filter, queue=queue, namespaces=patterns)
            listed.clear()
            continue
        if isinstance(raw_event, watching.Bookmark):
            continue
        if raw_event['type'] is None:
            listed.add(_cache_key(raw_event['object']))
        process_event(raw_event, cache=cache,
                      event_filter=event_filter, queue=queue, namespaces=patterns)


def process_event(
        raw_event: bodies.RawEvent,
        *,
        cache: Cache,
        event_filter: filters.EventFilter,
        queue: queueing.WorkQueue,
        namespaces: Iterable[references.NamespacePattern],
) -> None:
    body = raw_event['object']
    key = _cache_key(body)
    old: bodies.RawBody | None
    new: bodies.RawBody | None
    if raw_event['type'] == 'DELETED':
        old, new = cache.pop(key, body), None
    else:
        old, new = cache.get(key), body
        cache[key] = body
    dispatch(old, new, event_filter=event_filter, queue=queue, namespaces=namespaces)


def forget_unlisted(
        *,
        cache: Cache,
        listed: set[CacheKey],
        event_filter: filters.EventFilter,
        queue: queueing.WorkQueue,
        namespaces: Iterable[references.NamespacePattern],
) -> None:
    for key in [key for key in cache if key not in listed]:
        old = cache.pop(key)
        dispatch(old, None, event_filter=event_filter, queue=queue, namespaces=namespaces)


def dispatch(
        old: bodies.RawBody | None,
        new: bodies.RawBody | None,
        *,
        event_filter: filters.EventFilter,
        queue: queueing.WorkQueue,
        namespaces: Iterable[references.NamespacePattern],
) -> None:
    body = new if new is not None else old
    if body is None or not event_filter.interesting_on(old, new):
        return
    for key in event_filter.keys_for(body):
        if references.match_namespaces(key.namespace, namespaces):
            logger.debug(f"Enqueueing {key} due to {event_filter.resource.kind} "
                         f"{bodies.get_name(body)!r}.")
            queue.enqueue(key)
