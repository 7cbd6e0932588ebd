import pytest

from clusterreg._cogs.clients import fetching, watching
from clusterreg._cogs.clients.errors import APIClientError
from clusterreg._cogs.clients.watching import Bookmark, WatchingError, continuous_watch, \
                                              infinite_watch
from clusterreg._cogs.structs.references import MANAGEDCLUSTERS

GONE = {'type': 'ERROR', 'object': {'code': 410}}


@pytest.fixture()
def listed(mocker):
    objs = [{'metadata': {'name': 'mc1', 'resourceVersion': '1'}}]
    return mocker.patch.object(fetching, 'list_objs', return_value=(objs, '10'))


@pytest.fixture()
def stream(mocker):
    """ The watch-streams to be returned one by one for every watch request. """
    batches = []
    sinces = []

    async def watch_objs(*, since=None, **_):
        sinces.append(since)
        for event in batches.pop(0):
            yield event

    mocker.patch.object(watching, 'watch_objs', new=watch_objs)
    return batches, sinces


async def test_listing_goes_first_then_a_bookmark(settings, compute, listed, stream):
    batches, _ = stream
    batches.append([GONE])

    events = [event async for event in continuous_watch(
        context=compute, settings=settings, resource=MANAGEDCLUSTERS, namespace=None)]

    assert events == [
        {'type': None, 'object': {'metadata': {'name': 'mc1', 'resourceVersion': '1'}}},
        Bookmark.LISTED,
    ]


async def test_stream_is_resumed_from_last_seen_version(settings, compute, listed, stream):
    settings.watching.reconnect_backoff = 0
    batches, sinces = stream
    batches.append([{'type': 'ADDED', 'object': {'metadata': {'name': 'mc2', 'resourceVersion': '11'}}}])
    batches.append([{'type': 'MODIFIED', 'object': {'metadata': {'name': 'mc2', 'resourceVersion': '12'}}},
                    GONE])

    events = [event async for event in continuous_watch(
        context=compute, settings=settings, resource=MANAGEDCLUSTERS, namespace=None)]

    assert sinces == ['10', '11']
    assert [event['type'] for event in events if not isinstance(event, Bookmark)] == \
           [None, 'ADDED', 'MODIFIED']


async def test_unsupported_event_types_are_ignored(settings, compute, listed, stream, caplog):
    batches, _ = stream
    batches.append([{'type': 'UNKNOWN', 'object': {}}, GONE])

    events = [event async for event in continuous_watch(
        context=compute, settings=settings, resource=MANAGEDCLUSTERS, namespace=None)]

    assert len(events) == 2  # the listed object & the bookmark
    assert 'Ignoring an unsupported event type' in caplog.text


async def test_other_errors_are_fatal(settings, compute, listed, stream):
    batches, _ = stream
    batches.append([{'type': 'ERROR', 'object': {'code': 500, 'message': 'boom'}}])

    with pytest.raises(WatchingError):
        async for _ in continuous_watch(
                context=compute, settings=settings, resource=MANAGEDCLUSTERS, namespace=None):
            pass


async def test_infinite_watch_relists_after_gone(settings, compute, listed, stream):
    settings.watching.reconnect_backoff = 0
    batches, _ = stream
    batches.extend([[GONE], [GONE]])

    events = [event async for event in infinite_watch(
        context=compute, settings=settings, resource=MANAGEDCLUSTERS, _iterations=2)]

    assert listed.call_count == 2
    assert events.count(Bookmark.LISTED) == 2


async def test_infinite_watch_waits_on_too_many_requests(mocker, settings, compute, stream):
    settings.watching.reconnect_backoff = 0
    error = APIClientError({'details': {'retryAfterSeconds': 7}}, status=429)
    mocker.patch.object(fetching, 'list_objs', side_effect=error)
    sleep = mocker.patch('asyncio.sleep')

    events = [event async for event in infinite_watch(
        context=compute, settings=settings, resource=MANAGEDCLUSTERS, _iterations=1)]

    assert events == []
    assert sleep.call_args_list[0][0][0] == 7


async def test_infinite_watch_escalates_other_client_errors(mocker, settings, compute, stream):
    mocker.patch.object(fetching, 'list_objs', side_effect=APIClientError(None, status=403))

    with pytest.raises(APIClientError):
        async for _ in infinite_watch(
                context=compute, settings=settings, resource=MANAGEDCLUSTERS, _iterations=1):
            pass
