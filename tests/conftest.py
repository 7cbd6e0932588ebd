import asyncio
import copy
import dataclasses
import itertools
import logging
import unittest.mock
from collections.abc import Mapping
from typing import Any

import aiohttp.web
import pytest

from clusterreg._cogs.clients import auth, creating, deleting, errors, fetching, patching
from clusterreg._cogs.configs.configuration import OperatorSettings
from clusterreg._cogs.structs import references
from clusterreg._cogs.structs.credentials import ConnectionInfo
from clusterreg._core.actions.applying import Applier
from clusterreg._core.engines.hubs import HubInstance, HubRegistry
from clusterreg._core.reactor.reconciling import Reconciler

COMPUTE_SERVER = 'https://compute.example'
HUB_SERVER = 'https://hub.example'
LOCATION = 'root:org:ws'


@pytest.fixture()
def settings():
    return OperatorSettings()


@pytest.fixture()
def logger():
    return logging.getLogger('clusterreg.tests')


#
# The in-memory API servers for the reconciliation tests (no HTTP involved).
#

def apply_merge_patch(target: Any, patch: Any) -> Any:
    """ A JSON merge-patch (RFC 7386) as the API servers apply it; the target is not modified. """
    if not isinstance(patch, Mapping):
        return patch
    result = dict(target) if isinstance(target, Mapping) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


class FakeContext:
    """ A replacement of :class:`auth.APIContext` without any session inside. """

    def __init__(self, server: str) -> None:
        self.server = server

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__} server={self.server!r}>'

    def for_logical_cluster(self, name: str) -> "FakeContext":
        return FakeContext(f'{self.server.rstrip("/")}/clusters/{name}')

    async def close(self) -> None:
        pass


@dataclasses.dataclass(frozen=True)
class Call:
    verb: str
    server: str
    resource: references.Resource
    namespace: str | None
    name: str | None


class FakeAPI:
    """
    A minimalistic emulation of several K8s API servers at once.

    The objects are stored by their server, resource, namespace & name.
    The resource versions, uids, generated names, finalizers, deletion marks
    and optimistic concurrency conflicts are emulated as K8s does them.
    The objects without finalizers are deleted instantly.
    """

    def __init__(self) -> None:
        super().__init__()
        self.objects: dict[tuple[str, references.Resource, str | None, str], dict[str, Any]] = {}
        self.calls: list[Call] = []
        self._versions = itertools.count(100)
        self._uids = itertools.count(1)
        self._suffixes = itertools.count(1)

    @staticmethod
    def _key(server, resource, namespace, name):
        return server, resource, namespace if resource.namespaced else None, name

    def _bump(self, body: dict[str, Any]) -> None:
        body.setdefault('metadata', {})['resourceVersion'] = str(next(self._versions))

    def add(self, server: str, resource: references.Resource, body: Mapping[str, Any]) -> dict[str, Any]:
        body = copy.deepcopy(dict(body))
        body.setdefault('apiVersion', resource.api_version)
        body.setdefault('kind', resource.kind)
        metadata = body.setdefault('metadata', {})
        metadata.setdefault('uid', f'uid-{next(self._uids)}')
        self._bump(body)
        key = self._key(server, resource, metadata.get('namespace'), metadata['name'])
        self.objects[key] = body
        return copy.deepcopy(body)

    def get(self, server: str, resource: references.Resource,
            namespace: str | None, name: str) -> dict[str, Any] | None:
        body = self.objects.get(self._key(server, resource, namespace, name))
        return copy.deepcopy(body) if body is not None else None

    def modify(self, server: str, resource: references.Resource,
               namespace: str | None, name: str, patch: Mapping[str, Any]) -> dict[str, Any]:
        """ Change an object as if done by other controllers or users. """
        key = self._key(server, resource, namespace, name)
        body = apply_merge_patch(self.objects[key], copy.deepcopy(dict(patch)))
        self._bump(body)
        self.objects[key] = body
        return copy.deepcopy(body)

    def find(self, server: str, resource: references.Resource) -> list[dict[str, Any]]:
        return [copy.deepcopy(body) for (srv, res, _, _), body in self.objects.items()
                if srv == server and res == resource]

    def verbs(self, verb: str, resource: references.Resource | None = None) -> list[Call]:
        return [call for call in self.calls
                if call.verb == verb and (resource is None or call.resource == resource)]

    async def read_obj(self, *, context, settings, resource, namespace=None, name, logger):
        self.calls.append(Call('read', context.server, resource, namespace, name))
        return self.get(context.server, resource, namespace, name)

    async def list_objs(self, *, context, settings, resource, namespace=None, labels=None, logger):
        self.calls.append(Call('list', context.server, resource, namespace, None))
        items = []
        for (server, res, ns, _), body in self.objects.items():
            if server != context.server or res != resource:
                continue
            if namespace is not None and ns != namespace:
                continue
            existing = body.get('metadata', {}).get('labels') or {}
            if any(existing.get(key) != val for key, val in (labels or {}).items()):
                continue
            items.append(copy.deepcopy(body))
        return items, str(next(self._versions))

    async def create_obj(self, *, context, settings, resource, namespace=None, name=None,
                         body=None, logger):
        body = copy.deepcopy(body or {})
        metadata = body.setdefault('metadata', {})
        if namespace is not None:
            metadata.setdefault('namespace', namespace)
        if name is not None:
            metadata.setdefault('name', name)
        if 'name' not in metadata and 'generateName' in metadata:
            metadata['name'] = f"{metadata['generateName']}{next(self._suffixes):05d}"
        self.calls.append(Call('create', context.server, resource,
                               metadata.get('namespace'), metadata.get('name')))
        key = self._key(context.server, resource, metadata.get('namespace'), metadata['name'])
        if key in self.objects:
            raise errors.APIConflictError({'message': 'already exists'}, status=409)
        return self.add(context.server, resource, body)

    async def patch_obj(self, *, context, settings, resource, namespace=None, name, patch,
                        resource_version=None, logger):
        self.calls.append(Call('patch', context.server, resource, namespace, name))
        key = self._key(context.server, resource, namespace, name)
        if key not in self.objects:
            return None
        if not patch:
            return {}
        current = self.objects[key]
        if resource_version is not None and resource_version != current['metadata']['resourceVersion']:
            raise errors.APIConflictError({'message': 'the object has been modified'}, status=409)
        body = apply_merge_patch(current, copy.deepcopy(dict(patch)))
        self._bump(body)
        if body['metadata'].get('deletionTimestamp') and not body['metadata'].get('finalizers'):
            del self.objects[key]
        else:
            self.objects[key] = body
        return copy.deepcopy(body)

    async def delete_obj(self, *, context, settings, resource, namespace=None, name, logger):
        self.calls.append(Call('delete', context.server, resource, namespace, name))
        key = self._key(context.server, resource, namespace, name)
        if key not in self.objects:
            return None
        body = self.objects[key]
        if body['metadata'].get('finalizers'):
            body['metadata'].setdefault('deletionTimestamp', '2020-01-01T00:00:00Z')
            self._bump(body)
            return copy.deepcopy(body)
        del self.objects[key]
        return {'kind': 'Status', 'status': 'Success'}


@pytest.fixture()
def fake_api(mocker):
    fake = FakeAPI()
    mocker.patch.object(fetching, 'read_obj', new=fake.read_obj)
    mocker.patch.object(fetching, 'list_objs', new=fake.list_objs)
    mocker.patch.object(creating, 'create_obj', new=fake.create_obj)
    mocker.patch.object(patching, 'patch_obj', new=fake.patch_obj)
    mocker.patch.object(deleting, 'delete_obj', new=fake.delete_obj)
    return fake


@pytest.fixture()
def compute():
    return FakeContext(COMPUTE_SERVER)


@pytest.fixture()
def workspace(compute):
    return compute.for_logical_cluster(LOCATION)


@pytest.fixture()
def hub_context():
    return FakeContext(HUB_SERVER)


@pytest.fixture()
def hub(hub_context, settings):
    return HubInstance(name='hub1', context=hub_context, applier=Applier(hub_context, settings))


@pytest.fixture()
def registry(hub):
    return HubRegistry((hub,))


@pytest.fixture()
def reconciler(compute, registry, settings):
    return Reconciler(compute=compute, hubs=registry, settings=settings)


@pytest.fixture()
def registered_body():
    return {
        'apiVersion': references.REGISTEREDCLUSTERS.api_version,
        'kind': references.REGISTEREDCLUSTERS.kind,
        'metadata': {'name': 'rc1', 'namespace': 'ns1'},
        'spec': {'location': LOCATION},
    }


@pytest.fixture()
def registered(fake_api, registered_body):
    """ The registered cluster as stored in the compute API. """
    return fake_api.add(COMPUTE_SERVER, references.REGISTEREDCLUSTERS, registered_body)


#
# The HTTP-level fixtures for the API client tests.
#

@pytest.fixture()
def hostname():
    """ A fake hostname to be used in all aiohttp/aresponses tests. """
    return 'fake-host'


@pytest.fixture()
async def api_context(hostname):
    context = auth.APIContext(ConnectionInfo(server=f'http://{hostname}'))
    try:
        yield context
    finally:
        await context.close()


@pytest.fixture()
def fast_settings(settings):
    settings.networking.error_backoffs = [0, 0]
    return settings


@pytest.fixture()
def resp_mocker(api_context, aresponses):
    """
    A factory of server-side callbacks for `aresponses` with mocking/spying.

    The value of the fixture is a function, which returns a coroutine function.
    That coroutine function should be passed to `aresponses.add` as a response
    callback. It records the requests (with the JSON payloads read) in a mock,
    and responds with what the mock returns or raises.

    Sample usage::

        def test_me(resp_mocker):
            response = aiohttp.web.json_response({'a': 'b'})
            callback = resp_mocker(return_value=response)
            aresponses.add(hostname, '/path/', 'get', callback)
            do_something()
            assert callback.mock.called
    """
    def resp_maker(*args, **kwargs):
        actual_response = unittest.mock.Mock(*args, **kwargs)

        async def resp_mock_effect(request: aiohttp.web.Request) -> aiohttp.web.StreamResponse:
            data = await request.json() if request.can_read_body else None
            return actual_response(request, data)

        resp_mock_effect.mock = actual_response  # type: ignore[attr-defined]
        return resp_mock_effect

    return resp_maker


@pytest.fixture()
def timer():
    return Timer()


class Timer:
    """ A helper context manager to measure the time of the code-blocks. """

    def __init__(self) -> None:
        super().__init__()
        self._ts: float | None = None
        self._te: float | None = None

    @property
    def seconds(self) -> float | None:
        if self._ts is None:
            return None
        elif self._te is None:
            return asyncio.get_running_loop().time() - self._ts
        else:
            return self._te - self._ts

    def __enter__(self) -> "Timer":
        self._ts = asyncio.get_running_loop().time()
        self._te = None
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._te = asyncio.get_running_loop().time()
