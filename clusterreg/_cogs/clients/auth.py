import base64
import contextlib
import copy
import os
import ssl
import tempfile

import aiohttp

from clusterreg._cogs.helpers import versions
from clusterreg._cogs.structs import credentials


class APIContext:
    """
    A container for an aiohttp session and the contextual info of one API server.

    The container is constructed once for every configured API server
    (the compute API and every hub) at startup, and is then shared by all
    the concurrently running reconciliations. It is closed on exit.

    The logical clusters (workspaces) of the compute API are addressed by
    a URL prefix (``/clusters/<name>``) on the same server with the same
    credentials; their contexts share the session of the parent context
    (see :meth:`for_logical_cluster`) and do not own it.
    """

    # The main contained object used by the API methods.
    session: aiohttp.ClientSession

    # Contextual information for URL building.
    server: str
    default_namespace: str | None

    def __init__(
            self,
            info: credentials.ConnectionInfo,
    ) -> None:
        super().__init__()
        self.session = self.make_aiohttp_session(info)
        self.session.headers['User-Agent'] = f'clusterreg/{versions.version or "unknown"}'
        self.server = info.server
        self.default_namespace = info.default_namespace
        self._owns_session = True

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__} server={self.server!r}>'

    def for_logical_cluster(self, name: str) -> "APIContext":
        """
        A context of a logical cluster (a workspace) behind the same server.
        """
        context = copy.copy(self)
        context.server = f'{self.server.rstrip("/")}/clusters/{name}'
        context._owns_session = False
        return context

    def make_aiohttp_session(self, info: credentials.ConnectionInfo) -> aiohttp.ClientSession:
        auth = aiohttp.BasicAuth(info.username, info.password) if info.username and info.password else None
        return aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=0, ssl=make_ssl_context(info)),
            headers=make_auth_headers(info),
            auth=auth,
        )

    async def close(self) -> None:
        if self._owns_session:
            await self.session.close()


def make_ssl_context(info: credentials.ConnectionInfo) -> ssl.SSLContext:
    """
    The CA verification and the client certificates of a connection.

    The client certificates given as data are loaded via temporary files,
    which exist only while loading. No files are created if not needed
    (the filesystem can be read-only).
    """
    context = ssl.create_default_context(
        purpose=ssl.Purpose.SERVER_AUTH,
        cafile=info.ca_path,
        cadata=decode_to_pem(info.ca_data) if info.ca_data is not None else None,
    )
    with contextlib.ExitStack() as stack:
        cert_path = _as_file(stack, info.certificate_path, info.certificate_data)
        pkey_path = _as_file(stack, info.private_key_path, info.private_key_data)
        if cert_path and pkey_path:
            context.load_cert_chain(certfile=cert_path, keyfile=pkey_path)

    if info.insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _as_file(
        stack: contextlib.ExitStack,
        path: str | os.PathLike[str] | None,
        data: str | bytes | None,
) -> str | os.PathLike[str] | None:
    if path:
        return path
    if not data:
        return None
    f = stack.enter_context(tempfile.NamedTemporaryFile(buffering=0))
    f.write(decode_to_pem(data).encode('ascii'))
    return f.name


def make_auth_headers(info: credentials.ConnectionInfo) -> dict[str, str]:
    if info.token:
        return {'Authorization': f'{info.scheme or "Bearer"} {info.token}'}
    if info.scheme:
        return {'Authorization': info.scheme}
    return {}


def decode_to_pem(data: str | bytes) -> str:
    """ Accept the PEM data either as is or base64-encoded (as in kubeconfigs). """
    match data:
        case str() if data.startswith('-----BEGIN '):
            return data
        case bytes() if data.startswith(b'-----BEGIN '):
            return data.decode('ascii')
        case _:
            return base64.b64decode(data).decode('ascii')
