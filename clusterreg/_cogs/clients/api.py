"""
The low-level HTTP calls to the K8s-like API servers.

All calls go through :func:`request`, which resolves the URLs relative
to the API server of the context, and retries the transient errors
(connection errors, timeouts, HTTP 5xx) with the configured backoffs.
The client errors (HTTP 4xx) are raised immediately as :mod:`errors`.
"""
import asyncio
import functools
import json
from collections.abc import AsyncIterator, Iterable, Iterator
from typing import Any

import aiohttp

from clusterreg._cogs.clients import auth, errors
from clusterreg._cogs.configs import configuration
from clusterreg._cogs.helpers import typedefs

MERGE_PATCH = 'application/merge-patch+json'


def _attempts(settings: configuration.OperatorSettings) -> Iterator[tuple[str, float | None]]:
    # The last attempt has no delay after it: its errors are escalated.
    backoffs = settings.networking.error_backoffs
    delays = list(backoffs) if isinstance(backoffs, Iterable) else [backoffs]
    total = len(delays) + 1
    for idx, delay in enumerate([*delays, None], start=1):
        yield f"#{idx}/{total}", delay


async def request(
        method: str,
        url: str,  # relative to the server's root, or absolute.
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        payload: object | None = None,
        content_type: str | None = None,
        timeout: aiohttp.ClientTimeout | None = None,
        logger: typedefs.Logger,
) -> aiohttp.ClientResponse:
    """
    Make a request and return the unread response if it is successful.
    """
    if '://' not in url:
        url = context.server.rstrip('/') + '/' + url.lstrip('/')
    if timeout is None:
        timeout = aiohttp.ClientTimeout(
            total=settings.networking.request_timeout,
            sock_connect=settings.networking.connect_timeout,
        )

    what = f"{method.upper()} {url}"
    headers = {'Content-Type': content_type} if content_type else None
    for idx, delay in _attempts(settings):
        try:
            response = await context.session.request(
                method=method,
                url=url,
                json=payload,
                headers=headers,
                timeout=timeout,
            )
            await errors.check_response(response)
        except (aiohttp.ClientConnectionError, errors.APIServerError, asyncio.TimeoutError) as e:
            if delay is None:
                logger.error(f"Request attempt {idx} failed; escalating: {what} -> {e!r}")
                raise
            logger.error(f"Request attempt {idx} failed; retrying in {delay}s: {what} -> {e!r}")
            await asyncio.sleep(delay)
        else:
            return response

    raise RuntimeError("No request attempts were made.")  # for type-checking only.


async def call(
        method: str,
        url: str,
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        payload: object | None = None,
        content_type: str | None = None,
        logger: typedefs.Logger,
) -> Any:
    """ Make a request and return the parsed JSON body of the response. """
    response = await request(
        method,
        url,
        payload=payload,
        content_type=content_type,
        context=context,
        settings=settings,
        logger=logger,
    )
    async with response:
        return await response.json()


get = functools.partial(call, 'get')
post = functools.partial(call, 'post')
patch = functools.partial(call, 'patch')
delete = functools.partial(call, 'delete')


async def stream(
        url: str,
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        timeout: aiohttp.ClientTimeout | None = None,
        logger: typedefs.Logger,
) -> AsyncIterator[Any]:
    """ Yield the parsed JSON documents of a long-living line-separated response. """
    response = await request(
        'get',
        url,
        timeout=timeout,
        context=context,
        settings=settings,
        logger=logger,
    )
    async with response:
        async for line in iter_jsonlines(response.content):
            yield json.loads(line.decode('utf-8'))


async def iter_jsonlines(
        content: aiohttp.StreamReader,
        chunk_size: int = 1024 * 1024,
) -> AsyncIterator[bytes]:
    """
    Iterate over the non-empty lines of a streamed response.

    aiohttp's own line iteration (``async for line in response.content``)
    fails on the lines longer than its buffer (128 KB), while the watch-events
    of the secrets and the manifest works with the embedded manifests
    can be megabytes long.
    """
    tail = b''
    async for chunk in content.iter_chunked(chunk_size):
        *lines, tail = (tail + chunk).split(b'\n')
        for line in lines:
            if line:
                yield line
    if tail:
        yield tail
