"""
K8s API errors.

The underlying client library (now, ``aiohttp``) can be replaced in the future.
We cannot rely on embedding its exceptions all over the code of the controller.
Hence, we have our own hierarchy of exceptions for K8s API errors.

Low-level errors, such as the network connectivity issues, SSL/HTTPS issues,
etc, are escalated from the client library as is, since they are related not
to the domain of K8s API, but rather to the networking and encryption.

The original errors of the client library are chained as the causes of our own
specialised errors -- for better explainability of errors in the stack traces.

Some selected reasons of K8s API errors are made into their own classes,
so that they could be intercepted and handled in the reconciliation:
e.g. a 404 is often a benign absence of an object, a 409 is a conflict of
the optimistic concurrency and must restart the reconciliation from scratch.
"""
import json
from collections.abc import Collection, Mapping
from typing import Any, Literal, TypedDict, cast

import aiohttp


class RawStatusCause(TypedDict):
    field: str
    reason: str
    message: str


class RawStatusDetails(TypedDict):
    name: str
    uid: str
    retryAfterSeconds: int
    kind: str
    group: str
    causes: Collection[RawStatusCause]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.25/#status-v1-meta
class RawStatus(TypedDict):
    apiVersion: str
    kind: Literal["Status"]
    code: int
    status: Literal["Success", "Failure"]
    reason: str
    message: str
    details: RawStatusDetails


class APIError(Exception):
    """ Any error response of the API, with the ``Status`` payload if it was reported. """

    def __init__(
            self,
            payload: RawStatus | None,
            *,
            status: int,
    ) -> None:
        super().__init__(payload.get('message') if payload else None, payload)
        self.status = status
        self.payload = payload

    def _get(self, key: str) -> Any:
        return self.payload.get(key) if self.payload else None

    @property
    def code(self) -> int | None:
        return cast(int | None, self._get('code'))

    @property
    def message(self) -> str | None:
        return cast(str | None, self._get('message'))

    @property
    def details(self) -> RawStatusDetails | None:
        return cast(RawStatusDetails | None, self._get('details'))


class APIClientError(APIError):
    pass


class APIServerError(APIError):
    pass


class APIUnauthorizedError(APIClientError):
    pass


class APIForbiddenError(APIClientError):
    pass


class APINotFoundError(APIClientError):
    pass


class APIConflictError(APIClientError):
    pass


SPECIFIC_ERRORS: Mapping[int, type[APIError]] = {
    401: APIUnauthorizedError,
    403: APIForbiddenError,
    404: APINotFoundError,
    409: APIConflictError,
}


def get_error_class(status: int) -> type[APIError]:
    default = APIClientError if status < 500 else APIServerError
    return SPECIFIC_ERRORS.get(status, default)


async def _read_status(response: aiohttp.ClientResponse) -> RawStatus | None:
    try:
        payload = await response.json()
    except (json.JSONDecodeError, aiohttp.ContentTypeError, aiohttp.ClientConnectionError):
        return None
    # Other payloads are not exposed: they can contain anything, including the secrets' data.
    if isinstance(payload, Mapping) and payload.get('kind') == 'Status':
        return cast(RawStatus, payload)
    return None


async def check_response(
        response: aiohttp.ClientResponse,
) -> None:
    """
    Raise one of our own errors if the response is an error, with the status payload.

    The body is read before ``raise_for_status()``, as it closes the response;
    the client library's error is chained as the cause.
    """
    if response.status < 400:
        return

    payload = await _read_status(response)
    cls = get_error_class(response.status)
    try:
        response.raise_for_status()
    except aiohttp.ClientResponseError as e:
        raise cls(payload, status=response.status) from e
