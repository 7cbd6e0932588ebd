"""
All the structures coming from/to the Kubernetes API.

The usage of these classes is spread over the codebase, so they are extracted
into a separate module of such type definitions.

The Kubernetes-originated objects are plain dicts as JSON-decoded from the API.
The controller internally expects them to be such. The type definitions below
only declare the fields that are used by the controller; all other fields
are passed through as they are, and are not type-checked.
"""
import copy
from collections.abc import Mapping
from typing import Any, Literal, TypedDict, cast

Labels = Mapping[str, str]
Annotations = Mapping[str, str]

# ``None`` is used for the listing, when the pseudo-watch-stream is simulated.
RawInputType = Literal[None, 'ADDED', 'MODIFIED', 'DELETED', 'ERROR', 'BOOKMARK']
RawEventType = Literal[None, 'ADDED', 'MODIFIED', 'DELETED']


class RawMeta(TypedDict, total=False):
    uid: str
    name: str
    generateName: str
    namespace: str
    labels: dict[str, str]
    annotations: dict[str, str]
    finalizers: list[str]
    ownerReferences: list["OwnerReference"]
    resourceVersion: str
    deletionTimestamp: str
    creationTimestamp: str


class RawBody(TypedDict, total=False):
    apiVersion: str
    kind: str
    metadata: RawMeta
    spec: dict[str, Any]
    status: dict[str, Any]
    data: dict[str, str]
    type: str
    secrets: list[dict[str, str]]


# A special payload for type==ERROR (this is not a connection or client error).
class RawError(TypedDict, total=False):
    apiVersion: str     # usually: Literal['v1']
    kind: str           # usually: Literal['Status']
    metadata: Mapping[Any, Any]
    code: int
    reason: str
    status: str
    message: str


# As received from the stream before processing the errors and special cases.
class RawInput(TypedDict, total=True):
    type: RawInputType
    object: RawBody | RawError


# As passed to the observers after processing the errors and special cases.
class RawEvent(TypedDict, total=True):
    type: RawEventType
    object: RawBody


class OwnerReference(TypedDict, total=False):
    controller: bool
    blockOwnerDeletion: bool
    apiVersion: str
    kind: str
    name: str
    uid: str


def get_name(body: RawBody) -> str | None:
    return body.get('metadata', {}).get('name')


def get_namespace(body: RawBody) -> str | None:
    return body.get('metadata', {}).get('namespace')


def get_labels(body: RawBody | None) -> Labels:
    return {} if body is None else body.get('metadata', {}).get('labels') or {}


def get_resource_version(body: RawBody) -> str | None:
    return body.get('metadata', {}).get('resourceVersion')


def build_owner_reference(
        body: RawBody,
) -> OwnerReference:
    """
    Construct an owner reference object for the parent-children relationships.

    The structure needed to link the children objects to the current object as a parent.
    See https://kubernetes.io/docs/concepts/workloads/controllers/garbage-collection/

    Owner references only work within the same API server (or logical cluster):
    they are used for the compute-side children of the registered clusters only,
    never for the hub-side objects (those are correlated by labels instead).
    """
    ref = dict(
        controller=True,
        blockOwnerDeletion=True,
        apiVersion=body.get('apiVersion'),
        kind=body.get('kind'),
        name=body.get('metadata', {}).get('name'),
        uid=body.get('metadata', {}).get('uid'),
    )
    return cast(OwnerReference, {key: val for key, val in ref.items() if val})


def append_owner_reference(
        body: RawBody,
        owner: RawBody,
) -> None:
    """
    Append an owner reference to the object, if it is not yet there.
    """
    owner_ref = build_owner_reference(owner)
    refs = body.setdefault('metadata', {}).setdefault('ownerReferences', [])
    if not any(ref.get('uid') == owner_ref.get('uid') for ref in refs):
        refs.append(owner_ref)


def snapshot(body: RawBody) -> RawBody:
    """ A deep copy of the body, safe against any later in-place mutations. """
    return copy.deepcopy(body)
