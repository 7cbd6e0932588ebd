"""
The finalizer of the registered clusters: blocking their deletion.

While our finalizer is present, the registered cluster remains in the API
(marked for deletion) until the derived objects in the hub are torn down.
Other finalizers of the same object are preserved in all the patches.
"""
from clusterreg._cogs.structs import bodies, patches


def get_finalizers(body: bodies.RawBody) -> list[str]:
    return list(body.get('metadata', {}).get('finalizers') or [])


def is_deletion_ongoing(body: bodies.RawBody) -> bool:
    return body.get('metadata', {}).get('deletionTimestamp') is not None


def is_deletion_blocked(body: bodies.RawBody, finalizer: str) -> bool:
    return finalizer in get_finalizers(body)


def block_deletion(*, body: bodies.RawBody, patch: patches.Patch, finalizer: str) -> None:
    """ Add our finalizer to the patch, unless it is already in the body. """
    if not is_deletion_blocked(body, finalizer):
        patch.meta['finalizers'] = get_finalizers(body) + [finalizer]


def allow_deletion(*, body: bodies.RawBody, patch: patches.Patch, finalizer: str) -> None:
    """ Remove our finalizer via the patch, if it is in the body. """
    if is_deletion_blocked(body, finalizer):
        patch.meta['finalizers'] = [f for f in get_finalizers(body) if f != finalizer]
