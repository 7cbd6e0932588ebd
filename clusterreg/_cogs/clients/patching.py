from collections.abc import Mapping
from typing import Any

from clusterreg._cogs.clients import api, auth, errors
from clusterreg._cogs.configs import configuration
from clusterreg._cogs.helpers import typedefs
from clusterreg._cogs.structs import bodies, references


async def patch_obj(
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace = None,
        name: str,
        patch: Mapping[str, Any],
        resource_version: str | None = None,
        logger: typedefs.Logger,
) -> bodies.RawBody | None:
    """
    Merge-patch a resource of specific kind.

    If the resource has a status subresource, the status is patched
    via that subresource separately from the rest of the body.

    If the resource version is passed, it is added to every patch, so that
    the server rejects the change if the object has been modified since
    it was read (the optimistic concurrency): :class:`errors.APIConflictError`
    is escalated to the caller. Between the body & status patches, the version
    is taken from the server's response to the body patch.

    Returns the patched body as reported by the server after the last patch.
    The body is empty if there was nothing to patch.

    Returns ``None`` if the underlying object is absent, as detected by trying
    to patch it and failing with HTTP 404. This can happen if the object was
    deleted externally during the reconciliation.
    """
    as_subresource = 'status' in resource.subresources
    body_patch = dict(patch)  # shallow: for mutation of the top-level keys below.
    status_patch = body_patch.pop('status', None) if as_subresource else None

    try:
        patched_body = bodies.RawBody()

        if body_patch:
            patched_body = await api.patch(
                url=resource.get_url(namespace=namespace, name=name),
                content_type=api.MERGE_PATCH,
                payload=_with_version(body_patch, resource_version),
                context=context,
                settings=settings,
                logger=logger,
            )
            if resource_version is not None:
                resource_version = bodies.get_resource_version(patched_body) or resource_version

        if status_patch:
            patched_body = await api.patch(
                url=resource.get_url(namespace=namespace, name=name, subresource='status'),
                content_type=api.MERGE_PATCH,
                payload=_with_version({'status': status_patch}, resource_version),
                context=context,
                settings=settings,
                logger=logger,
            )

        return patched_body

    except errors.APINotFoundError:
        return None


def _with_version(patch: Mapping[str, Any], resource_version: str | None) -> dict[str, Any]:
    if resource_version is None:
        return dict(patch)
    metadata = dict(patch.get('metadata') or {})
    metadata['resourceVersion'] = resource_version
    return dict(patch, metadata=metadata)
