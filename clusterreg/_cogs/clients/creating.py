from typing import cast

from clusterreg._cogs.clients import api, auth
from clusterreg._cogs.configs import configuration
from clusterreg._cogs.helpers import typedefs
from clusterreg._cogs.structs import bodies, references


async def create_obj(
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace = None,
        name: str | None = None,
        body: bodies.RawBody | None = None,
        logger: typedefs.Logger,
) -> bodies.RawBody:
    """
    Create a resource; return the created body with the server-side fields.

    The conflicts with the existing objects are escalated to the caller
    as :class:`errors.APIConflictError` (HTTP 409).
    """
    body = body if body is not None else {}
    if namespace is not None:
        body.setdefault('metadata', {}).setdefault('namespace', namespace)
    if name is not None:
        body.setdefault('metadata', {}).setdefault('name', name)

    namespace = cast(references.Namespace, body.get('metadata', {}).get('namespace'))
    created_body: bodies.RawBody = await api.post(
        url=resource.get_url(namespace=namespace if resource.namespaced else None),
        payload=body,
        context=context,
        settings=settings,
        logger=logger,
    )
    return created_body
