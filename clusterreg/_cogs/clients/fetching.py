from collections.abc import Collection, Mapping

from clusterreg._cogs.clients import api, auth, errors
from clusterreg._cogs.configs import configuration
from clusterreg._cogs.helpers import typedefs
from clusterreg._cogs.structs import bodies, references


async def read_obj(
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace = None,
        name: str,
        logger: typedefs.Logger,
) -> bodies.RawBody | None:
    """
    Read one object by its name; or ``None`` if it does not exist (HTTP 404).
    """
    try:
        body: bodies.RawBody = await api.get(
            url=resource.get_url(namespace=namespace, name=name),
            context=context,
            settings=settings,
            logger=logger,
        )
    except errors.APINotFoundError:
        return None
    return body


async def list_objs(
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace = None,
        labels: Mapping[str, str] | None = None,
        logger: typedefs.Logger,
) -> tuple[Collection[bodies.RawBody], str | None]:
    """
    List the objects of specific resource type, optionally by labels.

    The cluster-scoped call is used in two cases:

    * The resource itself is cluster-scoped, and namespacing makes not sense.
    * The controller serves all namespaces for the namespaced resource.

    Otherwise, the namespace-scoped call is used.
    """
    params = {'labelSelector': references.build_label_selector(labels)} if labels else None
    rsp = await api.get(
        url=resource.get_url(namespace=namespace, params=params),
        context=context,
        settings=settings,
        logger=logger,
    )

    items: list[bodies.RawBody] = []
    resource_version = rsp.get('metadata', {}).get('resourceVersion', None)
    for item in rsp.get('items', []):
        if 'kind' in rsp:
            item.setdefault('kind', rsp['kind'][:-4] if rsp['kind'][-4:] == 'List' else rsp['kind'])
        if 'apiVersion' in rsp:
            item.setdefault('apiVersion', rsp['apiVersion'])
        items.append(item)

    return items, resource_version
