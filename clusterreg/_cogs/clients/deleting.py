from clusterreg._cogs.clients import api, auth, errors
from clusterreg._cogs.configs import configuration
from clusterreg._cogs.helpers import typedefs
from clusterreg._cogs.structs import bodies, references


async def delete_obj(
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace = None,
        name: str,
        logger: typedefs.Logger,
) -> bodies.RawBody | None:
    """
    Request the deletion of a resource; the actual deletion is asynchronous.

    Returns whatever the server returns: either the object marked for deletion
    (if it has finalizers), or the ``Status`` of the deletion.
    Returns ``None`` if the object is already absent (HTTP 404).
    """
    try:
        rsp: bodies.RawBody = await api.delete(
            url=resource.get_url(namespace=namespace, name=name),
            payload={'propagationPolicy': 'Background'},
            context=context,
            settings=settings,
            logger=logger,
        )
    except errors.APINotFoundError:
        return None
    return rsp
