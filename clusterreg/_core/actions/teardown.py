"""
The ordered teardown of the derived objects of a deleted registered cluster.

The objects are deleted strictly one by one, the dependents first:
the syncer's manifest work, the identity grants (a manifest work and
a managed service account), the service account add-on, the managed cluster
itself, and finally the syncer's grants in the workspace (the cluster role
binding, then the cluster role). The deletion is asynchronous in K8s, so every
stage only requests the deletion and asks to be re-checked a bit later;
only when the object is confirmed absent, the next stage is started.
"""
import dataclasses

from clusterreg._cogs.clients import auth, deleting, fetching
from clusterreg._cogs.configs import configuration
from clusterreg._cogs.helpers import typedefs
from clusterreg._cogs.structs import bodies, references

GRANTS_NAME = 'appstudio'
ADDON_NAME = 'managed-serviceaccount'


@dataclasses.dataclass(frozen=True)
class Stage:
    resource: references.Resource
    namespace: references.Namespace
    name: str
    delay: float
    context: auth.APIContext


def get_stages(
        registered: bodies.RawBody,
        managed: bodies.RawBody | None,
        *,
        context: auth.APIContext,
        workspace: auth.APIContext | None = None,
        settings: configuration.OperatorSettings,
) -> list[Stage]:
    """
    The stages of the teardown, in order, for the objects that can exist.

    Without a managed cluster, there is nothing left in the hub: all other
    hub-side objects are in the managed cluster's namespace and are deleted
    together with it (or were never created). Without a workspace
    (no ``spec.location``), the syncer's grants were never created.
    """
    syncer_name = settings.syncer.get_syncer_name(bodies.get_name(registered) or '')
    delay = settings.reconciling.teardown_delay
    stages: list[Stage] = []
    if managed is not None:
        mc_name = bodies.get_name(managed) or ''
        mc_namespace = references.NamespaceName(mc_name)
        cluster_delay = settings.reconciling.cluster_teardown_delay
        stages += [
            Stage(references.MANIFESTWORKS, mc_namespace, syncer_name, delay, context),
            Stage(references.MANIFESTWORKS, mc_namespace, GRANTS_NAME, delay, context),
            Stage(references.MANAGEDSERVICEACCOUNTS, mc_namespace, GRANTS_NAME, delay, context),
            Stage(references.MANAGEDCLUSTERADDONS, mc_namespace, ADDON_NAME, delay, context),
            Stage(references.MANAGEDCLUSTERS, None, mc_name, cluster_delay, context),
        ]
    if workspace is not None:
        stages += [
            Stage(references.CLUSTERROLEBINDINGS, None, syncer_name, delay, workspace),
            Stage(references.CLUSTERROLES, None, syncer_name, delay, workspace),
        ]
    return stages


async def tear_down(
        registered: bodies.RawBody,
        managed: bodies.RawBody | None,
        *,
        context: auth.APIContext,
        workspace: auth.APIContext | None = None,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> float | None:
    """
    Advance the teardown by one stage; return a requeue delay, or ``None`` if done.
    """
    stages = get_stages(registered, managed, context=context, workspace=workspace, settings=settings)
    for stage in stages:
        body = await fetching.read_obj(
            context=stage.context,
            settings=settings,
            resource=stage.resource,
            namespace=stage.namespace,
            name=stage.name,
            logger=logger,
        )
        if body is None:
            continue

        deleted = await deleting.delete_obj(
            context=stage.context,
            settings=settings,
            resource=stage.resource,
            namespace=stage.namespace,
            name=stage.name,
            logger=logger,
        )
        if deleted is None:
            continue  # gone between the read and the deletion

        logger.info(f"Deleting {stage.resource.kind} {stage.name!r}; re-checking in {stage.delay}s.")
        return stage.delay

    if stages:
        logger.info("All derived objects are deleted.")
    return None
