"""
The reconciliation of one registered cluster: one step towards its desired state.

Every reconciliation starts from scratch: it re-reads the registered cluster
and all the derived objects, and does whatever is missing, in a fixed order.
It never waits for other controllers: if something is not ready yet,
the reconciliation ends with a requeue after a delay. The errors are raised
and lead to a retry with a backoff (see :mod:`queueing`).

The writes to the registered cluster carry its resource version, so if it
was changed in the meantime, the write fails, and the reconciliation is
retried from scratch with the fresh state.
"""
import dataclasses
import logging

from clusterreg._cogs.clients import auth, fetching, patching
from clusterreg._cogs.configs import configuration
from clusterreg._cogs.structs import bodies, finalizers, patches, references
from clusterreg._core.actions import lifecycles, loggers, projection, teardown
from clusterreg._core.engines import hubs

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Result:
    """
    The outcome of a successful reconciliation.

    If ``requeue_after`` is set, the same key is reconciled again after
    that many seconds (unless triggered earlier by the watch-events).
    """
    requeue_after: float | None = None


class Reconciler:
    """
    The state machine of the registered clusters, callable per key.

    It keeps nothing between the calls except the shared read-only setup:
    the compute API's context, the hubs, and the settings.
    """

    def __init__(
            self,
            *,
            compute: auth.APIContext,
            hubs: hubs.HubRegistry,
            settings: configuration.OperatorSettings,
    ) -> None:
        super().__init__()
        self.compute = compute
        self.hubs = hubs
        self.settings = settings

    async def __call__(self, key: references.ObjectKey) -> Result:
        body = await fetching.read_obj(
            context=self.compute,
            settings=self.settings,
            resource=references.REGISTEREDCLUSTERS,
            namespace=key.namespace,
            name=key.name,
            logger=logger,
        )
        if body is None:
            logger.debug(f"The registered cluster {key} is gone; nothing to do.")
            return Result()

        hub = self.hubs.resolve(key.namespace)
        object_logger = loggers.ObjectLogger(body=body, hub=hub.name)
        return await self.reconcile(body, hub=hub, logger=object_logger)

    async def reconcile(
            self,
            body: bodies.RawBody,
            *,
            hub: hubs.HubInstance,
            logger: loggers.ObjectLogger,
    ) -> Result:
        settings = self.settings
        deleting = finalizers.is_deletion_ongoing(body)

        if not deleting:
            patched = await self.ensure_finalizer(body, logger=logger)
            if patched is None:
                logger.debug("The registered cluster is gone while adding the finalizer.")
                return Result()
            body = patched

            await lifecycles.ensure_managed_cluster(
                body, context=hub.context, settings=settings, logger=logger)

        managed = await lifecycles.get_managed_cluster(
            body, context=hub.context, settings=settings, logger=logger)

        if deleting:
            location = body.get('spec', {}).get('location')
            workspace = self.compute.for_logical_cluster(location) if location else None
            delay = await teardown.tear_down(
                body, managed,
                context=hub.context,
                workspace=workspace,
                settings=settings,
                logger=logger,
            )
            if delay is not None:
                return Result(requeue_after=delay)
            await self.remove_finalizer(body, logger=logger)
            return Result()

        if managed is None:
            raise lifecycles.ManagedClusterNotFoundError("The managed cluster is not found yet.")
        artifact = await lifecycles.read_import_artifact(
            managed, context=hub.context, settings=settings, logger=logger)
        if artifact is None:
            return Result(requeue_after=settings.reconciling.artifact_delay)
        body = await lifecycles.apply_import_command(
            body, artifact, context=self.compute, settings=settings, logger=logger)

        location = lifecycles.get_location(body)
        identity = await lifecycles.ensure_syncer_identity(
            location, context=self.compute, settings=settings, logger=logger)
        await lifecycles.apply_syncer_rbac(
            body, context=self.compute, settings=settings, logger=logger)
        token = await lifecycles.fetch_syncer_token(
            identity, location=location, context=self.compute, settings=settings, logger=logger)

        await lifecycles.apply_syncer_work(
            body, managed,
            token=token,
            compute_server=self.compute.server,
            applier=hub.applier,
            settings=settings,
            logger=logger,
        )

        await projection.update_status(
            body, managed, context=self.compute, settings=settings, logger=logger)
        return Result()

    async def ensure_finalizer(
            self,
            body: bodies.RawBody,
            *,
            logger: loggers.ObjectLogger,
    ) -> bodies.RawBody | None:
        patch = patches.Patch()
        finalizers.block_deletion(body=body, patch=patch, finalizer=self.settings.reconciling.finalizer)
        if not patch:
            return body
        patched = await self._patch(body, patch, logger=logger)
        logger.debug("Added the finalizer.")
        return patched

    async def remove_finalizer(
            self,
            body: bodies.RawBody,
            *,
            logger: loggers.ObjectLogger,
    ) -> None:
        patch = patches.Patch()
        finalizers.allow_deletion(body=body, patch=patch, finalizer=self.settings.reconciling.finalizer)
        if patch:
            await self._patch(body, patch, logger=logger)
            logger.info("Removed the finalizer; the registered cluster can be deleted now.")

    async def _patch(
            self,
            body: bodies.RawBody,
            patch: patches.Patch,
            *,
            logger: loggers.ObjectLogger,
    ) -> bodies.RawBody | None:
        return await patching.patch_obj(
            context=self.compute,
            settings=self.settings,
            resource=references.REGISTEREDCLUSTERS,
            namespace=references.NamespaceName(bodies.get_namespace(body) or ''),
            name=bodies.get_name(body) or '',
            patch=patch,
            resource_version=bodies.get_resource_version(body),
            logger=logger,
        )
