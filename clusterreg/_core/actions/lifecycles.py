"""
Idempotent get & create of the objects derived from the registered clusters.

The derived objects live in other API servers than the registered clusters:
in the hubs (managed clusters, manifest works, import secrets) and in the
workspaces (the syncer's service account & its RBAC). The owner references
do not work across the API servers, so the derived objects are correlated
with their registered clusters by labels and by the names derived from them.

The functions never wait for the other controllers to do their job:
if something is not ready yet, it is either reported to the caller
(``None`` or ``False``) to be re-checked later, or raised as an error
to be retried with a backoff.
"""
import base64
import binascii
import urllib.parse

from clusterreg._cogs.clients import auth, creating, errors, fetching, patching
from clusterreg._cogs.configs import configuration
from clusterreg._cogs.helpers import typedefs
from clusterreg._cogs.structs import bodies, conditions, finalizers, references
from clusterreg._core.actions import applying

JOINED_CONDITION = 'ManagedClusterJoined'
APPLIED_CONDITION = 'Applied'
TOKEN_SECRET_TYPE = 'kubernetes.io/service-account-token'
SERVICE_NAME_ANNOTATION = 'open-cluster-management/service-name'
MANAGED_CLUSTER_GENERATE_NAME = 'registered-cluster-'
CRDS_KEY = 'crdsv1.yaml'
IMPORT_KEY = 'import.yaml'


class ReconciliationError(Exception):
    """ A base for the domain errors of the reconciliation (retried with a backoff). """


class ManagedClusterNotFoundError(ReconciliationError):
    """ The managed cluster is not (yet) visible though it must exist. """


class InconsistentCorrelationError(ReconciliationError):
    """ Several derived objects claim to belong to the same registered cluster. """


class TokenNotIssuedError(ReconciliationError):
    """ The syncer's service account has no token issued (yet). """


def correlation_labels(registered: bodies.RawBody) -> dict[str, str]:
    return {
        configuration.NAME_LABEL: bodies.get_name(registered) or '',
        configuration.NAMESPACE_LABEL: bodies.get_namespace(registered) or '',
    }


def get_syncer_values(
        registered: bodies.RawBody,
        settings: configuration.OperatorSettings,
) -> dict[str, str]:
    """ The values common to all the syncer-related templates. """
    name = bodies.get_name(registered) or ''
    return {
        'syncer_name': settings.syncer.get_syncer_name(name),
        'sync_target_name': name,
        'registered_cluster_name': name,
        'registered_cluster_namespace': bodies.get_namespace(registered) or '',
        'name_label': configuration.NAME_LABEL,
        'namespace_label': configuration.NAMESPACE_LABEL,
    }


async def ensure_managed_cluster(
        registered: bodies.RawBody,
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> None:
    """
    Create a managed cluster for the registered cluster unless it exists.

    The existence is checked by the correlation labels, not by the name
    (the name is generated by the server). If several managed clusters
    are found, it is not an error here: it is surfaced by the lookup.
    """
    labels = correlation_labels(registered)
    items, _ = await fetching.list_objs(
        context=context,
        settings=settings,
        resource=references.MANAGEDCLUSTERS,
        labels=labels,
        logger=logger,
    )
    if items:
        return

    namespace = bodies.get_namespace(registered) or ''
    uid = registered.get('metadata', {}).get('uid')
    location = registered.get('spec', {}).get('location')
    body: bodies.RawBody = {
        'apiVersion': references.MANAGEDCLUSTERS.api_version,
        'kind': references.MANAGEDCLUSTERS.kind or '',
        'metadata': {
            'generateName': MANAGED_CLUSTER_GENERATE_NAME,
            'labels': dict(labels, **{configuration.CLUSTERSET_LABEL: namespace}),
            'annotations': {SERVICE_NAME_ANNOTATION: settings.reconciling.service_name},
        },
        'spec': {'hubAcceptsClient': True},
    }
    if uid:
        body['metadata']['labels'][configuration.UID_LABEL] = uid
    if location:
        body['metadata']['annotations'][configuration.LOCATION_ANNOTATION] = location

    created = await creating.create_obj(
        context=context,
        settings=settings,
        resource=references.MANAGEDCLUSTERS,
        body=body,
        logger=logger,
    )
    logger.info(f"Created the managed cluster {bodies.get_name(created)!r}.")


async def get_managed_cluster(
        registered: bodies.RawBody,
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> bodies.RawBody | None:
    """
    Find the one and only managed cluster of the registered cluster.

    If the registered cluster is being deleted, the absence is tolerated
    (``None``): the deletion could happen before the managed cluster creation.
    Otherwise, the absence means it is not visible yet and must be retried.
    """
    items, _ = await fetching.list_objs(
        context=context,
        settings=settings,
        resource=references.MANAGEDCLUSTERS,
        labels=correlation_labels(registered),
        logger=logger,
    )
    items = list(items)
    if len(items) > 1:
        names = sorted(bodies.get_name(item) or '' for item in items)
        raise InconsistentCorrelationError(
            f"Several managed clusters belong to the registered cluster: {', '.join(names)}")
    if items:
        return items[0]
    if finalizers.is_deletion_ongoing(registered):
        return None
    raise ManagedClusterNotFoundError("The managed cluster is not found (yet).")


async def read_import_artifact(
        managed: bodies.RawBody,
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> bodies.RawBody | None:
    """
    Read the import secret of the managed cluster as produced by the hub.

    The secret is produced by the hub's own import controller some time after
    the managed cluster is created. Until it is there and filled, ``None``.
    """
    name = bodies.get_name(managed) or ''
    secret = await fetching.read_obj(
        context=context,
        settings=settings,
        resource=references.SECRETS,
        namespace=references.NamespaceName(name),
        name=f'{name}-import',
        logger=logger,
    )
    data = (secret.get('data') or {}) if secret is not None else {}
    if not data.get(CRDS_KEY) or not data.get(IMPORT_KEY):
        logger.debug(f"The import secret of the managed cluster {name!r} is not ready yet.")
        return None
    return secret


async def apply_import_command(
        registered: bodies.RawBody,
        artifact: bodies.RawBody,
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> bodies.RawBody:
    """
    Render the import command into a secret next to the registered cluster.

    The secret is owned by the registered cluster (both are in the compute API),
    so it is garbage-collected together with it. Its name is referenced from
    the registered cluster's status. Returns the (possibly patched) body.
    """
    name = bodies.get_name(registered) or ''
    namespace = bodies.get_namespace(registered) or ''
    secret_name = f'{name}-import'
    data = artifact.get('data') or {}
    command = applying.render_import_command(data[CRDS_KEY], data[IMPORT_KEY])

    applier = applying.Applier(context, settings)
    await applier.apply([applying.IMPORT_SECRET], dict(
        get_syncer_values(registered, settings),
        import_secret_name=secret_name,
        import_command=command,
    ), owner=registered, logger=logger)

    current_ref = registered.get('status', {}).get('importCommandRef') or {}
    if current_ref.get('name') == secret_name:
        return registered

    patched = await patching.patch_obj(
        context=context,
        settings=settings,
        resource=references.REGISTEREDCLUSTERS,
        namespace=references.NamespaceName(namespace),
        name=name,
        patch={'status': {'importCommandRef': {'name': secret_name}}},
        resource_version=bodies.get_resource_version(registered),
        logger=logger,
    )
    logger.info(f"The import command is stored in the secret {secret_name!r}.")
    return patched if patched else registered


async def ensure_syncer_identity(
        location: str,
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> bodies.RawBody:
    """
    Get or create the syncer's service account in the workspace.

    There is one service account per workspace, shared by all the syncers
    of the registered clusters in that workspace.
    """
    workspace = context.for_logical_cluster(location)
    name = settings.syncer.service_account_name
    namespace = references.NamespaceName(settings.syncer.namespace)
    identity = await fetching.read_obj(
        context=workspace,
        settings=settings,
        resource=references.SERVICEACCOUNTS,
        namespace=namespace,
        name=name,
        logger=logger,
    )
    if identity is not None:
        return identity

    try:
        identity = await creating.create_obj(
            context=workspace,
            settings=settings,
            resource=references.SERVICEACCOUNTS,
            namespace=namespace,
            name=name,
            body={'apiVersion': 'v1', 'kind': 'ServiceAccount'},
            logger=logger,
        )
        logger.info(f"Created the syncer's service account {name!r} in {location!r}.")
        return identity
    except errors.APIConflictError:
        pass

    # Created by a concurrent reconciliation of another registered cluster in the same workspace.
    identity = await fetching.read_obj(
        context=workspace,
        settings=settings,
        resource=references.SERVICEACCOUNTS,
        namespace=namespace,
        name=name,
        logger=logger,
    )
    if identity is None:
        raise ReconciliationError(f"The syncer's service account {name!r} has vanished.")
    return identity


async def apply_syncer_rbac(
        registered: bodies.RawBody,
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> None:
    location = registered.get('spec', {}).get('location') or ''
    applier = applying.Applier(context.for_logical_cluster(location), settings)
    await applier.apply([
        applying.SYNCER_CLUSTERROLE,
        applying.SYNCER_CLUSTERROLEBINDING,
    ], dict(
        get_syncer_values(registered, settings),
        service_account_name=settings.syncer.service_account_name,
        service_account_namespace=settings.syncer.namespace,
    ), logger=logger)


async def fetch_syncer_token(
        identity: bodies.RawBody,
        *,
        location: str,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> str:
    """
    Find the first usable token among the secrets of the syncer's service account.
    """
    workspace = context.for_logical_cluster(location)
    prefix = settings.syncer.service_account_name
    namespace = bodies.get_namespace(identity) or settings.syncer.namespace
    for ref in identity.get('secrets') or []:
        secret_name = ref.get('name') or ''
        if not secret_name.startswith(prefix):
            continue

        try:
            secret = await fetching.read_obj(
                context=workspace,
                settings=settings,
                resource=references.SECRETS,
                namespace=references.NamespaceName(namespace),
                name=secret_name,
                logger=logger,
            )
        except errors.APIClientError as e:
            logger.warning(f"Cannot read the secret {secret_name!r} of the syncer: {e}")
            continue

        if secret is None or secret.get('type') != TOKEN_SECRET_TYPE:
            continue

        encoded = (secret.get('data') or {}).get('token')
        if not encoded:
            continue

        try:
            token = base64.b64decode(encoded).decode('utf-8')
        except (binascii.Error, UnicodeDecodeError) as e:
            logger.warning(f"Cannot decode the token in the secret {secret_name!r}: {e}")
            continue
        if token:
            return token

    name = bodies.get_name(identity)
    raise TokenNotIssuedError(f"No token is issued for the service account {name!r} (yet).")


def get_server_root(server: str) -> str:
    """ Strip the logical cluster's path (if any): only ``scheme://host[:port]``. """
    parsed = urllib.parse.urlsplit(server)
    return f'{parsed.scheme}://{parsed.netloc}'


async def apply_syncer_work(
        registered: bodies.RawBody,
        managed: bodies.RawBody,
        *,
        token: str,
        compute_server: str,
        applier: applying.Applier,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> bool:
    """
    Deploy the syncer onto the managed cluster via a manifest work in the hub.

    Only done once the managed cluster has joined the hub; until then, it is
    a no-op with ``False`` returned (the managed cluster's status change
    will trigger the reconciliation again).
    """
    mc_name = bodies.get_name(managed) or ''
    mc_conditions = managed.get('status', {}).get('conditions')
    if not conditions.is_condition_true(mc_conditions, JOINED_CONDITION):
        logger.debug(f"The managed cluster {mc_name!r} has not joined yet; the syncer is postponed.")
        return False

    location = registered.get('spec', {}).get('location') or ''
    values = dict(
        get_syncer_values(registered, settings),
        kcp_token=token,
        kcp_server=get_server_root(compute_server),
        managed_cluster_name=mc_name,
        logical_cluster=location,
        logical_cluster_label=location.replace(':', '_'),
        image=settings.syncer.image,
    )
    await applier.apply([applying.SYNCER_MANIFESTWORK], values, logger=logger)

    work = await fetching.read_obj(
        context=applier.context,
        settings=settings,
        resource=references.MANIFESTWORKS,
        namespace=references.NamespaceName(mc_name),
        name=values['syncer_name'],
        logger=logger,
    )
    work_conditions = (work or {}).get('status', {}).get('conditions')
    applied = conditions.is_condition_true(work_conditions, APPLIED_CONDITION)
    logger.debug(f"The syncer's manifest work {values['syncer_name']!r} is applied: {applied}.")
    return True


def get_location(registered: bodies.RawBody) -> str:
    location = registered.get('spec', {}).get('location')
    if not location:
        raise ReconciliationError("The registered cluster has no spec.location.")
    return str(location)
