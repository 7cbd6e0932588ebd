"""
Projection of the managed clusters' status onto the registered clusters.

The projection is one-way: the hub's managed cluster is the source of truth,
the registered cluster's status is overwritten from it field by field,
but only with the non-empty fields: an empty field in the source means
"not reported yet" rather than "reset it".
"""
from collections.abc import Mapping
from typing import Any

from clusterreg._cogs.clients import auth, patching
from clusterreg._cogs.configs import configuration
from clusterreg._cogs.helpers import typedefs
from clusterreg._cogs.structs import bodies, conditions, references

COPIED_FIELDS = ['allocatable', 'capacity', 'clusterClaims', 'version']


def project_status(
        registered: bodies.RawBody,
        managed: bodies.RawBody,
) -> dict[str, Any]:
    """
    Calculate a merge-patch of the registered cluster's status.

    The patch contains only the changed fields. The conditions are merged
    by their types, so the conditions not reported by the managed cluster
    are preserved; the list is always patched as a whole (as merge-patches do).
    The mappings are replaced as a whole too, with the removed keys nullified.
    """
    current: Mapping[str, Any] = registered.get('status') or {}
    source: Mapping[str, Any] = managed.get('status') or {}
    patch: dict[str, Any] = {}

    reported = source.get('conditions') or []
    if reported:
        merged = conditions.merge_conditions(current.get('conditions'), *reported)
        if merged != (current.get('conditions') or []):
            patch['conditions'] = merged

    for field in COPIED_FIELDS:
        value = source.get(field)
        if value and value != current.get(field):
            patch[field] = _replacing(current.get(field), value)

    configs = managed.get('spec', {}).get('managedClusterClientConfigs') or []
    api_url = configs[0].get('url') if configs else None
    if api_url and api_url != current.get('apiURL'):
        patch['apiURL'] = api_url

    cluster_id = bodies.get_labels(managed).get(configuration.CLUSTERID_LABEL)
    if cluster_id and cluster_id != current.get('clusterID'):
        patch['clusterID'] = cluster_id

    return patch


def _replacing(old: Any, new: Any) -> Any:
    if isinstance(old, Mapping) and isinstance(new, Mapping):
        removed = {key: None for key in old if key not in new}
        return removed | {key: _replacing(old.get(key), val) for key, val in new.items()}
    return new


async def update_status(
        registered: bodies.RawBody,
        managed: bodies.RawBody,
        *,
        context: auth.APIContext,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> bodies.RawBody:
    """
    Patch the registered cluster's status from the managed cluster, if changed.
    """
    patch = project_status(registered, managed)
    if not patch:
        return registered

    patched = await patching.patch_obj(
        context=context,
        settings=settings,
        resource=references.REGISTEREDCLUSTERS,
        namespace=references.NamespaceName(bodies.get_namespace(registered) or ''),
        name=bodies.get_name(registered) or '',
        patch={'status': patch},
        resource_version=bodies.get_resource_version(registered),
        logger=logger,
    )
    logger.debug(f"The status is updated: {', '.join(sorted(patch))}.")
    return patched if patched else registered
