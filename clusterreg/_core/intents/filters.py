"""
Filters of the watch-events: which changes are worth a reconciliation.

Every watched resource has its own filter: the registered clusters themselves
in the compute API, and the managed clusters & manifest works in the hubs.
A filter decides if a change is interesting (``old`` is ``None`` on creation,
``new`` is ``None`` on deletion), and maps the changed object to the keys
of the registered clusters to reconcile.

The derived objects are mapped back to their registered clusters
by the correlation labels; the objects without them are ignored.
"""
import abc
import dataclasses

from clusterreg._cogs.configs import configuration
from clusterreg._cogs.structs import bodies, references


def _is_correlated(body: bodies.RawBody | None) -> bool:
    labels = bodies.get_labels(body)
    return bool(labels.get(configuration.NAME_LABEL) and labels.get(configuration.NAMESPACE_LABEL))


def _status_changed(old: bodies.RawBody, new: bodies.RawBody) -> bool:
    return (old.get('status') or {}) != (new.get('status') or {})


class EventFilter(metaclass=abc.ABCMeta):
    resource: references.Resource

    @abc.abstractmethod
    def interesting_on(self, old: bodies.RawBody | None, new: bodies.RawBody | None) -> bool:
        raise NotImplementedError

    def keys_for(self, body: bodies.RawBody) -> list[references.ObjectKey]:
        labels = bodies.get_labels(body)
        if not _is_correlated(body):
            return []
        namespace = references.NamespaceName(labels[configuration.NAMESPACE_LABEL])
        return [references.ObjectKey(namespace, labels[configuration.NAME_LABEL])]


@dataclasses.dataclass(frozen=True)
class RegisteredClusterFilter(EventFilter):
    """
    Creations & deletions are always interesting; updates only without status changes.

    The status is written by the controller itself (the projection), so the
    status-only changes are ignored to prevent the reconciliation feedback loops.
    All other changes (spec, labels, finalizers, deletion marks) are reconciled.
    """
    resource: references.Resource = references.REGISTEREDCLUSTERS

    def interesting_on(self, old: bodies.RawBody | None, new: bodies.RawBody | None) -> bool:
        if old is None or new is None:
            return True
        return not _status_changed(old, new)

    def keys_for(self, body: bodies.RawBody) -> list[references.ObjectKey]:
        namespace = bodies.get_namespace(body)
        name = bodies.get_name(body)
        if not namespace or not name:
            return []
        return [references.ObjectKey(references.NamespaceName(namespace), name)]


@dataclasses.dataclass(frozen=True)
class ManagedClusterFilter(EventFilter):
    """
    Correlated creations, and correlated updates of the status, client configs,
    or the cluster id label: each of them can advance the registered cluster.
    """
    resource: references.Resource = references.MANAGEDCLUSTERS

    def interesting_on(self, old: bodies.RawBody | None, new: bodies.RawBody | None) -> bool:
        if new is None or not _is_correlated(new):
            return False
        if old is None:
            return True

        old_configs = old.get('spec', {}).get('managedClusterClientConfigs')
        new_configs = new.get('spec', {}).get('managedClusterClientConfigs')
        old_cluster_id = bodies.get_labels(old).get(configuration.CLUSTERID_LABEL)
        new_cluster_id = bodies.get_labels(new).get(configuration.CLUSTERID_LABEL)
        return (
            _status_changed(old, new) or
            old_configs != new_configs or
            old_cluster_id != new_cluster_id
        )


@dataclasses.dataclass(frozen=True)
class ManifestWorkFilter(EventFilter):
    """
    Correlated status updates only: the creation is done by the controller itself.
    """
    resource: references.Resource = references.MANIFESTWORKS

    def interesting_on(self, old: bodies.RawBody | None, new: bodies.RawBody | None) -> bool:
        if old is None or new is None or not _is_correlated(new):
            return False
        return _status_changed(old, new)


PRIMARY_FILTER = RegisteredClusterFilter()
HUB_FILTERS: tuple[EventFilter, ...] = (ManagedClusterFilter(), ManifestWorkFilter())
