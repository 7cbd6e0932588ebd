import dataclasses
import fnmatch
import re
import urllib.parse
from collections.abc import Iterable, Iterator, Mapping
from typing import NamedTuple, NewType, Optional, Pattern, Union

# A namespace specification with globs, negations, and some minimal syntax; see `match_namespace()`.
# Regexps are also supported if pre-compiled from the code, not from the config files as raw strings.
NamespacePattern = Union[str, Pattern[str]]

# A specific really existing addressable namespace (at least, the one assumed to be so).
# Made as a NewType for stricter type-checking to avoid collisions with patterns and other strings.
NamespaceName = NewType('NamespaceName', str)

# A namespace reference usable in the API calls. `None` means cluster-wide API calls.
Namespace = Optional[NamespaceName]


class ObjectKey(NamedTuple):
    """
    An identity of a registered cluster as used in the reconciliation queue.

    Only the namespace & name are used: the uid changes if the object
    is deleted & re-created, but the reconciliation is level-triggered and
    always re-reads the object by its name anyway.
    """
    namespace: NamespaceName
    name: str

    def __str__(self) -> str:
        return f'{self.namespace}/{self.name}'


def match_namespace(name: str, pattern: NamespacePattern) -> bool:
    """
    Check if the specific namespace matches a namespace specification.

    Each individual namespace pattern is a string that follows some syntax:

    * the pattern consists of comma-separated parts (spaces are ignored);
    * each part is either an inclusive or an exclusive (negating) glob;
    * each glob can have ``*`` and ``?`` placeholders for any or one symbols;
    * the exclusive globs start with ``!``;
    * if the the first glob is exclusive, then a preceding catch-all is implied.

    For example, the pattern ``"team-*, !team-*-test, team-a-test"``
    will match ``team-a``, ``team-b``, even ``team-a-test``,
    but not ``team-b-test`` and certainly not ``other-a``.
    """

    # Regexps are powerful enough on their own -- we do not parse or interpret them.
    if isinstance(pattern, re.Pattern):
        return bool(pattern.fullmatch(name))

    # The first pattern should be an inclusive one. Unless it is, prepend a catch-all pattern.
    globs = [glob.strip() for glob in pattern.split(',')]
    if not globs or globs[0].startswith('!'):
        globs.insert(0, '*')

    # Iterate and calculate: every inclusive pattern makes the namespace to match regardless,
    # of the previous result; every exclusive pattern un-matches it if it was matched before.
    matches = first_match = fnmatch.fnmatch(name, globs[0])
    for glob in globs[1:]:
        if glob.startswith('!'):
            matches = matches and not fnmatch.fnmatch(name, glob.lstrip('!'))
        else:
            matches = matches or (first_match and fnmatch.fnmatch(name, glob))

    return matches


def match_namespaces(name: str | None, patterns: Iterable[NamespacePattern]) -> bool:
    """ Check if the namespace matches any of the patterns; cluster objects never match. """
    return name is not None and any(match_namespace(name, pattern) for pattern in patterns)


@dataclasses.dataclass(frozen=True, eq=False, repr=False)
class Resource:
    """
    A reference to a very specific custom or built-in resource kind.

    It is used to form the K8s API URLs. Generally, K8s API only needs
    an API group, an API version, and a plural name of the resource.
    All other names are remembered for logging and for matching the kinds
    of the rendered manifests.
    """

    group: str
    """
    The resource's API group; e.g. ``"cluster.open-cluster-management.io"``.
    For Core v1 API resources, an empty string: ``""``.
    """

    version: str
    """
    The resource's API version; e.g. ``"v1"``, ``"v1alpha1"``, etc.
    """

    plural: str
    """
    The resource's plural name; e.g. ``"managedclusters"``.
    It is used as an API endpoint, together with API group & version.
    """

    kind: str | None = None
    """
    The resource's kind (as in YAML files); e.g. ``"ManagedCluster"``.
    """

    subresources: frozenset[str] = frozenset()
    """
    The resource's subresources, if defined; e.g. ``{"status"}``.
    """

    namespaced: bool | None = None
    """
    Whether the resource is namespaced (``True``) or cluster-scoped (``False``).
    """

    def __hash__(self) -> int:
        return hash((self.group, self.version, self.plural))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Resource):
            self_tuple = (self.group, self.version, self.plural)
            other_tuple = (other.group, other.version, other.plural)
            return self_tuple == other_tuple
        else:
            return NotImplemented

    def __repr__(self) -> str:
        return f'{self.plural}.{self.version}.{self.group}'.strip('.')

    def __iter__(self) -> Iterator[str]:
        return iter((self.group, self.version, self.plural))

    @property
    def api_version(self) -> str:
        return f'{self.group}/{self.version}' if self.group else self.version

    def get_url(
            self,
            *,
            server: str | None = None,
            namespace: Namespace = None,
            name: str | None = None,
            subresource: str | None = None,
            params: Mapping[str, str] | None = None,
    ) -> str:
        """
        Build a URL to be used with K8s API.

        If the namespace is not set, a cluster-wide URL is returned.
        For cluster-scoped resources, the namespace is ignored.

        If the name is not set, the URL for the resource list is returned.
        Otherwise (if set), the URL for the individual resource is returned.

        If subresource is set, that subresource's URL is returned,
        regardless of whether such a subresource is known or not.

        Params go to the query parameters (``?param1=value1&param2=value2...``).
        """
        if subresource is not None and name is None:
            raise ValueError("Subresources can be used only with specific resources by their name.")
        if not self.namespaced and namespace is not None:
            raise ValueError(f"Specific namespaces are not supported for cluster-scoped resources.")
        if self.namespaced and namespace is None and name is not None:
            raise ValueError("Specific namespaces are required for specific namespaced resources.")

        parts: list[str | None] = [
            '/api' if self.group == '' and self.version == 'v1' else '/apis',
            self.group,
            self.version,
            'namespaces' if self.namespaced and namespace is not None else None,
            namespace if self.namespaced and namespace is not None else None,
            self.plural,
            name,
            subresource,
        ]

        query = urllib.parse.urlencode(params, encoding='utf-8') if params else ''
        path = '/'.join([part for part in parts if part])
        url = path + ('?' if query else '') + query
        return url if server is None else server.rstrip('/') + '/' + url.lstrip('/')


def build_label_selector(labels: Mapping[str, str]) -> str:
    """ An equality-based label selector, as accepted by the ``labelSelector`` param. """
    return ','.join(f'{key}={val}' for key, val in sorted(labels.items()))


# The resources this controller works with, across all the involved API servers.
REGISTEREDCLUSTERS = Resource(
    'singapore.open-cluster-management.io', 'v1alpha1', 'registeredclusters',
    kind='RegisteredCluster', namespaced=True, subresources=frozenset({'status'}),
)
MANAGEDCLUSTERS = Resource(
    'cluster.open-cluster-management.io', 'v1', 'managedclusters',
    kind='ManagedCluster', namespaced=False, subresources=frozenset({'status'}),
)
MANIFESTWORKS = Resource(
    'work.open-cluster-management.io', 'v1', 'manifestworks',
    kind='ManifestWork', namespaced=True, subresources=frozenset({'status'}),
)
MANAGEDSERVICEACCOUNTS = Resource(
    'authentication.open-cluster-management.io', 'v1alpha1', 'managedserviceaccounts',
    kind='ManagedServiceAccount', namespaced=True, subresources=frozenset({'status'}),
)
MANAGEDCLUSTERADDONS = Resource(
    'addon.open-cluster-management.io', 'v1alpha1', 'managedclusteraddons',
    kind='ManagedClusterAddOn', namespaced=True, subresources=frozenset({'status'}),
)
SECRETS = Resource('', 'v1', 'secrets', kind='Secret', namespaced=True)
SERVICEACCOUNTS = Resource('', 'v1', 'serviceaccounts', kind='ServiceAccount', namespaced=True)
CLUSTERROLES = Resource(
    'rbac.authorization.k8s.io', 'v1', 'clusterroles',
    kind='ClusterRole', namespaced=False,
)
CLUSTERROLEBINDINGS = Resource(
    'rbac.authorization.k8s.io', 'v1', 'clusterrolebindings',
    kind='ClusterRoleBinding', namespaced=False,
)

KNOWN_RESOURCES: frozenset[Resource] = frozenset({
    REGISTEREDCLUSTERS,
    MANAGEDCLUSTERS,
    MANIFESTWORKS,
    MANAGEDSERVICEACCOUNTS,
    MANAGEDCLUSTERADDONS,
    SECRETS,
    SERVICEACCOUNTS,
    CLUSTERROLES,
    CLUSTERROLEBINDINGS,
})


def resource_for(api_version: str, kind: str) -> Resource:
    """
    Find the resource of a manifest by its ``apiVersion`` & ``kind``.

    There is no discovery of the API servers' resources: the rendered
    manifests can only contain the kinds known to this controller.
    """
    for resource in KNOWN_RESOURCES:
        if resource.api_version == api_version and resource.kind == kind:
            return resource
    raise LookupError(f"Unsupported manifest kind: {kind} of {api_version}")
