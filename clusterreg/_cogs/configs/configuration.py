"""
All configuration flags, options, settings to fine-tune the controller.

All settings are grouped semantically just for convenience
(instead of a flat mega-object with all the values in it).

Some of the settings are flags, some are scalars, some are optional,
some are not (but all of them have reasonable defaults).

The settings are constructed once at startup (from the defaults and the CLI
options) and are then passed explicitly to every function that needs them.
They are not expected to change at runtime.
"""
import dataclasses
import os
from collections.abc import Iterable

# The label keys that correlate the derived objects with their registered clusters.
# They are the only link across the API servers, where owner references do not work.
NAME_LABEL = 'registeredcluster.singapore.open-cluster-management.io/name'
NAMESPACE_LABEL = 'registeredcluster.singapore.open-cluster-management.io/namespace'
UID_LABEL = 'registeredcluster.singapore.open-cluster-management.io/uid'
LOCATION_ANNOTATION = 'registeredcluster.singapore.open-cluster-management.io/location'
CLUSTERSET_LABEL = 'cluster.open-cluster-management.io/clusterset'
CLUSTERID_LABEL = 'clusterID'


@dataclasses.dataclass
class NetworkingSettings:

    request_timeout: float | None = 5 * 60  # == aiohttp.client.DEFAULT_TIMEOUT
    """
    A timeout for the whole API request (connection + headers + payload).
    """

    connect_timeout: float | None = None
    """
    A timeout for the TCP connection establishing only.
    """

    error_backoffs: Iterable[float] = (1, 1, 2, 3, 5)
    """
    Backoff intervals in case of connection errors or server-side API errors.

    The request is retried this many times (plus the initial attempt),
    then the error is escalated to the caller (i.e. the reconciliation fails
    and is retried with its own backoff). Client-side errors (4xx) are never
    retried. To disable the retries, set it to ``[]`` or ``()``.
    """


@dataclasses.dataclass
class WatchingSettings:

    server_timeout: float | None = None
    """
    The maximum duration of one streaming request.
    If ``None``, then obey the server-side timeouts (they seem to be random).
    """

    client_timeout: float | None = None
    """
    An HTTP/HTTPS session timeout to use in watch requests.
    """

    connect_timeout: float | None = None
    """
    An HTTP/HTTPS connection timeout to use in watch requests.
    """

    reconnect_backoff: float = 0.1
    """
    How long should a pause be between watch requests (to prevent API flooding).
    """


@dataclasses.dataclass
class QueueingSettings:

    worker_limit: int | None = None
    """
    How many registered clusters can be reconciled simultaneously.
    If ``None``, there is no limit to the number of workers (as many as needed).
    One registered cluster is never reconciled concurrently with itself.
    """

    idle_timeout: float = 5.0
    """
    How soon an idle per-key worker is exited and garbage-collected.
    """

    exit_timeout: float = 2.0
    """
    How long the workers are given to finish on exit before being cancelled.
    """

    error_base_delay: float = 0.005
    """
    The first delay after a failed reconciliation; doubled on every next failure.
    """

    error_max_delay: float = 1000.0
    """
    The maximum delay between the retries of the failing reconciliations.
    """


@dataclasses.dataclass
class ReconcilingSettings:

    finalizer: str = 'registeredcluster.singapore.open-cluster-management.io/finalizer'
    """
    A string marker to be put on the registered clusters to block their deletion
    until all the derived objects are torn down.
    """

    artifact_delay: float = 1.0
    """
    How soon to re-check if the import artifact is produced by the hub.
    """

    teardown_delay: float = 1.0
    """
    How soon to re-check if a deleted derived object is gone.
    """

    cluster_teardown_delay: float = 5.0
    """
    How soon to re-check if a deleted managed cluster is gone (it takes longer).
    """

    service_name: str = 'compute'
    """
    The service name to annotate the created managed clusters with.
    """


@dataclasses.dataclass
class SyncerSettings:

    image_env: str = 'KCP_SYNCER_IMAGE'
    """
    The environment variable with an overridden image of the syncer.
    """

    default_image: str = 'ghcr.io/kcp-dev/kcp/syncer:main'
    """
    The syncer image used if the environment variable is not set or empty.
    """

    prefix: str = 'kcp-syncer'
    """
    The prefix of the syncer's names, both in the workspaces and on the hubs.
    """

    namespace: str = 'default'
    """
    The namespace of the syncer's service account in the workspaces.
    """

    @property
    def image(self) -> str:
        return os.environ.get(self.image_env) or self.default_image

    @property
    def service_account_name(self) -> str:
        return f'{self.prefix}-sa'

    def get_syncer_name(self, registered_cluster_name: str) -> str:
        return f'{self.prefix}-{registered_cluster_name}'


@dataclasses.dataclass
class OperatorSettings:
    networking: NetworkingSettings = dataclasses.field(default_factory=NetworkingSettings)
    watching: WatchingSettings = dataclasses.field(default_factory=WatchingSettings)
    queueing: QueueingSettings = dataclasses.field(default_factory=QueueingSettings)
    reconciling: ReconcilingSettings = dataclasses.field(default_factory=ReconcilingSettings)
    syncer: SyncerSettings = dataclasses.field(default_factory=SyncerSettings)
