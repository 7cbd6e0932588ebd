"""
The controller of the registered clusters: the exported functions & classes.
"""
# isort: skip_file

# Unlike all other places, where we import other modules and refer
# the functions via the modules, this is the controller's top-level interface,
# as it is seen by the embedding code & tests. So, we export the individual names.

from clusterreg._cogs.configs.configuration import (
    OperatorSettings,
)
from clusterreg._cogs.configs.connections import (
    ConfigError,
    ControllerConfig,
    HubConfig,
    load_controller_config,
    login_with_kubeconfig,
)
from clusterreg._cogs.helpers.typedefs import (
    Logger,
)
from clusterreg._cogs.helpers.versions import (
    version as __version__,
)
from clusterreg._cogs.structs.credentials import (
    ConnectionInfo,
    LoginError,
)
from clusterreg._cogs.structs.references import (
    ObjectKey,
)
from clusterreg._core.actions.lifecycles import (
    ReconciliationError,
    ManagedClusterNotFoundError,
    InconsistentCorrelationError,
    TokenNotIssuedError,
)
from clusterreg._core.actions.loggers import (
    LogFormat,
    configure,
)
from clusterreg._core.engines.hubs import (
    HubInstance,
    HubNotFoundError,
    HubRegistry,
)
from clusterreg._core.reactor.reconciling import (
    Reconciler,
    Result,
)
from clusterreg._core.reactor.running import (
    controller,
    run,
)

__all__ = [
    'OperatorSettings',
    'ConfigError',
    'ControllerConfig',
    'HubConfig',
    'load_controller_config',
    'login_with_kubeconfig',
    'Logger',
    'ConnectionInfo',
    'LoginError',
    'ObjectKey',
    'ReconciliationError',
    'ManagedClusterNotFoundError',
    'InconsistentCorrelationError',
    'TokenNotIssuedError',
    'LogFormat',
    'configure',
    'HubInstance',
    'HubNotFoundError',
    'HubRegistry',
    'Reconciler',
    'Result',
    'controller',
    'run',
]
