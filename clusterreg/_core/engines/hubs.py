"""
The registry of the hubs and the routing of the registered clusters to them.

The registry is built once at startup from the controller's config
and is then shared (read-only) by all the concurrent reconciliations.
The hubs are matched in the order of declaration: the first hub whose
namespace patterns match the registered cluster's namespace serves it.
"""
import dataclasses
from collections.abc import Iterable, Iterator

from clusterreg._cogs.clients import auth
from clusterreg._cogs.configs import configuration, connections
from clusterreg._cogs.structs import references
from clusterreg._core.actions import applying


class HubNotFoundError(Exception):
    """ No hub is configured to serve a namespace of a registered cluster. """


@dataclasses.dataclass(frozen=True)
class HubInstance:
    name: str
    context: auth.APIContext
    applier: applying.Applier
    namespaces: tuple[references.NamespacePattern, ...] = ('*',)

    def serves(self, namespace: str) -> bool:
        return references.match_namespaces(namespace, self.namespaces)


@dataclasses.dataclass(frozen=True)
class HubRegistry:
    hubs: tuple[HubInstance, ...] = ()

    def __iter__(self) -> Iterator[HubInstance]:
        return iter(self.hubs)

    def __len__(self) -> int:
        return len(self.hubs)

    def resolve(self, namespace: str) -> HubInstance:
        for hub in self.hubs:
            if hub.serves(namespace):
                return hub
        raise HubNotFoundError(f"No hub is configured for the namespace {namespace!r}.")

    @classmethod
    def from_configs(
            cls,
            configs: Iterable[connections.HubConfig],
            *,
            settings: configuration.OperatorSettings,
    ) -> "HubRegistry":
        hubs: list[HubInstance] = []
        for config in configs:
            context = auth.APIContext(config.connection)
            hubs.append(HubInstance(
                name=config.name,
                context=context,
                applier=applying.Applier(context, settings),
                namespaces=tuple(config.namespaces),
            ))
        return cls(tuple(hubs))

    async def close(self) -> None:
        for hub in self.hubs:
            await hub.context.close()
