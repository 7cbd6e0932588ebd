"""
The controller's own config file: where the API servers are, how to connect.

The controller talks to several API servers at once: the compute API,
where the registered clusters live (and the workspaces behind it),
and one or more hubs, each serving a subset of the namespaces of
the registered clusters. The config file is a YAML document::

    compute:
      kubeconfig: /path/to/kubeconfig   # or: server, token, insecure, ca-path
    hubs:
      - name: hub-1
        kubeconfig: /path/to/hub1.kubeconfig
        namespaces: ["team-*"]          # default: ["*"]
    namespaces: ["*"]                   # registered clusters' namespaces to serve

Only the rudimentary authentication is supported: a server with a token,
a basic auth, or client certificates, either directly in the config file
or via a kubeconfig file (its current context or an explicitly named one).
"""
import dataclasses
import os
from collections.abc import Mapping, Sequence
from typing import Any

import yaml

from clusterreg._cogs.structs import credentials, references


class ConfigError(Exception):
    """ Raised when the controller's config file is invalid. """


@dataclasses.dataclass(frozen=True)
class HubConfig:
    name: str
    connection: credentials.ConnectionInfo
    namespaces: Sequence[references.NamespacePattern] = ('*',)


@dataclasses.dataclass(frozen=True)
class ControllerConfig:
    compute: credentials.ConnectionInfo
    hubs: Sequence[HubConfig]
    namespaces: Sequence[references.NamespacePattern] = ('*',)


def load_controller_config(path: str) -> ControllerConfig:
    with open(os.path.expanduser(path), encoding='utf-8') as f:
        config = yaml.safe_load(f.read()) or {}
    if not isinstance(config, Mapping):
        raise ConfigError(f"The config must be a mapping, got {type(config).__name__}: {path}")
    return parse_controller_config(config, base_dir=os.path.dirname(os.path.abspath(path)))


def parse_controller_config(
        config: Mapping[str, Any],
        *,
        base_dir: str | None = None,
) -> ControllerConfig:
    if 'compute' not in config:
        raise ConfigError("The compute API connection is not configured.")
    if not config.get('hubs'):
        raise ConfigError("No hubs are configured.")

    hubs: list[HubConfig] = []
    for idx, hub in enumerate(config['hubs']):
        name = hub.get('name') or f'hub-{idx}'
        if any(existing.name == name for existing in hubs):
            raise ConfigError(f"The hub name is duplicated: {name!r}")
        hubs.append(HubConfig(
            name=name,
            connection=parse_connection(hub, base_dir=base_dir),
            namespaces=_parse_namespaces(hub.get('namespaces')),
        ))

    return ControllerConfig(
        compute=parse_connection(config['compute'], base_dir=base_dir),
        hubs=tuple(hubs),
        namespaces=_parse_namespaces(config.get('namespaces')),
    )


def parse_connection(
        config: Mapping[str, Any],
        *,
        base_dir: str | None = None,
) -> credentials.ConnectionInfo:
    if config.get('kubeconfig'):
        path = os.path.join(base_dir or '', os.path.expanduser(config['kubeconfig']))
        return login_with_kubeconfig(path, context=config.get('context'))
    if not config.get('server'):
        raise ConfigError("Either a kubeconfig or a server must be configured for a connection.")
    return credentials.ConnectionInfo(
        server=config['server'],
        ca_path=config.get('ca-path'),
        insecure=config.get('insecure'),
        token=config.get('token'),
        default_namespace=config.get('namespace'),
    )


def _parse_namespaces(value: Any) -> tuple[references.NamespacePattern, ...]:
    if value is None:
        return ('*',)
    if isinstance(value, str):
        return (value,)
    return tuple(str(pattern) for pattern in value)


def login_with_kubeconfig(
        kubeconfig: str,
        *,
        context: str | None = None,
) -> credentials.ConnectionInfo:
    """
    A minimalistic login handler that can get raw data from a kubeconfig file.

    Authentication capabilities can be limited to keep the code short & simple.
    No parsing or sophisticated multi-step token retrieval is performed.

    The path can contain several files separated the same way as ``KUBECONFIG``.
    As prescribed: if a file is absent or non-deserialisable, then fail.
    The first value wins.
    """
    paths = [path.strip() for path in kubeconfig.split(os.pathsep)]
    paths = [os.path.expanduser(path) for path in paths if path]

    current_context: str | None = context
    contexts: dict[Any, Any] = {}
    clusters: dict[Any, Any] = {}
    users: dict[Any, Any] = {}
    for path in paths:

        with open(path, encoding='utf-8') as f:
            config = yaml.safe_load(f.read()) or {}

        if current_context is None:
            current_context = config.get('current-context')
        for item in config.get('contexts', []):
            if item['name'] not in contexts:
                contexts[item['name']] = item.get('context') or {}
        for item in config.get('clusters', []):
            if item['name'] not in clusters:
                clusters[item['name']] = item.get('cluster') or {}
        for item in config.get('users', []):
            if item['name'] not in users:
                users[item['name']] = item.get('user') or {}

    # Once fully parsed, use the current context only.
    if current_context is None:
        raise credentials.LoginError(f'Current context is not set in kubeconfigs: {kubeconfig}')
    try:
        context_info = contexts[current_context]
        cluster = clusters[context_info['cluster']]
        user = users[context_info.get('user')] if context_info.get('user') else {}
    except KeyError as e:
        raise credentials.LoginError(f'Context {current_context!r} is incomplete: {e}') from e

    # Unlike other clients, we do not make a fake API request to refresh the token.
    provider_token = user.get('auth-provider', {}).get('config', {}).get('access-token')

    # Map the retrieved fields into the credentials object.
    return credentials.ConnectionInfo(
        server=cluster.get('server'),
        ca_path=cluster.get('certificate-authority'),
        ca_data=cluster.get('certificate-authority-data'),
        insecure=cluster.get('insecure-skip-tls-verify'),
        certificate_path=user.get('client-certificate'),
        certificate_data=user.get('client-certificate-data'),
        private_key_path=user.get('client-key'),
        private_key_data=user.get('client-key-data'),
        username=user.get('username'),
        password=user.get('password'),
        token=user.get('token') or provider_token,
        default_namespace=context_info.get('namespace'),
    )
