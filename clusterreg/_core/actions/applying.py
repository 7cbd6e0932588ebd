"""
Rendering and applying the declarative manifests from the templates.

The templates are YAML files shipped with the package (``clusterreg/resources``).
They are parsed as YAML first, and only then the ``${placeholders}`` are
substituted in every string of the parsed structure (both keys & values).
So, the values are never interpreted as YAML: a token or a multi-line
command cannot break the structure of the manifest or inject extra fields.

The rendered manifests are applied idempotently: created if absent,
merge-patched if present (the server-side fields are preserved as they are).
Only the kinds known to the controller can be applied (see :mod:`references`).
"""
import functools
import importlib.resources
import logging
import string
from collections.abc import Mapping, Sequence
from typing import Any

import yaml

from clusterreg._cogs.clients import auth, creating, errors, patching
from clusterreg._cogs.configs import configuration
from clusterreg._cogs.helpers import typedefs
from clusterreg._cogs.structs import bodies, references

logger = logging.getLogger(__name__)

IMPORT_SECRET = 'import_secret.yaml'
SYNCER_CLUSTERROLE = 'syncer_clusterrole.yaml'
SYNCER_CLUSTERROLEBINDING = 'syncer_clusterrolebinding.yaml'
SYNCER_MANIFESTWORK = 'syncer_manifestwork.yaml'


class TemplateError(Exception):
    """ Raised when a template is absent, malformed, or misses the values. """


@functools.lru_cache(maxsize=None)
def load_template(name: str) -> tuple[Any, ...]:
    path = importlib.resources.files('clusterreg') / 'resources' / name
    try:
        text = path.read_text(encoding='utf-8')
    except FileNotFoundError as e:
        raise TemplateError(f"The template is not found: {name}") from e
    try:
        return tuple(doc for doc in yaml.safe_load_all(text) if doc)
    except yaml.YAMLError as e:
        raise TemplateError(f"The template is malformed: {name}: {e}") from e


def substitute(obj: Any, values: Mapping[str, str]) -> Any:
    match obj:
        case str():
            return string.Template(obj).substitute(values)
        case Mapping():
            return {substitute(key, values): substitute(val, values) for key, val in obj.items()}
        case list() | tuple():
            return [substitute(item, values) for item in obj]
        case _:
            return obj


def render(
        names: Sequence[str],
        values: Mapping[str, str],
) -> list[bodies.RawBody]:
    manifests: list[bodies.RawBody] = []
    for name in names:
        for doc in load_template(name):
            try:
                manifests.append(substitute(doc, values))
            except KeyError as e:
                raise TemplateError(f"The template {name} needs a value for {e}.") from e
            except ValueError as e:
                raise TemplateError(f"The template {name} has an invalid placeholder: {e}") from e
    return manifests


def render_import_command(crds: str, import_: str) -> str:
    """
    Render a shell command to import a physical cluster into the hub.

    Both payloads are base64-encoded (as in the hub's import secret),
    and are decoded and applied by the user on the physical cluster:
    first the CRDs, then (after a short pause for the CRDs to settle)
    the import manifests, which use the CRDs.
    """
    return (
        f'echo "{crds}" | base64 --decode | kubectl apply -f - && sleep 2 && '
        f'echo "{import_}" | base64 --decode | kubectl apply -f -'
    )


class Applier:
    """
    The idempotent create-or-patch of the rendered manifests in one cluster.

    Every hub has its own applier; the workspaces get a temporary one
    with the logical cluster's context.
    """

    def __init__(
            self,
            context: auth.APIContext,
            settings: configuration.OperatorSettings,
    ) -> None:
        super().__init__()
        self.context = context
        self.settings = settings

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__} server={self.context.server!r}>'

    async def apply(
            self,
            names: Sequence[str],
            values: Mapping[str, str],
            *,
            owner: bodies.RawBody | None = None,
            logger: typedefs.Logger = logger,
    ) -> list[bodies.RawBody]:
        applied: list[bodies.RawBody] = []
        for manifest in render(names, values):
            if owner is not None:
                bodies.append_owner_reference(manifest, owner)
            applied.append(await self.apply_manifest(manifest, logger=logger))
        return applied

    async def apply_manifest(
            self,
            manifest: bodies.RawBody,
            *,
            logger: typedefs.Logger = logger,
    ) -> bodies.RawBody:
        resource = references.resource_for(manifest.get('apiVersion', ''), manifest.get('kind', ''))
        name = bodies.get_name(manifest)
        namespace = bodies.get_namespace(manifest) if resource.namespaced else None
        if not name:
            raise TemplateError(f"The manifest of {resource.kind} has no name.")

        try:
            body = await creating.create_obj(
                context=self.context,
                settings=self.settings,
                resource=resource,
                namespace=references.NamespaceName(namespace) if namespace else None,
                body=manifest,
                logger=logger,
            )
            logger.debug(f"Created {resource.kind} {name!r} at {self.context.server}.")
            return body
        except errors.APIConflictError:
            pass

        patch = {key: val for key, val in manifest.items() if key not in ['status']}
        patched = await patching.patch_obj(
            context=self.context,
            settings=self.settings,
            resource=resource,
            namespace=references.NamespaceName(namespace) if namespace else None,
            name=name,
            patch=patch,
            logger=logger,
        )
        if patched is None:
            # Deleted right after the creation conflict; the next reconciliation re-creates it.
            raise errors.APINotFoundError(None, status=404)
        logger.debug(f"Patched {resource.kind} {name!r} at {self.context.server}.")
        return patched
