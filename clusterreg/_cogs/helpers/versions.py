"""
Detecting the controller's own version.

The codebase does not contain the version directly, as it would require
code changes on every release. The version is taken from the installed
distribution's metadata, and is determined only once at startup.
"""
import importlib.metadata

version: str | None = None

try:
    name, *_ = __name__.split('.')  # usually "clusterreg", unless renamed/forked.
    version = importlib.metadata.version(name)
except importlib.metadata.PackageNotFoundError:
    pass  # running from a source tree, not installed.
