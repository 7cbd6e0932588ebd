"""
All the structures needed for Kubernetes patching.

Currently, it is implemented via a JSON merge-patch (RFC 7386),
i.e. a simple dictionary with field overrides, and ``None`` for field deletions.
Lists are never merged by the API server: they are replaced as a whole.
"""
from collections.abc import Iterator, Mapping, MutableMapping
from typing import Any


class SubPatch(MutableMapping[str, Any]):
    """
    A lazy view of a top-level section of a patch, auto-created on writes.

    >>> patch = Patch()
    >>> patch.status.get('field', 'default')
    ... 'default'
    >>> patch
    ... {}
    >>> patch.status['field'] = 'value'
    >>> patch
    ... {'status': {'field': 'value'}}
    """

    def __init__(self, __src: "Patch", __key: str) -> None:
        super().__init__()
        self._src = __src
        self._key = __key

    def __repr__(self) -> str:
        return repr(dict(self))

    def __len__(self) -> int:
        return len(self._src.get(self._key, {}))

    def __iter__(self) -> Iterator[str]:
        return iter(self._src.get(self._key, {}))

    def __getitem__(self, item: str) -> Any:
        return self._src.get(self._key, {})[item]

    def __setitem__(self, item: str, value: Any) -> None:
        self._src.setdefault(self._key, {})[item] = value

    def __delitem__(self, item: str) -> None:
        section = self._src.get(self._key, {})
        del section[item]
        if not section:
            del self._src[self._key]


class Patch(dict[str, Any]):

    def __init__(self, __src: Mapping[str, Any] | None = None) -> None:
        super().__init__(__src or {})
        self._meta = SubPatch(self, 'metadata')
        self._spec = SubPatch(self, 'spec')
        self._status = SubPatch(self, 'status')

    @property
    def metadata(self) -> SubPatch:
        return self._meta

    @property
    def meta(self) -> SubPatch:
        return self._meta

    @property
    def spec(self) -> SubPatch:
        return self._spec

    @property
    def status(self) -> SubPatch:
        return self._status
