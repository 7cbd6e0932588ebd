"""
Per-object logging of the reconciliation and the logging setup of the process.

The machinery (watching, queueing, API requests) logs to the module-level
loggers. The reconciliation of a registered cluster logs to a per-object
logger, which carries a reference of the registered cluster in the records:
it is rendered either as a ``[namespace/name]`` prefix in the text formats,
or as a separate field in the JSON format. Once the hub is known,
the hub's name is added to the records too.
"""
import bisect
import copy
import enum
import logging
from collections.abc import MutableMapping
from typing import TYPE_CHECKING, Any, TextIO

from pythonjsonlogger.core import RESERVED_ATTRS
from pythonjsonlogger.json import JsonFormatter

from clusterreg._cogs.helpers import typedefs
from clusterreg._cogs.structs import bodies

logger = logging.getLogger('clusterreg.objects')

# A key for object references in JSON logs, as seen by the log parsers.
DEFAULT_JSON_REFKEY = 'object'

# The extra fields of the records, which are rendered specially, not as is.
OBJECT_FIELDS = frozenset({'k8s_ref', 'hub'})

# The upper levels of the severities, as understood by the log collectors.
_SEVERITY_LEVELS = [logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR]
_SEVERITY_NAMES = ['debug', 'info', 'warn', 'error', 'fatal']

# The low-level loggers silenced unless debugging.
NOISY_LOGGERS = ['asyncio']


class LogFormat(enum.Enum):
    """ Log formats, as specified on CLI. """
    PLAIN = '%(message)s'
    FULL = '[%(asctime)s] %(name)-20.20s [%(levelname)-8.8s] %(message)s'
    JSON = '-json-'  # not used for formatting, only for detection


def get_severity(levelno: int) -> str:
    return _SEVERITY_NAMES[bisect.bisect_left(_SEVERITY_LEVELS, levelno)]


def get_prefix(ref: dict[str, Any]) -> str:
    namespace = ref.get('namespace')
    name = ref.get('name', '')
    return f"[{namespace}/{name}]" if namespace else f"[{name}]"


class ObjectFormatter(logging.Formatter):
    pass


class ObjectTextFormatter(ObjectFormatter, logging.Formatter):
    pass


class ObjectJsonFormatter(ObjectFormatter, JsonFormatter):
    """
    JSON records with the object reference under a configurable key,
    the hub's name (if known), and the severity.
    """

    def __init__(self, *args: Any, refkey: str | None = None, **kwargs: Any) -> None:
        reserved_attrs = set(kwargs.pop('reserved_attrs', RESERVED_ATTRS)) | OBJECT_FIELDS
        kwargs.setdefault('timestamp', True)
        super().__init__(*args, reserved_attrs=reserved_attrs, **kwargs)
        self.refkey: str = refkey or DEFAULT_JSON_REFKEY

    def add_fields(
            self,
            log_record: dict[str, object],
            record: logging.LogRecord,
            message_dict: dict[str, object],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        ref = getattr(record, 'k8s_ref', None)
        hub = getattr(record, 'hub', None)
        if ref is not None:
            log_record[self.refkey] = ref
        if hub:
            log_record['hub'] = hub
        log_record.setdefault('severity', get_severity(record.levelno))


class ObjectPrefixingMixin(ObjectFormatter):
    def format(self, record: logging.LogRecord) -> str:
        ref = getattr(record, 'k8s_ref', None)
        if ref is not None:
            record = copy.copy(record)  # shallow: the other handlers see the original message.
            record.msg = f"{get_prefix(ref)} {record.msg}"
        return super().format(record)


class ObjectPrefixingTextFormatter(ObjectPrefixingMixin, ObjectTextFormatter):
    pass


class ObjectPrefixingJsonFormatter(ObjectPrefixingMixin, ObjectJsonFormatter):
    pass


class ObjectLogger(typedefs.LoggerAdapter):
    """
    A logger/adapter to carry the registered cluster's identifiers for formatting.

    Constructed for every reconciliation of every registered cluster.
    Once the hub of the registered cluster is resolved, a new logger
    is derived with the hub's name added (see :meth:`for_hub`).

    The reference is copied from the body when the logger is created,
    so it does not change if the body is modified or re-read later.
    """

    def __init__(
            self,
            *,
            body: bodies.RawBody,
            hub: str | None = None,
    ) -> None:
        metadata = body.get('metadata', {})
        super().__init__(logger, dict(
            hub=hub,
            k8s_ref=dict(
                apiVersion=body.get('apiVersion'),
                kind=body.get('kind'),
                name=metadata.get('name'),
                uid=metadata.get('uid'),
                namespace=metadata.get('namespace'),
            ),
        ))

    def for_hub(self, hub: str) -> "ObjectLogger":
        derived = copy.copy(self)
        derived.extra = dict(self.extra or {}, hub=hub)
        return derived

    def process(
            self,
            msg: str,
            kwargs: MutableMapping[str, Any],
    ) -> tuple[str, MutableMapping[str, Any]]:
        # The per-call extras are kept, not replaced by the adapter's ones.
        kwargs["extra"] = dict(self.extra or {}) | kwargs.get('extra', {})
        return msg, kwargs


# Our own handlers are replaced on re-configuration (e.g. in the CLI tests, where the
# previous handlers can stream into the closed stderr interceptors of Click's runner).
if TYPE_CHECKING:
    class _ClusterregStreamHandler(logging.StreamHandler[TextIO]):
        pass
else:
    class _ClusterregStreamHandler(logging.StreamHandler):
        pass


def configure(
        debug: bool | None = None,
        verbose: bool | None = None,
        quiet: bool | None = None,
        log_format: LogFormat = LogFormat.FULL,
        log_prefix: bool | None = False,
        log_refkey: str | None = None,
) -> None:
    handler = _ClusterregStreamHandler()
    handler.setFormatter(make_formatter(log_format=log_format,
                                        log_prefix=log_prefix,
                                        log_refkey=log_refkey))

    root = logging.getLogger()
    root.handlers[:] = [h for h in root.handlers if not isinstance(h, _ClusterregStreamHandler)]
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug or verbose else logging.WARNING if quiet else logging.INFO)

    for name in NOISY_LOGGERS:
        noisy = logging.getLogger(name)
        noisy.propagate = bool(debug)
        if not debug:
            noisy.handlers[:] = [logging.NullHandler()]


def make_formatter(
        log_format: LogFormat | str = LogFormat.FULL,
        log_prefix: bool | None = False,
        log_refkey: str | None = None,
) -> ObjectFormatter:
    """
    Make a formatter for the format; the prefixes are on by default except for JSON.
    """
    if log_prefix is None:
        log_prefix = log_format is not LogFormat.JSON

    if log_format is LogFormat.JSON:
        json_cls = ObjectPrefixingJsonFormatter if log_prefix else ObjectJsonFormatter
        return json_cls(refkey=log_refkey)

    if isinstance(log_format, LogFormat):
        fmt = log_format.value
    elif isinstance(log_format, str):
        fmt = log_format
    else:
        raise ValueError(f"Unsupported log format: {log_format!r}")

    text_cls = ObjectPrefixingTextFormatter if log_prefix else ObjectTextFormatter
    return text_cls(fmt)
