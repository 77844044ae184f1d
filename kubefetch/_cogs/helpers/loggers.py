"""
Per-request logging: a logger adapter that carries the request's reference.

Every message logged via the :class:`RequestLogger` is marked with the method
and the URL of the API request it relates to. The formatters then render it
either as a prefix of the message (text formats) or as a separate field
(the JSON format) -- so that the log parsers can group the messages.

The library itself never configures the logging: this is the application's
decision. :func:`configure` is a convenience for the applications and tests.
"""
import copy
import enum
import logging
import urllib.parse
from typing import Any, MutableMapping, Optional, Tuple

from pythonjsonlogger.core import RESERVED_ATTRS
from pythonjsonlogger.json import JsonFormatter

from kubefetch._cogs.helpers import typedefs

DEFAULT_JSON_REFKEY = 'request'
""" A key for request references in JSON logs, as seen by the log parsers. """


class LogFormat(enum.Enum):
    """ Log formats, as accepted by :func:`configure`. """
    PLAIN = '%(message)s'
    FULL = '[%(asctime)s] %(name)-20.20s [%(levelname)-8.8s] %(message)s'
    JSON = enum.auto()


class RequestFormatter(logging.Formatter):
    pass


class RequestTextFormatter(RequestFormatter, logging.Formatter):
    pass


class RequestJsonFormatter(RequestFormatter, JsonFormatter):
    def __init__(
            self,
            *args: Any,
            refkey: Optional[str] = None,
            **kwargs: Any,
    ) -> None:
        reserved_attrs = set(kwargs.pop('reserved_attrs', RESERVED_ATTRS))
        reserved_attrs |= {'kf_request'}
        kwargs.update(reserved_attrs=reserved_attrs)
        kwargs.setdefault('timestamp', True)
        super().__init__(*args, **kwargs)
        self._refkey: str = refkey or DEFAULT_JSON_REFKEY

    def add_fields(
            self,
            log_record: MutableMapping[str, Any],
            record: logging.LogRecord,
            message_dict: MutableMapping[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if self._refkey and hasattr(record, 'kf_request'):
            log_record[self._refkey] = getattr(record, 'kf_request')

        if 'severity' not in log_record:
            log_record['severity'] = (
                "debug" if record.levelno <= logging.DEBUG else
                "info" if record.levelno <= logging.INFO else
                "warn" if record.levelno <= logging.WARNING else
                "error" if record.levelno <= logging.ERROR else
                "fatal")


class RequestPrefixingMixin(RequestFormatter):
    def format(self, record: logging.LogRecord) -> str:
        if hasattr(record, 'kf_request'):
            ref = getattr(record, 'kf_request')
            prefix = f"[{ref.get('method', '')} {ref.get('path', '')}]"
            record = copy.copy(record)  # shallow
            record.msg = f"{prefix} {record.msg}"
        return super().format(record)


class RequestPrefixingTextFormatter(RequestPrefixingMixin, RequestTextFormatter):
    pass


class RequestPrefixingJsonFormatter(RequestPrefixingMixin, RequestJsonFormatter):
    pass


class RequestLogger(typedefs.LoggerAdapter):
    """
    A logger/adapter to carry the request identifiers for formatting.

    Constructed for every logical API call, and passed down to all the stages
    of that call: the actual request, the auth retry, the streaming, and
    the channel upgrade -- so that all their messages are grouped together.
    """

    def __init__(self, logger: typedefs.Logger, *, method: str, url: str) -> None:
        base = logger.logger if isinstance(logger, logging.LoggerAdapter) else logger
        super().__init__(base, dict(
            kf_request=dict(
                method=method.upper(),
                url=url,
                path=urllib.parse.urlsplit(url).path,
            ),
        ))

    def process(
            self,
            msg: str,
            kwargs: MutableMapping[str, Any],
    ) -> Tuple[str, MutableMapping[str, Any]]:
        # Native logging overwrites the message's extra with the adapter's extra.
        # We merge them, so that both message's & adapter's extras are available.
        kwargs["extra"] = dict(self.extra or {}, **kwargs.get('extra', {}))
        return msg, kwargs


def configure(
        debug: Optional[bool] = None,
        verbose: Optional[bool] = None,
        quiet: Optional[bool] = None,
        log_format: LogFormat = LogFormat.FULL,
        log_prefix: Optional[bool] = False,
        log_refkey: Optional[str] = None,
) -> None:
    log_level = 'DEBUG' if debug or verbose else 'WARNING' if quiet else 'INFO'
    formatter = make_formatter(log_format=log_format, log_prefix=log_prefix, log_refkey=log_refkey)
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.addHandler(handler)
    logger.setLevel(log_level)

    # Prevent the low-level logging unless in the debug mode. Keep only the library's messages.
    # For no-propagation loggers, add a dummy null handler to prevent printing the messages.
    for name in ['asyncio', 'aiohttp']:
        logger = logging.getLogger(name)
        logger.propagate = bool(debug)
        if not debug:
            logger.handlers[:] = [logging.NullHandler()]


def make_formatter(
        log_format: LogFormat = LogFormat.FULL,
        log_prefix: Optional[bool] = False,
        log_refkey: Optional[str] = None,
) -> RequestFormatter:
    log_prefix = log_prefix if log_prefix is not None else bool(log_format is not LogFormat.JSON)
    if log_format is LogFormat.JSON:
        if log_prefix:
            return RequestPrefixingJsonFormatter(refkey=log_refkey)
        else:
            return RequestJsonFormatter(refkey=log_refkey)
    elif isinstance(log_format, LogFormat):
        if log_prefix:
            return RequestPrefixingTextFormatter(log_format.value)
        else:
            return RequestTextFormatter(log_format.value)
    elif isinstance(log_format, str):
        if log_prefix:
            return RequestPrefixingTextFormatter(log_format)
        else:
            return RequestTextFormatter(log_format)
    else:
        raise ValueError(f"Unsupported log format: {log_format!r}")
