"""Structured logging for cameraunit.

Log calls take the message plus keyword arguments; the keywords travel on
the record as ``structured_data`` and are rendered after the message
(text) or as top-level fields (JSON):

    logger = get_logger(__name__)
    logger.info("Exposure started", camera="ASI2600MM", duration_s=1.5)
    # ... - INFO - Exposure started | camera=ASI2600MM duration_s=1.5

Device names and other values reported by hardware belong in keywords,
not in an f-string message, so they never change the message text.

LogContext attaches fields to every record logged inside a ``with`` block:

    with LogContext(camera_id=0, sequence="flats"):
        logger.info("Capture started")  # carries camera_id and sequence

Everything logs under the ``cameraunit`` logger, which has its own handler
and does not propagate. get_logger() installs the default handler (INFO,
text, stderr) on first use; configure_logging(force=True) replaces it.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import IO, Any, cast

ROOT_LOGGER_NAME = "cameraunit"

_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_fields: contextvars.ContextVar[Mapping[str, Any]] = contextvars.ContextVar(
    "cameraunit_log_fields", default={}
)


class StructuredLogger(logging.Logger):
    """Logger that turns extra keyword arguments into structured fields.

    exc_info, stack_info, stacklevel and extra keep their logging meaning;
    any other keyword becomes a field. Call-site fields win over LogContext
    fields of the same name. Records are attributed to the caller of the
    level method, not to this class.
    """

    def _log(  # type: ignore[override]
        self,
        level: int,
        msg: object,
        args: Any,
        exc_info: Any = None,
        extra: Mapping[str, object] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **fields: Any,
    ) -> None:
        merged_extra = dict(extra or {})
        merged_extra["structured_data"] = {**_fields.get(), **fields}
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=merged_extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


def _render(value: Any) -> str:
    """One value of a key=value pair.

    >>> _render("ASI 533MM")
    '"ASI 533MM"'
    >>> _render(None)
    'null'
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        return f'"{value}"' if " " in value else value
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return str(value)


class StructuredFormatter(logging.Formatter):
    """Text lines: ``<time> - <logger> - <LEVEL> - <message> | k=v k=v``."""

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        include_structured: bool = True,
    ) -> None:
        super().__init__(fmt or _TEXT_FORMAT, datefmt)
        self.include_structured = include_structured

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "structured_data", None)
        if not (self.include_structured and fields):
            return line
        return line + " | " + " ".join(f"{k}={_render(v)}" for k, v in fields.items())


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    Fixed keys are timestamp (UTC ISO 8601), level, logger and message,
    plus exception when exc_info is set. Structured fields are merged in at
    the top level; values json cannot encode are written with str().
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **getattr(record, "structured_data", {}),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class LogContext:
    """Attach fields to every record logged inside a ``with`` block.

    Contexts nest, the inner one merging over the outer. The fields live in
    a context variable, so each thread and asyncio task sees its own.
    """

    def __init__(self, **fields: Any) -> None:
        self._fields = fields
        self._token: contextvars.Token[Mapping[str, Any]] | None = None

    def __repr__(self) -> str:
        return f"LogContext({self._fields!r})"

    def __enter__(self) -> LogContext:
        self._token = _fields.set({**_fields.get(), **self._fields})
        return self

    def __exit__(self, *exc: object) -> None:
        if self._token is not None:
            _fields.reset(self._token)
            self._token = None


# Handler installed by configure_logging(); None while unconfigured
_handler: logging.Handler | None = None
_lock = threading.Lock()


def _install(
    level: int | str,
    json_format: bool,
    stream: IO[str] | None,
    include_structured: bool,
) -> None:
    global _handler

    logging.setLoggerClass(StructuredLogger)
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(
        JSONFormatter()
        if json_format
        else StructuredFormatter(include_structured=include_structured)
    )
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    root.addHandler(handler)
    root.propagate = False
    _handler = handler


def _uninstall() -> None:
    global _handler

    if _handler is not None:
        logging.getLogger(ROOT_LOGGER_NAME).removeHandler(_handler)
        _handler.close()
        _handler = None


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: IO[str] | None = None,
    include_structured: bool = True,
    force: bool = False,
) -> None:
    """Install the cameraunit log handler.

    A second call is a no-op unless ``force`` is set, in which case the
    current handler is replaced.

    Args:
        level: Minimum level, as a number or a name such as "DEBUG".
        json_format: Write JSON lines instead of text.
        stream: Destination, sys.stderr by default.
        include_structured: In text mode, append the key=value fields.
        force: Replace an existing configuration.
    """
    with _lock:
        if force:
            _uninstall()
        if _handler is None:
            _install(level, json_format, stream, include_structured)


def reset_logging() -> None:
    """Remove the cameraunit handler so the next configure starts fresh."""
    with _lock:
        _uninstall()


def get_logger(name: str) -> StructuredLogger:
    """StructuredLogger for a module, configuring defaults on first use."""
    if _handler is None:
        with _lock:
            if _handler is None:  # pragma: no branch
                _install(logging.INFO, False, None, True)
    return cast(StructuredLogger, logging.getLogger(name))
