"""
JSON logging for indexer runs.

Every record emitted while a run is in flight carries that run's id, so
the interleaved output of concurrent worker slots can be split back into
runs. Coordinator and slot loggers also stamp ``domain``, ``pid`` and
``worker_id`` onto each record.
"""

import json
import logging
import logging.handlers
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

# Id of the run (or admin request) the current task belongs to
current_run_id: ContextVar[Optional[str]] = ContextVar('current_run_id', default=None)

INDEXER_FIELDS = ('domain', 'pid', 'worker_id')

_RECORD_ATTRIBUTES = set(vars(logging.makeLogRecord({}))) | {'message', 'run_id', 'taskName'}

_NOISY_LOGGERS = ('aiohttp.access', 'apscheduler', 'asyncio', 'sqlalchemy.engine', 'sqlalchemy.pool', 'watchdog')

MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5


@dataclass(frozen=True)
class LogContext:
    """Fields stamped onto every record of a ContextualLogger."""
    domain: Optional[str] = None
    pid: Optional[int] = None
    worker_id: Optional[int] = None
    fields: Dict[str, Any] = field(default_factory=dict)

    def as_extra(self) -> Dict[str, Any]:
        extra = {name: getattr(self, name) for name in INDEXER_FIELDS if getattr(self, name) is not None}
        extra.update(self.fields)
        return extra


class RunIdFilter(logging.Filter):
    """Copies the current run id onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = current_run_id.get() or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record.

    Indexer fields are promoted to top-level keys; any other ``extra``
    values land under ``"extra"``, stringified when not JSON-serializable.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": getattr(record, 'run_id', '-'),
        }

        extra: Dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRIBUTES:
                continue
            if key in INDEXER_FIELDS:
                entry[key] = value
                continue
            try:
                json.dumps(value)
                extra[key] = value
            except (TypeError, ValueError):
                extra[key] = str(value)
        if extra:
            entry["extra"] = extra

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str, ensure_ascii=False)


class ContextualLogger:
    """
    Logger wrapper that stamps records with a fixed LogContext.

    Keyword arguments to the log methods become extra fields:
    ``logger.info("Batch done", events=3)``.
    """

    def __init__(self, name: str, context: Optional[LogContext] = None):
        self.logger = logging.getLogger(name)
        self.context = context or LogContext()

    def _log(self, level: int, message: str, exc_info: Any = None, **fields) -> None:
        if not self.logger.isEnabledFor(level):
            return
        extra = self.context.as_extra()
        extra.update(fields)
        self.logger.log(level, message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, **fields) -> None:
        self._log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields) -> None:
        self._log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields) -> None:
        self._log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields) -> None:
        self._log(logging.ERROR, message, **fields)

    def exception(self, message: str, **fields) -> None:
        self._log(logging.ERROR, message, exc_info=True, **fields)

    def bind(self, **fields) -> 'ContextualLogger':
        """Logger with extra fixed fields; indexer fields replace the current ones."""
        indexer_fields = {name: fields.pop(name) for name in INDEXER_FIELDS if name in fields}
        context = replace(self.context, fields={**self.context.fields, **fields}, **indexer_fields)
        return ContextualLogger(self.logger.name, context)


@contextmanager
def run_scope(run_id: Optional[str] = None) -> Iterator[str]:
    """Tag every record logged inside the block (and tasks it spawns) with a run id."""
    run_id = run_id or uuid.uuid4().hex[:12]
    token = current_run_id.set(run_id)
    try:
        yield run_id
    finally:
        current_run_id.reset(token)


def setup_logging(logging_config, stream=None) -> None:
    """
    Install root handlers from a LoggingConfig.

    Replaces handlers installed by an earlier call, so reloading the
    configuration does not duplicate output.
    """
    if logging_config.structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - [%(run_id)s] %(message)s')

    handlers = [logging.StreamHandler(stream or sys.stdout)]
    if logging_config.file:
        log_path = Path(logging_config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding='utf-8'
        ))

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(RunIdFilter())
        root_logger.addHandler(handler)
    root_logger.setLevel(logging_config.level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(
        "Logging configured", extra={"log_file": logging_config.file, "structured": logging_config.structured}
    )
