"""
Logging configuration for the sprint report cache.

Every record carries the component and operation that produced it plus
a correlation id, so that one webhook, refresh or optimization pass can
be followed across modules. Structured fields passed to ``CacheLogger``
land under ``fields`` in JSON output.
"""

import logging
import json
import sys
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union
from uuid import uuid4
import traceback
from contextvars import ContextVar
from pathlib import Path


correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED_RECORD_FIELDS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {
    'message', 'asctime', 'correlation_id', 'component', 'operation',
}


class CorrelationFilter(logging.Filter):
    """Stamp records with the current correlation id and default context."""

    def filter(self, record):
        record.correlation_id = correlation_id.get() or '-'
        record.component = getattr(record, 'component', record.name.rsplit('.', 1)[-1])
        record.operation = getattr(record, 'operation', '-')
        return True


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields = {}
    for key, value in record.__dict__.items():
        if key in _RESERVED_RECORD_FIELDS or key.startswith('_'):
            continue
        try:
            json.dumps(value)
            fields[key] = value
        except (TypeError, ValueError):
            fields[key] = str(value)
    return fields


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, include_fields=True):
        super().__init__()
        self.include_fields = include_fields

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', '-'),
            'component': getattr(record, 'component', '-'),
            'operation': getattr(record, 'operation', '-'),
            'source': f"{record.module}:{record.funcName}:{record.lineno}",
        }

        if self.include_fields:
            fields = _extra_fields(record)
            if fields:
                entry['fields'] = fields

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            entry['exception'] = {
                'type': exc_type.__name__,
                'message': str(exc_value),
                'traceback': traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Human-readable console output with the level colored."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
    }
    RESET = '\033[0m'

    DEFAULT_FORMAT = '%(asctime)s %(levelname)-8s %(component)s.%(operation)s: %(message)s'

    def __init__(self, fmt: Optional[str] = None):
        super().__init__(fmt or self.DEFAULT_FORMAT)

    def format(self, record):
        record.__dict__.setdefault('component', record.name.rsplit('.', 1)[-1])
        record.__dict__.setdefault('operation', '-')
        color = self.COLORS.get(record.levelname, '')
        formatted = super().format(record)
        corr = getattr(record, 'correlation_id', '-')
        return f"{color}{formatted}{self.RESET} [{corr[:8]}]"


class CacheLogger:
    """Component logger; keyword arguments become structured fields."""

    def __init__(self, name: str, component: Optional[str] = None, **bound: Any):
        self.logger = logging.getLogger(name)
        self.component = component or name.split('.')[-1]
        self.bound = bound

    def bind(self, **fields: Any) -> 'CacheLogger':
        """A logger that adds ``fields`` to every record."""
        return CacheLogger(self.logger.name, self.component, **{**self.bound, **fields})

    def _log(self, level: int, message: str, operation: Optional[str], exc_info: bool = False, **fields):
        if not self.logger.isEnabledFor(level):
            return
        extra = {**self.bound, **fields, 'component': self.component, 'operation': operation or '-'}
        self.logger.log(level, message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, operation: Optional[str] = None, **fields):
        self._log(logging.DEBUG, message, operation, **fields)

    def info(self, message: str, operation: Optional[str] = None, **fields):
        self._log(logging.INFO, message, operation, **fields)

    def warning(self, message: str, operation: Optional[str] = None, **fields):
        self._log(logging.WARNING, message, operation, **fields)

    def error(self, message: str, operation: Optional[str] = None, **fields):
        self._log(logging.ERROR, message, operation, **fields)

    def exception(self, message: str, operation: Optional[str] = None, **fields):
        """Log at ERROR with the active exception's traceback."""
        self._log(logging.ERROR, message, operation, exc_info=True, **fields)


class LoggingConfig:
    """Root logger setup."""

    PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    # Package loggers and the level they start at; third-party ones are quietened.
    COMPONENT_LEVELS = {
        'src.report_cache': logging.INFO,
        'src.shared': logging.INFO,
        'redis': logging.WARNING,
        'asyncio': logging.WARNING,
    }

    @classmethod
    def setup_logging(
        cls,
        level: Union[str, int] = logging.INFO,
        format_type: str = 'json',
        log_file: Optional[str] = None,
        console_output: bool = True,
        correlation_tracking: bool = True
    ):
        """
        Setup logging configuration.

        Args:
            level: Logging level
            format_type: 'json', 'colored', or 'plain' for the console
            log_file: Optional log file path; files are always JSON
            console_output: Enable console output
            correlation_tracking: Stamp records with the correlation id
        """
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        handlers = []
        if console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(cls._build_formatter(format_type))
            handlers.append(console_handler)

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(JSONFormatter())
            handlers.append(file_handler)

        for handler in handlers:
            handler.setLevel(level)
            if correlation_tracking:
                handler.addFilter(CorrelationFilter())
            root_logger.addHandler(handler)

        for logger_name, logger_level in cls.COMPONENT_LEVELS.items():
            logging.getLogger(logger_name).setLevel(logger_level)

        CacheLogger(__name__, 'logging_config').info(
            "Logging system initialized",
            operation="setup_logging",
            format_type=format_type,
            log_file=log_file,
        )

    @classmethod
    def _build_formatter(cls, format_type: str) -> logging.Formatter:
        if format_type == 'json':
            return JSONFormatter()
        if format_type == 'colored':
            return ColoredFormatter()
        return logging.Formatter(cls.PLAIN_FORMAT)


class CorrelationContext:
    """
    Scope a correlation id over a block of work.

    With ``inherit=True`` an id already set by an enclosing scope is kept,
    so nested scopes (a webhook that triggers invalidation that triggers a
    warm) log under one id.
    """

    def __init__(self, correlation_id_value: Optional[str] = None, inherit: bool = False):
        current = correlation_id.get()
        if inherit and current and correlation_id_value is None:
            self.correlation_id_value = current
        else:
            self.correlation_id_value = correlation_id_value or str(uuid4())
        self._token = None

    def __enter__(self):
        self._token = correlation_id.set(self.correlation_id_value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            correlation_id.reset(self._token)
            self._token = None

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.__exit__(exc_type, exc_val, exc_tb)


def get_logger(name: str, component: Optional[str] = None) -> CacheLogger:
    """Get a component logger instance."""
    return CacheLogger(name, component)


def get_correlation_id() -> Optional[str]:
    return correlation_id.get()


def initialize_logging():
    """Initialize logging from environment-driven settings."""
    from .config import get_settings

    settings = get_settings()
    monitoring = settings.monitoring

    if settings.is_production():
        LoggingConfig.setup_logging(
            level=monitoring.log_level.value,
            format_type='json',
            log_file=monitoring.log_file or 'logs/report-cache.log',
        )
    else:
        LoggingConfig.setup_logging(
            level=monitoring.log_level.value,
            format_type=monitoring.log_format,
            log_file=monitoring.log_file,
        )


# Auto-initialize if not in test environment
if not os.getenv('TESTING'):
    initialize_logging()
