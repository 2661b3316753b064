"""Logging setup for the coordinator and its execution contexts.

Every extraction call runs inside a ``CorrelationContext`` so that the log
lines of detection, cropping and recognition for one image share an id.
Records also carry the name of the process that produced them, which tells
coordinator lines apart from lines written by spawned contexts.
"""
import json
import logging
import logging.handlers
import multiprocessing
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Union

correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

NO_CORRELATION_ID = '-'
HUMAN_FORMAT = '%(asctime)s [%(process_role)s] %(name)s %(levelname)s %(correlation_id)s: %(message)s'

# LogRecord attributes that are not user-supplied extras
_RECORD_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {
    'message', 'asctime', 'correlation_id', 'process_role',
}


def _process_role() -> str:
    return 'coordinator' if multiprocessing.parent_process() is None else multiprocessing.current_process().name


class ContextFilter(logging.Filter):
    """Stamps records with the active correlation id and the process role."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get() or NO_CORRELATION_ID
        record.process_role = _process_role()
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', NO_CORRELATION_ID),
            'process': getattr(record, 'process_role', record.processName),
            'pid': record.process,
            'thread': record.threadName,
        }
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        extras = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
        if extras:
            entry['extra'] = extras
        return json.dumps(entry, default=str)


class LoggingManager:
    """Owns the root handlers installed by ``configure``."""

    def __init__(self):
        self._handlers: Dict[str, logging.Handler] = {}
        self._log_dir: Optional[Path] = None

    @property
    def is_configured(self) -> bool:
        return bool(self._handlers)

    def _install(self, key: str, handler: logging.Handler, level: int, structured: bool) -> None:
        handler.setLevel(level)
        handler.setFormatter(StructuredFormatter() if structured else logging.Formatter(HUMAN_FORMAT))
        handler.addFilter(ContextFilter())
        logging.getLogger().addHandler(handler)
        self._handlers[key] = handler

    def configure(
        self,
        log_level: str = 'INFO',
        log_dir: Optional[Union[str, Path]] = None,
        enable_file_logging: bool = False,
        enable_console_logging: bool = True,
        structured_logging: bool = False,
        max_file_size: int = 10 * 1024 * 1024,
        backup_count: int = 5,
        application_name: str = 'camtext'
    ) -> None:
        """Install console and rotating file handlers on the root logger.

        Args:
            log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
            log_dir: Directory for log files
            enable_file_logging: Write ``<name>.log`` and ``<name>-errors.log``
            enable_console_logging: Write to stdout
            structured_logging: JSON lines instead of the human-readable format
            max_file_size: Rotation size in bytes
            backup_count: Rotated files to keep
            application_name: Base name of the log files
        """
        if self.is_configured:
            return
        level = getattr(logging, str(log_level).upper(), logging.INFO)
        root = logging.getLogger()
        root.setLevel(level)
        root.handlers.clear()

        if enable_console_logging:
            self._install('console', logging.StreamHandler(sys.stdout), level, structured_logging)

        if enable_file_logging:
            self._log_dir = Path(log_dir or 'logs')
            self._log_dir.mkdir(parents=True, exist_ok=True)
            for key, suffix, handler_level in (('application', '', level), ('errors', '-errors', logging.ERROR)):
                handler = logging.handlers.RotatingFileHandler(
                    self._log_dir / f'{application_name}{suffix}.log',
                    maxBytes=max_file_size,
                    backupCount=backup_count,
                    encoding='utf-8',
                )
                self._install(key, handler, handler_level, structured_logging)

        logging.getLogger('torch').setLevel(logging.WARNING)
        logging.getLogger('camtext').setLevel(level)
        logging.getLogger(__name__).debug(
            f"Logging configured: level={log_level}, file={enable_file_logging}, structured={structured_logging}"
        )

    def get_logger(self, name: str) -> logging.Logger:
        return logging.getLogger(name)

    def set_correlation_id(self, corr_id: Optional[str] = None) -> str:
        corr_id = corr_id or uuid.uuid4().hex[:12]
        correlation_id.set(corr_id)
        return corr_id

    def get_correlation_id(self) -> Optional[str]:
        return correlation_id.get()

    def clear_correlation_id(self) -> None:
        correlation_id.set(None)

    def shutdown(self) -> None:
        root = logging.getLogger()
        for handler in self._handlers.values():
            root.removeHandler(handler)
            handler.close()
        self._handlers.clear()


logging_manager = LoggingManager()


def configure_logging(**kwargs) -> None:
    logging_manager.configure(**kwargs)


def configure_from_config(config) -> None:
    """Configure logging from a ``Config``."""
    logging_manager.configure(
        log_level=config.log_level,
        log_dir=config.log_dir,
        enable_file_logging=config.enable_file_logging,
        structured_logging=config.structured_logging,
    )


def configure_context_logging(log_level: str = 'INFO', structured: bool = False) -> bool:
    """Console logging for a spawned context process, which starts with none.

    Returns:
        True if handlers were installed; False in the coordinator process,
        whose logging is left alone.
    """
    if multiprocessing.parent_process() is None:
        return False
    logging_manager.configure(log_level=log_level, structured_logging=structured)
    return True


def get_logger(name: str) -> logging.Logger:
    return logging_manager.get_logger(name)


def set_correlation_id(corr_id: Optional[str] = None) -> str:
    return logging_manager.set_correlation_id(corr_id)


def get_correlation_id() -> Optional[str]:
    return logging_manager.get_correlation_id()


class CorrelationContext:
    """Scope a correlation id to a block; the previous id is restored on exit."""

    def __init__(self, corr_id: Optional[str] = None):
        self.corr_id = corr_id
        self._token = None

    def __enter__(self) -> str:
        self.corr_id = self.corr_id or uuid.uuid4().hex[:12]
        self._token = correlation_id.set(self.corr_id)
        return self.corr_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        correlation_id.reset(self._token)
