# Logging configuration - rotating gateway log, console mirror, error alerting
# and masking of the gateway secret wherever it would end up in a record

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Optional, Set

LOG_FILE = Path('data') / 'logs' / 'edge_gateway.log'
LOG_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
LOG_BACKUP_COUNT = 5
LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'

_error_alert_callback: Optional[Callable[[str, str], None]] = None
_redacted_values: Set[str] = set()


def set_error_alert_callback(callback: Optional[Callable[[str, str], None]]):
    """Set a callback(message, level) invoked for ERROR and CRITICAL records."""
    global _error_alert_callback
    _error_alert_callback = callback


def redact_value(value: str):
    """Register a secret that must never appear verbatim in log output."""
    if value:
        _redacted_values.add(value)


class ErrorAlertHandler(logging.Handler):
    """Handler that invokes the alert callback on ERROR and CRITICAL."""

    def emit(self, record: logging.LogRecord):
        if record.levelno >= logging.ERROR and _error_alert_callback:
            try:
                _error_alert_callback(self.format(record), record.levelname)
            except Exception:
                self.handleError(record)


class SecretRedactingFilter(logging.Filter):
    """Replaces registered secrets in the rendered message with ***."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not _redacted_values:
            return True
        message = record.getMessage()
        masked = message
        for secret in _redacted_values:
            masked = masked.replace(secret, '***')
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(
    log_path: Optional[Path] = None,
    max_bytes: int = LOG_MAX_BYTES,
    backup_count: int = LOG_BACKUP_COUNT,
    console: bool = True,
    level=logging.INFO,
) -> None:
    """
    Configure gateway logging: rotating file, optional stderr, error alerting.
    Safe to call more than once; earlier root handlers are replaced.
    """
    log_path = Path(log_path or LOG_FILE)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')
    redactor = SecretRedactingFilter()

    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8',
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(redactor)
    root.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        console_handler.addFilter(redactor)
        root.addHandler(console_handler)

    alert_handler = ErrorAlertHandler()
    alert_handler.setLevel(logging.ERROR)
    alert_handler.setFormatter(formatter)
    alert_handler.addFilter(redactor)
    root.addHandler(alert_handler)

    # requests/urllib3 log every pooled connection at DEBUG
    logging.getLogger('urllib3').setLevel(max(level, logging.INFO))
