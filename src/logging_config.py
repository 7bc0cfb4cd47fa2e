"""Structured logging: console for humans, JSON files for Loki/Promtail."""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from pythonjsonlogger import jsonlogger

from src.config import settings

# Fields attached through get_logger(..., listing_id=...) that every JSON line should keep
CONTEXT_FIELDS = ("listing_id", "run_date", "trigger", "reduction_type", "tier")

# Loggers whose records also go to reductions.log (audit trail of price changes)
AUDIT_LOGGERS = ("src.worker.reducer", "src.worker.run_guard")

NOISY_LOGGERS = {
    "apscheduler": logging.WARNING,  # logs every job execution at INFO
    "httpx": logging.WARNING,  # one line per marketplace request
    "httpcore": logging.WARNING,
}


class ReductionJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding service metadata and reduction context."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['service'] = "pricedrop"
        log_record['source'] = f"{record.filename}:{record.lineno}"

        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_record[key] = str(value)


class _AuditFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.name.startswith(AUDIT_LOGGERS)


def _file_handler(path: Path, level: int, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(base_dir: str | Path | None = None) -> logging.Logger:
    """Configure root logging.

    Writes three files under ``<base_dir>/logs``: ``app.log`` (everything,
    JSON), ``error.log`` (errors only) and ``reductions.log`` (scheduler and
    dedup guard records, i.e. every price decision).

    Args:
        base_dir: Directory holding logs/. Defaults to the working directory.
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-7s [%(name)s] %(message)s")
    )
    root_logger.addHandler(console_handler)

    json_formatter = ReductionJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    root_logger.addHandler(_file_handler(logs_dir / "app.log", logging.DEBUG, json_formatter))
    root_logger.addHandler(_file_handler(logs_dir / "error.log", logging.ERROR, json_formatter))

    audit_handler = _file_handler(logs_dir / "reductions.log", logging.INFO, json_formatter)
    audit_handler.addFilter(_AuditFilter())
    root_logger.addHandler(audit_handler)

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
    if not settings.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root_logger


class ContextLogger(logging.LoggerAdapter):
    """Adapter that merges its bound context into each record's ``extra``."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> ContextLogger:
    """
    Get a logger bound to reduction context.

    Args:
        name: Logger name (usually __name__)
        **context: Fields such as listing_id=42 or run_date='2026-03-10'

    Returns:
        ContextLogger carrying the context on every record
    """
    return ContextLogger(logging.getLogger(name), context)
