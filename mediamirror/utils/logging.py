"""
Logging configuration for mediamirror.
Provides both console logging and database logging.
"""

import logging
import sys
import os
from typing import Optional, Any
import structlog
from structlog.types import Processor

from mediamirror.db.models import SyncLog
from mediamirror.db.database import get_db_session


def get_log_level() -> str:
    """Get log level from environment."""
    return os.getenv("LOG_LEVEL", "INFO").upper()


def setup_logging() -> None:
    """Configure structured logging for the application."""

    # Shared processors for both console and structlog
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, get_log_level(), logging.INFO))

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("waitress").setLevel(logging.WARNING)


class DatabaseLogHandler(logging.Handler):
    """
    Log handler that writes records to the sync_log table.
    Backs the /api/logs endpoint.
    """

    def __init__(self, max_logs: int = 1000):
        super().__init__()
        self.max_logs = max_logs

    def emit(self, record: logging.LogRecord) -> None:
        """Write log record to database."""
        try:
            sync_run_id = getattr(record, "sync_run_id", None)
            if sync_run_id is None and isinstance(record.msg, dict):
                sync_run_id = record.msg.get("sync_run_id")

            with get_db_session() as session:
                log_entry = SyncLog(
                    level=record.levelname,
                    message=self.format(record),
                    details=getattr(record, "details", None),
                    sync_run_id=sync_run_id,
                )
                session.add(log_entry)

                count = session.query(SyncLog).count()
                if count > self.max_logs:
                    oldest = session.query(SyncLog)\
                        .order_by(SyncLog.created_at.asc(), SyncLog.id.asc())\
                        .limit(count - self.max_logs)\
                        .all()
                    for log in oldest:
                        session.delete(log)

        except Exception:
            # Logging must never take the service down
            self.handleError(record)


_db_handler: Optional[DatabaseLogHandler] = None


def init_db_logging(level: int = logging.INFO) -> DatabaseLogHandler:
    """Attach the database log handler to the root logger once."""
    global _db_handler
    if _db_handler is None:
        _db_handler = DatabaseLogHandler()
        _db_handler.setLevel(level)
        _db_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.getLogger().addHandler(_db_handler)
    return _db_handler


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance."""
    return structlog.get_logger(name)


class SyncLogger:
    """
    Logger for sync runs.
    Binds the run id so console and database records can be grouped by run.
    """

    def __init__(self, sync_run_id: Optional[str] = None):
        self.logger = get_logger("sync")
        self.sync_run_id = sync_run_id

    def _log(self, level: str, message: str, **kwargs: Any) -> None:
        log_method = getattr(self.logger, level.lower())

        if self.sync_run_id:
            structlog.contextvars.bind_contextvars(sync_run_id=self.sync_run_id)

        try:
            log_method(message, **kwargs)
        finally:
            structlog.contextvars.unbind_contextvars("sync_run_id")

    def info(self, message: str, **kwargs: Any) -> None:
        self._log("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log("ERROR", message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log("DEBUG", message, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log an exception with traceback."""
        self._log("ERROR", message, exc_info=True, **kwargs)


# Initialize console logging on module import
setup_logging()
