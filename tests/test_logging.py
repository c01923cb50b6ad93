import logging

from mediamirror.db.database import get_db_session
from mediamirror.db.models import SyncLog
from mediamirror.utils.logging import DatabaseLogHandler, SyncLogger


def _record(message, level=logging.INFO):
    return logging.LogRecord("test", level, __file__, 1, message, None, None)


def test_database_handler_keeps_newest_rows():
    handler = DatabaseLogHandler(max_logs=3)
    handler.setFormatter(logging.Formatter("%(message)s"))

    for i in range(5):
        handler.emit(_record(f"message {i}"))

    with get_db_session() as session:
        messages = [log.message for log in session.query(SyncLog).order_by(SyncLog.id)]

    assert messages == ["message 2", "message 3", "message 4"]


def test_database_handler_reads_bound_run_id():
    handler = DatabaseLogHandler()
    handler.setFormatter(logging.Formatter("%(levelname)s"))

    record = _record({"event": "Synced collection", "sync_run_id": "abc123"}, logging.WARNING)
    handler.emit(record)

    with get_db_session() as session:
        log = session.query(SyncLog).one()
        assert log.level == "WARNING"
        assert log.sync_run_id == "abc123"


def test_sync_logger_unbinds_run_id(mocker):
    sync_logger = SyncLogger("run42")
    mock_info = mocker.patch.object(sync_logger.logger, "info")
    unbind = mocker.patch("structlog.contextvars.unbind_contextvars")
    bind = mocker.patch("structlog.contextvars.bind_contextvars")

    sync_logger.info("Starting sync run", dry_run=True)

    mock_info.assert_called_once_with("Starting sync run", dry_run=True)
    bind.assert_called_once_with(sync_run_id="run42")
    unbind.assert_called_once_with("sync_run_id")
