"""
Persisted system logs: handler, retention cleanup, listing
"""

import logging
from datetime import timedelta

from models import SystemLog, utcnow
from system_logs import SystemLogHandler, cleanup_old_system_logs, recent_system_logs


def _logger_with_handler(db_manager, name="dispatch"):
    log = logging.getLogger(f"test.{name}")
    log.setLevel(logging.DEBUG)
    log.propagate = False
    handler = SystemLogHandler(db_manager.get_session)
    log.addHandler(handler)
    return log, handler


def test_handler_persists_warnings_and_above(db_manager, session):
    log, handler = _logger_with_handler(db_manager)
    try:
        log.info("just info")
        log.warning("Redis unavailable")
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            log.exception("rotation failed")
    finally:
        log.removeHandler(handler)

    rows = session.query(SystemLog).order_by(SystemLog.id).all()
    assert [(r.level, r.message) for r in rows] == [("warning", "Redis unavailable"), ("error", "rotation failed")]
    assert rows[0].component == "test.dispatch"
    assert "RuntimeError: boom" in rows[1].details


def test_handler_ignores_sqlalchemy_records(db_manager, session):
    handler = SystemLogHandler(db_manager.get_session)
    record = logging.LogRecord("sqlalchemy.engine", logging.WARNING, __file__, 1, "noisy", None, None)
    handler.emit(record)
    assert session.query(SystemLog).count() == 0


def test_cleanup_deletes_only_old_rows(session):
    session.add_all([
        SystemLog(level="error", message="old", time=utcnow() - timedelta(hours=30)),
        SystemLog(level="error", message="new", time=utcnow() - timedelta(hours=1)),
    ])
    session.commit()

    result = cleanup_old_system_logs(session, retention_hours=24)

    assert result.success is True
    assert result.deleted_count == 1
    assert [log.message for log in session.query(SystemLog).all()] == ["new"]


def test_cleanup_with_nothing_to_delete(session):
    result = cleanup_old_system_logs(session)
    assert result.success is True
    assert result.deleted_count == 0
    assert result.message == "No old logs found to delete"


def test_recent_logs_newest_first_and_filtered(session):
    now = utcnow()
    session.add_all([
        SystemLog(level="warning", message="first", time=now - timedelta(minutes=2)),
        SystemLog(level="error", message="second", time=now - timedelta(minutes=1)),
        SystemLog(level="error", message="third", time=now),
    ])
    session.commit()

    assert [log.message for log in recent_system_logs(session, limit=2)] == ["third", "second"]
    assert [log.message for log in recent_system_logs(session, level="WARNING")] == ["first"]
    assert recent_system_logs(session)[0].to_dict()["level"] == "error"
