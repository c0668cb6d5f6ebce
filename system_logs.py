"""
Persistent system logs

- SystemLogHandler: logging.Handler that stores WARNING+ records in system_logs
- cleanup_old_system_logs: retention sweep (default 24 hours)
- recent_system_logs: newest-first listing for the admin views
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from models import SystemLog, utcnow

logger = logging.getLogger(__name__)

# Records from these loggers are never persisted (they would recurse into the DB)
_IGNORED_LOGGER_PREFIXES = ("sqlalchemy", __name__)


@dataclass
class CleanupResult:
    """Outcome of a retention sweep"""
    success: bool
    deleted_count: int
    message: str = ""
    error: Optional[str] = None


class SystemLogHandler(logging.Handler):
    """Write log records to the system_logs table"""

    def __init__(self, session_factory, level: int = logging.WARNING):
        """
        Args:
            session_factory: Callable returning a new SQLAlchemy session
            level: Minimum level to persist
        """
        super().__init__(level=level)
        self.session_factory = session_factory

    def emit(self, record: logging.LogRecord) -> None:
        if record.name.startswith(_IGNORED_LOGGER_PREFIXES):
            return

        details = None
        if record.exc_info:
            details = logging.Formatter().formatException(record.exc_info)

        session = self.session_factory()
        try:
            session.add(SystemLog(
                level=record.levelname.lower(),
                component=record.name,
                message=record.getMessage(),
                details=details,
            ))
            session.commit()
        except Exception:
            session.rollback()
            self.handleError(record)
        finally:
            session.close()


def cleanup_old_system_logs(session: Session, retention_hours: int = 24) -> CleanupResult:
    """
    Delete system logs older than the retention window.

    Args:
        session: SQLAlchemy session
        retention_hours: Age after which a log row is removed

    Returns:
        CleanupResult with the number of deleted rows
    """
    cutoff = utcnow() - timedelta(hours=retention_hours)
    try:
        old_logs = session.query(SystemLog).filter(SystemLog.time < cutoff)

        if old_logs.count() == 0:
            return CleanupResult(
                success=True,
                deleted_count=0,
                message="No old logs found to delete",
            )

        deleted = old_logs.delete(synchronize_session=False)
        session.commit()

        logger.info(f"✓ Deleted {deleted} system logs older than {retention_hours} hours")
        return CleanupResult(
            success=True,
            deleted_count=deleted,
            message=f"Successfully deleted {deleted} logs older than {retention_hours} hours",
        )

    except Exception as e:
        session.rollback()
        logger.error(f"✗ Failed to cleanup old system logs: {e}")
        return CleanupResult(success=False, deleted_count=0, error=str(e))


def recent_system_logs(session: Session, limit: int = 100, level: Optional[str] = None) -> List[SystemLog]:
    query = session.query(SystemLog)
    if level:
        query = query.filter(SystemLog.level == level.lower())
    return query.order_by(SystemLog.time.desc(), SystemLog.id.desc()).limit(limit).all()
