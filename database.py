"""
Relational storage for orders, offers, wallets and users

- Engine construction per backend (PostgreSQL pool, SQLite file, SQLite in-memory)
- Table creation from models.Base
- Sessions: plain, and a commit-or-rollback scope for CLI/cron jobs
- Health check with latency, shaped like the Redis one

**PRODUCTION:** point DATABASE_URL at PostgreSQL; the SQLite paths exist
for local runs and the test suite.
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

logger = logging.getLogger(__name__)


def _redact(db_url: str) -> str:
    """Drop user:password from the URL before logging it"""
    scheme, sep, rest = db_url.partition("://")
    return f"{scheme}{sep}{rest.split('@')[-1]}"


def _is_memory_sqlite(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///") or ":memory:" in db_url


def build_engine(db_url: str, echo: bool = False) -> Engine:
    if _is_memory_sqlite(db_url):
        # One shared connection, otherwise each session would see an empty database
        return create_engine(
            db_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=echo,
        )

    if db_url.startswith("sqlite"):
        return create_engine(db_url, connect_args={"check_same_thread": False}, echo=echo)

    return create_engine(
        db_url,
        poolclass=QueuePool,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        echo=echo,
    )


class DatabaseManager:
    """Owns the engine and hands out sessions"""

    def __init__(self, db_url: str, echo: bool = False):
        """
        Args:
            db_url: SQLAlchemy URL, e.g. postgresql://plas:***@db/plas or sqlite:///:memory:
            echo: Log every SQL statement
        """
        self.db_url = db_url
        self.engine = build_engine(db_url, echo=echo)
        # Objects stay usable after commit; request handlers serialize them afterwards
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"Database engine ready for {_redact(db_url)}")

    def init_db(self) -> None:
        """Create missing tables. Existing tables are left untouched."""
        from models import Base

        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            logger.error(f"✗ Could not create tables: {e}")
            raise

        tables = sorted(inspect(self.engine).get_table_names())
        logger.info(f"✓ Schema ready ({len(tables)} tables)")

    def drop_all(self) -> None:
        from models import Base

        Base.metadata.drop_all(self.engine)
        logger.warning("Dropped all tables")

    def get_session(self) -> Session:
        return self.SessionLocal()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """
        Commit on success, roll back and re-raise on error, always close.

        Usage:
            with db_manager.session_scope() as session:
                cleanup_old_system_logs(session)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("Transaction rolled back")
            raise
        finally:
            session.close()

    def health(self) -> Dict[str, Any]:
        """{"connected": True, "latency": ms} or {"connected": False, "error": msg}"""
        start = time.perf_counter()
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error(f"✗ Database unreachable: {e}")
            return {"connected": False, "error": str(e)}
        return {"connected": True, "latency": round((time.perf_counter() - start) * 1000, 2)}

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Database engine disposed")

