import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from circulation.config import settings
from circulation.errors import StorageError
from circulation.models import Base

logger = logging.getLogger(__name__)


def make_engine(database_url: Optional[str] = None) -> Engine:
    database_url = database_url or settings.database_url
    url = make_url(database_url)
    is_sqlite = url.drivername.startswith("sqlite")

    # SQLite file databases need their directory to exist
    if is_sqlite and url.database and url.database != ":memory:":
        db_dir = os.path.dirname(url.database)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    engine = create_engine(
        database_url,
        connect_args=(
            {"check_same_thread": False, "timeout": settings.sqlite_busy_timeout}
            if is_sqlite
            else {}
        ),
    )
    if is_sqlite:
        _serialize_sqlite_writers(engine)
    return engine


def _serialize_sqlite_writers(engine: Engine) -> None:
    # pysqlite's own BEGIN handling is disabled so every transaction opens with
    # BEGIN IMMEDIATE: writers queue on the busy timeout instead of failing
    # with "database is locked" when a read lock is upgraded mid-transaction.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


engine = make_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or roll all of it back.

    Integrity violations are re-raised untouched so callers can turn them into
    domain errors; any other driver failure becomes ``StorageError``.
    """
    try:
        yield db
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    except DBAPIError as e:
        db.rollback()
        logger.error("[DB] storage failure: %r", e)
        raise StorageError(str(e.orig) if e.orig is not None else str(e)) from e
    except Exception:
        db.rollback()
        raise
