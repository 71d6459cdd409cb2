import os
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

_engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(db_path: str):
    global _engine, SessionLocal
    os.makedirs(os.path.dirname(db_path), exist_ok=True)
    _engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    event.listen(_engine, "connect", _enable_sqlite_foreign_keys)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    return _engine, SessionLocal


def get_session() -> Generator[Session, None, None]:
    if SessionLocal is None:
        raise RuntimeError("Database session factory is not initialized")
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def dispose_engine() -> None:
    """Dispose the active SQLAlchemy engine and clear the session factory.

    SQLite holds file handles open until the engine is disposed, which keeps
    the database file locked on Windows. Disposing explicitly makes the next
    :func:`init_db` call start from a fresh connection pool.
    """

    global _engine, SessionLocal

    if _engine is not None:
        _engine.dispose()
        _engine = None

    SessionLocal = None
