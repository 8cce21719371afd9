from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from ..config import get_settings

settings = get_settings()


def configure_sqlite_locking(engine: Engine) -> Engine:
    """Make every SQLite transaction take the write lock up front.

    pysqlite defers ``BEGIN`` until the first write, so two writers can both
    read a seat count before either inserts. ``BEGIN IMMEDIATE`` serialises
    them, which is what the row locks give us on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_engine(url: str, **kwargs) -> Engine:
    engine = create_engine(url, future=True, echo=False, **kwargs)
    if engine.dialect.name == "sqlite":
        configure_sqlite_locking(engine)
    return engine


engine = build_engine(settings.sqlalchemy_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
Base = declarative_base()


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def atomic(db: Session):
    """Open a transaction, or a savepoint if one is already in progress."""
    return db.begin_nested() if db.in_transaction() else db.begin()


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; they were written as UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
