from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import get_settings
from .errors import ConstraintViolation

Base = declarative_base()


def create_db_engine(url: str):
    """
    Engine for the ledger store.

    SQLite: every transaction opens with BEGIN IMMEDIATE, so check-then-update
    sequences run write-serialised across connections.
    PostgreSQL: row lock waits are bounded by lock_timeout.
    """
    settings = get_settings()

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={
                "check_same_thread": False,
                "timeout": settings.SQLITE_BUSY_TIMEOUT_SECONDS,
            },
        )

        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            # pysqlite emits its own BEGIN lazily; take that over
            dbapi_connection.isolation_level = None
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    engine = create_engine(url, pool_pre_ping=True)

    if engine.dialect.name == "postgresql":
        @event.listens_for(engine, "begin")
        def _pg_begin(conn):
            conn.exec_driver_sql(f"SET LOCAL lock_timeout = {int(settings.DB_LOCK_TIMEOUT_MS)}")

    return engine


def make_session_factory(bind):
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False)


engine = create_db_engine(get_settings().DATABASE_URL)
SessionLocal = make_session_factory(engine)


def init_db(bind=None):
    from . import models  # noqa: F401  (registers tables on Base.metadata)

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory=None):
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def translate_integrity_error(what: str):
    """Surface a constraint breach raised by the store as ConstraintViolation."""
    try:
        yield
    except IntegrityError as e:
        raise ConstraintViolation(f"{what}: {e.orig}") from e
