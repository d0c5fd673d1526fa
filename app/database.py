import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker

DEFAULT_DATABASE_URL = "postgresql://localhost/outbox"
SQLITE_BUSY_TIMEOUT_MS = 5000

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)

Base = declarative_base()

DATABASE_URL = ""
engine = None


def _get_database_url() -> str:
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


def _sqlite_engine(url) -> Engine:
    # The worker thread and the request threadpool share one database file.
    sqlite_engine = create_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(sqlite_engine, "connect")
    def _set_busy_timeout(dbapi_connection, _connection_record):
        cur = dbapi_connection.cursor()
        cur.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
        cur.close()

    return sqlite_engine


def build_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    if url.drivername.startswith("sqlite"):
        return _sqlite_engine(url)

    connect_args = {}
    if url.drivername.startswith("postgresql"):
        # Shows up in pg_stat_activity / pg_locks next to the cursor row locks.
        connect_args["application_name"] = os.getenv("OUTBOX_PROCESSOR_NAME", "notification-processor")

    # pre_ping: the worker outlives Postgres restarts and idle disconnects.
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


def configure_database() -> None:
    """(Re)bind SessionLocal when DATABASE_URL changes; tests call this after setting it."""
    global DATABASE_URL, engine

    database_url = _get_database_url()
    if engine is not None and DATABASE_URL == database_url:
        return

    if engine is not None:
        engine.dispose()

    engine = build_engine(database_url)
    SessionLocal.configure(bind=engine)
    DATABASE_URL = database_url


configure_database()
