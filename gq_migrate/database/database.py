from contextlib import contextmanager
from pathlib import Path
from sqlalchemy import Connection, Engine, create_engine, event, make_url, text
from sqlalchemy.pool import StaticPool
import logging

logger = logging.getLogger(__name__)

# Execution option marking a connection whose transactions write
WRITE_LOCK_OPTION = "write_lock"


def _is_memory_url(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in database_url


def create_db_engine(database_url: str, busy_timeout: float = 30.0) -> Engine:
    """
    Create an engine for the target database.

    For SQLite the pysqlite driver's own transaction handling is switched off
    and SQLAlchemy emits ``BEGIN`` itself, so DDL statements take part in the
    transaction and are rolled back with it. Connections carrying the
    ``write_lock`` execution option (see :func:`write_transaction`) start with
    ``BEGIN IMMEDIATE`` instead: a transaction that takes the write lock up
    front never has to upgrade a read lock, which SQLite refuses with an
    immediate "database is locked" instead of waiting out the busy timeout.
    Read-only transactions stay deferred so they keep working while a
    migration writes. Foreign keys are enforced on every new connection.
    """
    if database_url.startswith("sqlite"):
        if _is_memory_url(database_url):
            # A single shared connection, otherwise every checkout sees an empty database
            engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False,
            )
        else:
            database_file = make_url(database_url).database
            if database_file:
                Path(database_file).parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": busy_timeout},
                echo=False,
            )

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            if conn.get_execution_options().get(WRITE_LOCK_OPTION):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

        logger.debug(f"Using SQLite database: {database_url}")
    else:
        engine = create_engine(database_url, pool_pre_ping=True, echo=False, future=True)
        logger.info(f"Using database: {engine.url.render_as_string(hide_password=True)}")

    return engine


def is_sqlite(connection: Connection) -> bool:
    return connection.dialect.name == "sqlite"


def use_write_lock(connection: Connection) -> Connection:
    """Make every transaction of ``connection`` take the SQLite write lock when it begins."""
    return connection.execution_options(**{WRITE_LOCK_OPTION: True})


@contextmanager
def write_transaction(engine: Engine):
    """Like ``engine.begin()``, for transactions that modify the database."""
    with engine.connect() as connection:
        connection = use_write_lock(connection)
        with connection.begin():
            yield connection


@contextmanager
def busy_timeout(connection: Connection, seconds: float):
    """
    Cap how long ``connection`` waits on a locked SQLite database while the
    block runs, restoring the previous timeout afterwards.
    """
    if not is_sqlite(connection):
        yield connection
        return
    dbapi_connection = connection.connection.dbapi_connection
    previous = dbapi_connection.execute("PRAGMA busy_timeout").fetchone()[0]
    dbapi_connection.execute(f"PRAGMA busy_timeout = {max(0, int(seconds * 1000))}")
    try:
        yield connection
    finally:
        dbapi_connection.execute(f"PRAGMA busy_timeout = {previous}")


def set_foreign_keys(connection: Connection, enabled: bool) -> None:
    """
    Toggle foreign-key enforcement for ``connection``.

    Must be called outside a transaction: SQLite silently ignores the pragma
    inside one. The statement goes straight to the driver so SQLAlchemy does
    not autobegin.
    """
    if not is_sqlite(connection):
        return
    if connection.in_transaction():
        raise RuntimeError("Foreign key enforcement cannot be changed inside a transaction")
    value = "ON" if enabled else "OFF"
    connection.connection.dbapi_connection.execute(f"PRAGMA foreign_keys = {value}")
    logger.debug(f"Foreign key enforcement {value}")


def foreign_key_violations(connection: Connection) -> list:
    """Rows reported by ``PRAGMA foreign_key_check`` as ``(table, rowid, parent, fkid)`` tuples."""
    if not is_sqlite(connection):
        return []
    result = connection.execute(text("PRAGMA foreign_key_check"))
    return [tuple(row) for row in result.fetchall()]


def check_connection(engine: Engine) -> bool:
    """Test database connection"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return True
    except Exception as e:
        logger.error(f"Database connection test failed: {str(e)}")
        return False
