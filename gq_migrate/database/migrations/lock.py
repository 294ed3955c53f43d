"""
Mutual exclusion between migration runs on the same database.

SQLite has no advisory locks, so the lock is a single row in
``schema_migrations_lock``. Whoever inserts row ``id = 1`` owns the lock until
deleting it again.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Connection, Engine, text
from sqlalchemy.exc import IntegrityError, OperationalError
import logging
import os
import socket
import time
import uuid

from .errors import LockContention
from ..database import busy_timeout, use_write_lock, write_transaction

logger = logging.getLogger(__name__)

LOCK_TABLE = "schema_migrations_lock"


def _default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _is_busy(error: OperationalError) -> bool:
    message = str(error.orig).lower()
    return "locked" in message or "busy" in message


class MigrationLock:
    """Lock row guarding one migration run; usable as a context manager."""

    def __init__(self, engine: Engine, timeout: float = 30.0, poll_interval: float = 0.25, owner: Optional[str] = None):
        self.engine = engine
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.owner = owner or _default_owner()
        self.acquired = False

    def _try_acquire(self, connection: Connection) -> bool:
        try:
            with connection.begin():
                connection.execute(text(f"""
                    CREATE TABLE IF NOT EXISTS {LOCK_TABLE} (
                        id INTEGER PRIMARY KEY CHECK (id = 1),
                        owner TEXT NOT NULL,
                        acquired_at TIMESTAMP NOT NULL
                    )
                """))
                connection.execute(
                    text(f"INSERT INTO {LOCK_TABLE} (id, owner, acquired_at) VALUES (1, :owner, :acquired_at)"),
                    {"owner": self.owner, "acquired_at": datetime.now(timezone.utc).isoformat(sep=" ", timespec="seconds")},
                )
            return True
        except IntegrityError:
            return False
        except OperationalError as e:
            if _is_busy(e):
                return False
            raise

    def acquire(self) -> "MigrationLock":
        """
        Insert the lock row, polling every ``poll_interval`` seconds.

        Each attempt waits on a busy database for at most the time left
        before ``timeout``, so ``LockContention`` is raised on schedule even
        while another run holds a write transaction.
        """
        if self.acquired:
            return self
        deadline = time.monotonic() + self.timeout
        waited = False
        with self.engine.connect() as connection:
            connection = use_write_lock(connection)
            while True:
                remaining = deadline - time.monotonic()
                with busy_timeout(connection, min(self.poll_interval, remaining)):
                    if self._try_acquire(connection):
                        break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    holder = current_holder(self.engine)
                    raise LockContention(
                        f"Could not acquire migration lock within {self.timeout:.1f}s"
                        + (f", held by {holder}" if holder else ""),
                        holder=holder,
                    )
                if not waited:
                    logger.info("Migration lock is held by another run, waiting...")
                    waited = True
                time.sleep(min(self.poll_interval, remaining))

        self.acquired = True
        logger.debug(f"Acquired migration lock as {self.owner}")
        return self

    def release(self) -> None:
        if not self.acquired:
            return
        with write_transaction(self.engine) as connection:
            connection.execute(
                text(f"DELETE FROM {LOCK_TABLE} WHERE id = 1 AND owner = :owner"),
                {"owner": self.owner},
            )
        self.acquired = False
        logger.debug(f"Released migration lock {self.owner}")

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


def current_holder(engine: Engine) -> Optional[str]:
    """Owner of the lock, or None when it is free. Advisory only."""
    try:
        with engine.connect() as connection:
            row = connection.execute(
                text(f"SELECT owner, acquired_at FROM {LOCK_TABLE} WHERE id = 1")
            ).fetchone()
    except OperationalError as e:
        # Nobody has taken the lock on this database yet
        if "no such table" in str(e.orig).lower():
            return None
        raise
    if row is None:
        return None
    return f"{row[0]} (since {row[1]})"


def force_release(engine: Engine) -> Optional[str]:
    """Delete the lock row regardless of owner, returning the previous holder."""
    holder = current_holder(engine)
    if holder is None:
        return None
    with write_transaction(engine) as connection:
        connection.execute(text(f"DELETE FROM {LOCK_TABLE} WHERE id = 1"))
    logger.warning(f"Force released migration lock held by {holder}")
    return holder
