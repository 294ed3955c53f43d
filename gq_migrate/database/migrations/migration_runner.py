"""
Migration runner for managing database schema changes.
"""

from datetime import datetime, timezone
from importlib import resources
from pathlib import Path
from typing import Dict, List, Optional, Type, Union
from sqlalchemy import Connection, Engine, inspect, text
import threading
import logging
import time

from .base_migration import BaseMigration, SqlMigration, load_python_migration, parse_identifier
from .errors import (
    ChecksumMismatch,
    DiscoveryError,
    ForeignKeyViolation,
    MigrationError,
    MigrationFailure,
    StatementError,
)
from .keys import KeyGenerator, RandomKeyGenerator
from .lock import MigrationLock, current_holder
from .schemas import AppliedMigration, MigrateResult, MigrationStatus, PendingMigration
from ..database import foreign_key_violations, set_foreign_keys, use_write_lock, write_transaction

logger = logging.getLogger(__name__)

HISTORY_TABLE = "schema_migrations"

UNIT_SUFFIXES = (".sql", ".py")


def bundled_migrations_dir() -> Path:
    """Directory holding the game-lobby schema history shipped with the package."""
    return Path(str(resources.files(__package__).joinpath("versions")))


class MigrationRunner:
    """Discovers, tracks and applies migration units."""

    def __init__(
        self,
        migrations_dir: Union[str, Path, None] = None,
        key_generator: Optional[KeyGenerator] = None,
        lock_timeout: float = 30.0,
        lock_poll_interval: float = 0.25,
        verify_checksums: bool = True,
    ):
        self.migrations_dir = Path(migrations_dir) if migrations_dir else bundled_migrations_dir()
        self.key_generator = key_generator or RandomKeyGenerator()
        self.lock_timeout = lock_timeout
        self.lock_poll_interval = lock_poll_interval
        self.verify_checksums = verify_checksums
        self.migrations: List[BaseMigration] = []

    @classmethod
    def from_config(cls, config) -> "MigrationRunner":
        from ...config import build_key_generator

        return cls(
            migrations_dir=config.migrations.directory,
            key_generator=build_key_generator(config),
            lock_timeout=config.migrations.lock_timeout,
            lock_poll_interval=config.migrations.lock_poll_interval,
            verify_checksums=config.migrations.verify_checksums,
        )

    def register_migration(self, migration_class: Type[BaseMigration]):
        """Register a migration class defined in code, alongside the discovered files."""
        migration = migration_class()
        self.migrations.append(migration)
        logger.debug(f"Registered {migration}")
        return migration

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def _load_unit(self, path: Path) -> BaseMigration:
        parse_identifier(path.stem)
        if path.suffix == ".sql":
            return SqlMigration.from_file(path)
        return load_python_migration(path)

    def discover(self) -> List[BaseMigration]:
        """Load every unit from the migrations directory and registered classes, ascending."""
        if not self.migrations_dir.is_dir():
            raise DiscoveryError(f"Migrations directory not found: {self.migrations_dir}")

        units: List[BaseMigration] = []
        for path in sorted(self.migrations_dir.iterdir()):
            if not path.is_file() or path.name.startswith((".", "_")):
                continue
            if path.suffix not in UNIT_SUFFIXES:
                continue
            units.append(self._load_unit(path))
        units.extend(self.migrations)

        seen: Dict[int, BaseMigration] = {}
        for unit in units:
            if unit.version in seen:
                raise DiscoveryError(
                    f"Duplicate migration number {unit.version}: "
                    f"{seen[unit.version].identifier} and {unit.identifier}"
                )
            seen[unit.version] = unit
            unit.key_generator = self.key_generator

        ordered = sorted(units, key=lambda m: m.version)
        logger.debug(f"Discovered {len(ordered)} migrations in {self.migrations_dir}")
        return ordered

    # ------------------------------------------------------------------
    # Tracking table
    # ------------------------------------------------------------------

    def _create_migration_table(self, connection: Connection):
        """Create the migration tracking table if it doesn't exist."""
        connection.execute(text(f"""
            CREATE TABLE IF NOT EXISTS {HISTORY_TABLE} (
                sequence INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TIMESTAMP NOT NULL,
                checksum BLOB NOT NULL,
                execution_ms INTEGER
            )
        """))

    def _has_migration_table(self, connection: Connection) -> bool:
        return inspect(connection).has_table(HISTORY_TABLE)

    def _applied_records(self, connection: Connection) -> List[AppliedMigration]:
        if not self._has_migration_table(connection):
            return []
        result = connection.execute(text(f"""
            SELECT sequence, name, applied_at, checksum, execution_ms
            FROM {HISTORY_TABLE}
            ORDER BY sequence
        """))
        return [
            AppliedMigration(
                sequence=row[0], name=row[1], applied_at=row[2],
                checksum=bytes(row[3]), execution_ms=row[4],
            )
            for row in result.fetchall()
        ]

    def _current_version(self, connection: Connection) -> int:
        if not self._has_migration_table(connection):
            return 0
        value = connection.execute(text(f"SELECT MAX(sequence) FROM {HISTORY_TABLE}")).scalar()
        return value or 0

    def _is_migration_applied(self, connection: Connection, version: int) -> bool:
        result = connection.execute(
            text(f"SELECT COUNT(*) FROM {HISTORY_TABLE} WHERE sequence = :sequence"),
            {"sequence": version},
        )
        return result.scalar() > 0

    def _record_migration(self, connection: Connection, migration: BaseMigration, execution_ms: int):
        """Record a migration in the database."""
        connection.execute(
            text(f"""
                INSERT INTO {HISTORY_TABLE} (sequence, name, applied_at, checksum, execution_ms)
                VALUES (:sequence, :name, :applied_at, :checksum, :execution_ms)
            """),
            {
                "sequence": migration.version,
                "name": migration.name,
                "applied_at": datetime.now(timezone.utc).isoformat(sep=" ", timespec="seconds"),
                "checksum": migration.checksum,
                "execution_ms": execution_ms,
            },
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def current_version(self, engine: Engine) -> int:
        """Highest applied sequence number, 0 when nothing is applied. Advisory outside the lock."""
        with engine.connect() as connection:
            return self._current_version(connection)

    def _pending(self, units: List[BaseMigration], current: int) -> List[BaseMigration]:
        return [m for m in units if m.version > current]

    def _skipped(self, units: List[BaseMigration], applied: List[AppliedMigration], current: int) -> List[BaseMigration]:
        applied_versions = {record.sequence for record in applied}
        return [m for m in units if m.version < current and m.version not in applied_versions]

    def pending(self, engine: Engine) -> List[BaseMigration]:
        """Discovered units numbered above the current version, ascending."""
        units = self.discover()
        with engine.connect() as connection:
            current = self._current_version(connection)
            applied = self._applied_records(connection)
        for unit in self._skipped(units, applied, current):
            logger.warning(f"{unit} is numbered below current version {current} and will not be applied")
        return self._pending(units, current)

    def _checksum_mismatches(self, units: List[BaseMigration], applied: List[AppliedMigration]) -> List[ChecksumMismatch]:
        by_version = {unit.version: unit for unit in units}
        mismatches = []
        for record in applied:
            unit = by_version.get(record.sequence)
            if unit is None:
                logger.warning(f"Applied migration {record.sequence} ({record.name}) is missing from the source")
                continue
            if unit.checksum != record.checksum:
                mismatches.append(ChecksumMismatch(record.sequence, record.name, record.checksum, unit.checksum))
        return mismatches

    def verify(self, engine: Engine) -> List[ChecksumMismatch]:
        """Compare recorded checksums against the discovered sources."""
        units = self.discover()
        with engine.connect() as connection:
            applied = self._applied_records(connection)
        return self._checksum_mismatches(units, applied)

    def get_migration_status(self, engine: Engine) -> MigrationStatus:
        """Get the current migration status."""
        units = self.discover()
        with engine.connect() as connection:
            current = self._current_version(connection)
            applied = self._applied_records(connection)

        return MigrationStatus(
            current_version=current,
            total_migrations=len(units),
            applied_migrations=applied,
            pending_migrations=[
                PendingMigration(sequence=m.version, name=m.name, source=m.source)
                for m in self._pending(units, current)
            ],
            skipped_migrations=[
                PendingMigration(sequence=m.version, name=m.name, source=m.source)
                for m in self._skipped(units, applied, current)
            ],
            lock_holder=current_holder(engine),
        )

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def _lock(self, engine: Engine) -> MigrationLock:
        return MigrationLock(engine, timeout=self.lock_timeout, poll_interval=self.lock_poll_interval)

    def _apply_unit(self, engine: Engine, migration: BaseMigration) -> None:
        """Run one unit and its version record in a single transaction. Caller holds the lock."""
        logger.info(f"Applying {migration}")
        started = time.monotonic()
        with engine.connect() as connection:
            connection = use_write_lock(connection)
            if migration.disable_foreign_keys:
                set_foreign_keys(connection, False)
            try:
                with connection.begin():
                    self._create_migration_table(connection)
                    if self._is_migration_applied(connection, migration.version):
                        raise MigrationFailure(
                            migration.version, migration.name,
                            RuntimeError("migration is already applied"),
                        )
                    migration.up(connection)

                    violations = foreign_key_violations(connection)
                    if violations:
                        raise ForeignKeyViolation(violations)
                    if not migration.validate(connection):
                        raise RuntimeError("validation failed")

                    execution_ms = int((time.monotonic() - started) * 1000)
                    self._record_migration(connection, migration, execution_ms)
            except MigrationFailure as e:
                logger.error(f"❌ {e}")
                raise
            except StatementError as e:
                failure = MigrationFailure(migration.version, migration.name, e.cause, statement=e.statement)
                logger.error(f"❌ {failure}")
                raise failure from e
            except Exception as e:
                failure = MigrationFailure(migration.version, migration.name, e)
                logger.error(f"❌ {failure}", exc_info=True)
                raise failure from e
            finally:
                if migration.disable_foreign_keys:
                    set_foreign_keys(connection, True)

        logger.info(f"✅ Successfully applied {migration} in {time.monotonic() - started:.2f}s")

    def apply(self, engine: Engine, migration: BaseMigration) -> int:
        """Apply a single unit under the migration lock and return its sequence number."""
        with self._lock(engine):
            self._apply_unit(engine, migration)
        return migration.version

    def migrate(
        self,
        engine: Engine,
        target: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
        dry_run: bool = False,
    ) -> MigrateResult:
        """
        Apply all pending units in ascending order, stopping at the first failure.

        ``target`` stops after that sequence number. ``cancel`` is only looked
        at between units, never while one is running. ``dry_run`` computes
        the pending list under the lock without applying anything.
        """
        units = self.discover()
        result = MigrateResult()

        with self._lock(engine):
            with write_transaction(engine) as connection:
                self._create_migration_table(connection)
                current = self._current_version(connection)
                applied = self._applied_records(connection)

            if self.verify_checksums:
                mismatches = self._checksum_mismatches(units, applied)
                if mismatches:
                    for mismatch in mismatches:
                        logger.error(f"❌ {mismatch}")
                    raise mismatches[0]

            for unit in self._skipped(units, applied, current):
                logger.warning(f"{unit} is numbered below current version {current} and will not be applied")

            pending = [m for m in self._pending(units, current) if target is None or m.version <= target]
            if not pending:
                logger.info("No pending migrations")
                return result

            logger.info(f"Found {len(pending)} pending migrations")
            if dry_run:
                for migration in pending:
                    logger.info(f"Would apply: {migration}")
                return result

            for migration in pending:
                if cancel is not None and cancel.is_set():
                    logger.warning(f"Migration run cancelled before {migration}")
                    result.cancelled = True
                    break
                try:
                    self._apply_unit(engine, migration)
                except MigrationFailure as e:
                    result.failure = e
                    break
                result.applied.append(migration.version)

        logger.info(f"Applied {len(result.applied)}/{len(pending)} migrations")
        return result


__all__ = ["MigrationRunner", "MigrationError", "bundled_migrations_dir", "HISTORY_TABLE"]
