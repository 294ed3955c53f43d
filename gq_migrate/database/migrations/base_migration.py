"""
Base migration classes for database schema changes.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional
from sqlalchemy import Connection
from sqlalchemy.exc import SQLAlchemyError
import hashlib
import importlib.util
import inspect
import logging
import re

from .errors import DiscoveryError, StatementError
from .keys import KeyGenerator, RandomKeyGenerator
from .sql_script import parse_script

logger = logging.getLogger(__name__)

# "<sequence>_<name>", e.g. "2_token_expiration"
IDENTIFIER_RE = re.compile(r"^(?P<version>\d+)_(?P<name>[A-Za-z0-9_]+)$")


def compute_checksum(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def parse_identifier(identifier: str):
    """Split ``"2_token_expiration"`` into ``(2, "token_expiration")``."""
    match = IDENTIFIER_RE.match(identifier)
    if not match:
        raise DiscoveryError(
            f"Malformed migration identifier '{identifier}', expected '<number>_<name>'"
        )
    return int(match.group("version")), match.group("name")


class BaseMigration(ABC):
    """Base class for all database migrations."""

    version: int = None
    name: str = None
    description: str = ""

    # Turn foreign key enforcement off around the unit's transaction
    disable_foreign_keys: bool = False

    def __init__(self, version: Optional[int] = None, name: Optional[str] = None):
        if version is not None:
            self.version = version
        if name is not None:
            self.name = name
        if self.version is None:
            raise ValueError(f"Migration {self.__class__.__name__} must define a version")
        if not self.name:
            raise ValueError(f"Migration {self.__class__.__name__} must define a name")
        if self.version < 0:
            raise ValueError(f"Migration version must be >= 0, got {self.version}")
        self.key_generator: KeyGenerator = RandomKeyGenerator()
        self.source: Optional[str] = None
        self._checksum: Optional[bytes] = None

    @property
    def identifier(self) -> str:
        return f"{self.version}_{self.name}"

    @property
    def checksum(self) -> bytes:
        """SHA-256 of the unit's source."""
        if self._checksum is None:
            self._checksum = compute_checksum(self._source_bytes())
        return self._checksum

    def _source_bytes(self) -> bytes:
        try:
            return inspect.getsource(self.__class__).encode("utf-8")
        except (OSError, TypeError):
            return f"{self.__class__.__module__}.{self.__class__.__qualname__}".encode("utf-8")

    @abstractmethod
    def up(self, connection: Connection) -> None:
        """Apply the migration."""
        pass

    def validate(self, connection: Connection) -> bool:
        """Validate that the migration was applied correctly."""
        return True

    def __str__(self):
        if self.description:
            return f"Migration {self.version}: {self.name} - {self.description}"
        return f"Migration {self.version}: {self.name}"

    def __repr__(self):
        return f"<{self.__class__.__name__}({self.identifier})>"


class SqlMigration(BaseMigration):
    """A migration whose body is a ``.sql`` file."""

    def __init__(self, version: int, name: str, script: str, source: Optional[str] = None):
        super().__init__(version, name)
        parsed = parse_script(script)
        if not parsed.statements:
            raise DiscoveryError(f"Migration {version}_{name} has no statements")
        self.script = script
        self.statements: List[str] = parsed.statements
        self.disable_foreign_keys = parsed.disable_foreign_keys
        self.source = source

    @classmethod
    def from_file(cls, path: Path) -> "SqlMigration":
        version, name = parse_identifier(path.stem)
        return cls(version, name, path.read_text(encoding="utf-8"), source=str(path))

    def _source_bytes(self) -> bytes:
        return self.script.encode("utf-8")

    def up(self, connection: Connection) -> None:
        for index, statement in enumerate(self.statements):
            logger.debug(f"[{self.identifier}] executing statement {index + 1}/{len(self.statements)}")
            try:
                connection.exec_driver_sql(statement)
            except SQLAlchemyError as e:
                raise StatementError(index, statement, e) from e


def load_python_migration(path: Path) -> BaseMigration:
    """Load a ``<number>_<name>.py`` unit defining a ``Migration`` class."""
    version, name = parse_identifier(path.stem)
    module_name = f"gq_migrate_unit_{version}_{name}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise DiscoveryError(f"Cannot load migration module {path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise DiscoveryError(f"Error importing migration {path.name}: {e}") from e

    migration_class = getattr(module, "Migration", None)
    if migration_class is None:
        candidates = [
            obj for obj in vars(module).values()
            if inspect.isclass(obj) and issubclass(obj, BaseMigration)
            and obj.__module__ == module_name and not inspect.isabstract(obj)
        ]
        if len(candidates) != 1:
            raise DiscoveryError(f"Migration {path.name} must define exactly one Migration class")
        migration_class = candidates[0]

    declared = getattr(migration_class, "version", None)
    if declared is not None and declared != version:
        raise DiscoveryError(
            f"Migration {path.name} declares version {declared} but its file name says {version}"
        )

    migration = migration_class(version, name)
    migration.source = str(path)
    migration._checksum = compute_checksum(path.read_bytes())
    return migration
