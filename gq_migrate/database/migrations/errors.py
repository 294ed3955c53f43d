"""
Error taxonomy for the migration engine.

Every error carries an ``exit_code`` used by the CLI.
"""

from typing import Optional


class MigrationError(Exception):
    """Base class for all migration engine errors."""

    exit_code = 1


class DiscoveryError(MigrationError):
    """Malformed or duplicate migration unit identifiers. Raised before any database contact."""

    exit_code = 2


class LockContention(MigrationError):
    """Another migration run holds the lock on the target database."""

    exit_code = 3

    def __init__(self, message: str, holder: Optional[str] = None):
        super().__init__(message)
        self.holder = holder


class ChecksumMismatch(MigrationError):
    """An already applied unit's source changed since it was applied."""

    exit_code = 4

    def __init__(self, sequence: int, name: str, expected: bytes, actual: bytes):
        self.sequence = sequence
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for migration {sequence} ({name}): "
            f"applied {expected.hex()[:12]}, found {actual.hex()[:12]}"
        )


class StatementError(Exception):
    """A single statement of a SQL migration failed."""

    def __init__(self, index: int, statement: str, cause: Exception):
        self.index = index
        self.statement = statement
        self.cause = cause
        super().__init__(f"Statement {index + 1} failed: {cause}")


class MigrationFailure(MigrationError):
    """A unit's body failed; its transaction was rolled back."""

    exit_code = 1

    def __init__(self, sequence: int, name: str, cause: Exception, statement: Optional[str] = None):
        self.sequence = sequence
        self.name = name
        self.cause = cause
        self.statement = statement
        message = f"Migration {sequence} ({name}) failed: {cause}"
        if statement:
            message += f"\n  in statement: {_shorten(statement)}"
        super().__init__(message)


def _shorten(statement: str, limit: int = 200) -> str:
    flat = " ".join(statement.split())
    return flat if len(flat) <= limit else flat[: limit - 3] + "..."


class ForeignKeyViolation(Exception):
    """``PRAGMA foreign_key_check`` reported rows referencing missing parents; fails the unit."""

    def __init__(self, violations: list):
        self.violations = violations
        sample = ", ".join(f"{v[0]} row {v[1]} -> {v[2]}" for v in violations[:5])
        super().__init__(f"{len(violations)} foreign key violation(s): {sample}")
