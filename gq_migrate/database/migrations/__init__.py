"""
Database migration system for the game-lobby schema.
"""

from .migration_runner import MigrationRunner, bundled_migrations_dir
from .base_migration import BaseMigration, SqlMigration
from .errors import (
    ChecksumMismatch,
    DiscoveryError,
    LockContention,
    MigrationError,
    MigrationFailure,
)

__all__ = [
    'MigrationRunner',
    'BaseMigration',
    'SqlMigration',
    'bundled_migrations_dir',
    'MigrationError',
    'DiscoveryError',
    'LockContention',
    'ChecksumMismatch',
    'MigrationFailure',
]
