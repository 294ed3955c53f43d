import shutil
from pathlib import Path

import pytest

from gq_migrate.database.database import create_db_engine
from gq_migrate.database.migrations import MigrationRunner, bundled_migrations_dir
from gq_migrate.database.migrations.keys import DeterministicKeyGenerator


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "gq.db"


@pytest.fixture
def engine(db_path):
    engine = create_db_engine(f"sqlite:///{db_path}", busy_timeout=5)
    yield engine
    engine.dispose()


@pytest.fixture
def migrations_dir(tmp_path):
    path = tmp_path / "migrations"
    path.mkdir()
    return path


@pytest.fixture
def write_unit(migrations_dir):
    """Write a migration file into the temporary migrations directory."""

    def _write(filename: str, body: str) -> Path:
        path = migrations_dir / filename
        path.write_text(body, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def runner(migrations_dir):
    return MigrationRunner(migrations_dir, lock_timeout=2, lock_poll_interval=0.05)


@pytest.fixture
def bundled_copy(tmp_path):
    """A writable copy of the bundled game-lobby migrations."""
    target = tmp_path / "bundled"
    shutil.copytree(bundled_migrations_dir(), target, ignore=shutil.ignore_patterns("__pycache__"))
    return target


@pytest.fixture
def key_generator():
    return DeterministicKeyGenerator()


@pytest.fixture
def bundled_runner(key_generator):
    return MigrationRunner(key_generator=key_generator, lock_timeout=2, lock_poll_interval=0.05)

