import pytest

from gq_migrate.database.migrations import BaseMigration, DiscoveryError, MigrationRunner, SqlMigration
from gq_migrate.database.migrations.base_migration import compute_checksum, parse_identifier


class CodeMigration(BaseMigration):
    version = 7
    name = "code_unit"

    def up(self, connection):
        connection.exec_driver_sql("CREATE TABLE from_code (id integer)")


def test_parse_identifier():
    assert parse_identifier("2_token_expiration") == (2, "token_expiration")
    assert parse_identifier("010_padded") == (10, "padded")
    with pytest.raises(DiscoveryError):
        parse_identifier("token_expiration")
    with pytest.raises(DiscoveryError):
        parse_identifier("2-token-expiration")


def test_discover_sorts_numerically(runner, write_unit):
    write_unit("10_ten.sql", "CREATE TABLE ten (id integer);")
    write_unit("2_two.sql", "CREATE TABLE two (id integer);")
    write_unit("1_one.sql", "CREATE TABLE one (id integer);")

    units = runner.discover()

    assert [u.version for u in units] == [1, 2, 10]
    assert [u.name for u in units] == ["one", "two", "ten"]
    assert all(isinstance(u, SqlMigration) for u in units)


def test_discover_rejects_duplicate_numbers(runner, write_unit):
    write_unit("1_one.sql", "CREATE TABLE one (id integer);")
    write_unit("01_other.sql", "CREATE TABLE other (id integer);")

    with pytest.raises(DiscoveryError, match="Duplicate migration number 1"):
        runner.discover()


def test_discover_rejects_malformed_names(runner, write_unit):
    write_unit("1_one.sql", "CREATE TABLE one (id integer);")
    write_unit("add-users.sql", "CREATE TABLE users (id integer);")

    with pytest.raises(DiscoveryError, match="Malformed"):
        runner.discover()


def test_discover_rejects_empty_sql(runner, write_unit):
    write_unit("1_empty.sql", "-- nothing here\n")

    with pytest.raises(DiscoveryError, match="no statements"):
        runner.discover()


def test_discover_ignores_unrelated_files(runner, write_unit, migrations_dir):
    write_unit("1_one.sql", "CREATE TABLE one (id integer);")
    write_unit("README.md", "docs")
    write_unit("__init__.py", "")
    (migrations_dir / "__pycache__").mkdir()

    assert [u.identifier for u in runner.discover()] == ["1_one"]


def test_discover_missing_directory(tmp_path):
    with pytest.raises(DiscoveryError, match="not found"):
        MigrationRunner(tmp_path / "nope").discover()


def test_discover_loads_python_units(runner, write_unit):
    path = write_unit(
        "3_python_unit.py",
        "from gq_migrate.database.migrations import BaseMigration\n"
        "\n"
        "class Migration(BaseMigration):\n"
        "    def up(self, connection):\n"
        "        connection.exec_driver_sql('CREATE TABLE py (id integer)')\n",
    )

    (unit,) = runner.discover()

    assert unit.version == 3
    assert unit.name == "python_unit"
    assert unit.checksum == compute_checksum(path.read_bytes())


def test_python_unit_with_conflicting_version(runner, write_unit):
    write_unit(
        "3_python_unit.py",
        "from gq_migrate.database.migrations import BaseMigration\n"
        "\n"
        "class Migration(BaseMigration):\n"
        "    version = 4\n"
        "    def up(self, connection):\n"
        "        pass\n",
    )

    with pytest.raises(DiscoveryError, match="declares version 4"):
        runner.discover()


def test_registered_migrations_join_discovery(runner, write_unit):
    write_unit("1_one.sql", "CREATE TABLE one (id integer);")
    runner.register_migration(CodeMigration)

    assert [u.identifier for u in runner.discover()] == ["1_one", "7_code_unit"]


def test_registered_migration_duplicate_of_file(runner, write_unit):
    write_unit("7_file_unit.sql", "CREATE TABLE seven (id integer);")
    runner.register_migration(CodeMigration)

    with pytest.raises(DiscoveryError):
        runner.discover()


def test_checksum_tracks_file_content(runner, write_unit):
    path = write_unit("1_one.sql", "CREATE TABLE one (id integer);")
    before = runner.discover()[0].checksum

    path.write_text("CREATE TABLE one (id integer, name text);", encoding="utf-8")
    after = runner.discover()[0].checksum

    assert before != after
    assert len(before) == 32


def test_bundled_units_are_discovered(bundled_runner):
    units = bundled_runner.discover()

    assert [u.identifier for u in units] == [
        "0_users",
        "1_auth",
        "2_token_expiration",
        "3_adhoc_tokens",
        "4_lobby",
        "5_user_ids_uuid",
        "6_games",
    ]
    assert units[5].disable_foreign_keys is True
    assert str(units[2]) == "Migration 2: token_expiration - Add a mandatory expiration timestamp to session tokens"
    assert str(units[1]) == "Migration 1: auth"
