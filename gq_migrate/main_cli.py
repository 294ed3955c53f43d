import json
import logging
from pathlib import Path
from typing import Optional

import typer
from sqlalchemy.exc import SQLAlchemyError

from .config import Config, ConfigError, load_config
from .database.database import check_connection, create_db_engine
from .database.migrations import MigrationError, MigrationRunner
from .database.migrations.lock import force_release
from .logging_config import setup_logging

logger = logging.getLogger(__name__)

app = typer.Typer(help="Versioned schema migrations for the game-lobby database.", no_args_is_help=True)


class CliState:
    def __init__(self, config: Config):
        self.config = config
        self._engine = None

    @property
    def engine(self):
        if self._engine is None:
            self._engine = create_db_engine(
                self.config.database.resolved_url(), busy_timeout=self.config.database.busy_timeout
            )
        return self._engine

    def runner(self) -> MigrationRunner:
        return MigrationRunner.from_config(self.config)


def _fail(error: Exception) -> None:
    if isinstance(error, SQLAlchemyError):
        error = getattr(error, "orig", None) or error
        typer.secho(f"Database error: {error}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.secho(f"Error: {error}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=getattr(error, "exit_code", 1))


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to the TOML configuration file (default: config.toml)."),
    database_url: Optional[str] = typer.Option(None, "--database-url", "-d", help="SQLAlchemy database URL, overrides the configuration."),
    migrations_dir: Optional[Path] = typer.Option(None, "--migrations-dir", "-m", help="Directory of migration units (default: bundled units)."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR)."),
):
    """
    Discover, apply and inspect schema migrations.
    """
    try:
        config = load_config(config_path)
    except ConfigError as e:
        _fail(e)

    if database_url:
        config.database.url = database_url
    if migrations_dir:
        config.migrations.directory = migrations_dir
    if log_level:
        config.logging.level = log_level.upper()

    setup_logging(config.logging.level, config.logging.format, config.logging.filters)
    ctx.obj = CliState(config)


@app.command()
def migrate(
    ctx: typer.Context,
    target: Optional[int] = typer.Option(None, "--target", "-t", help="Stop after applying this migration number."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only list the migrations that would be applied."),
):
    """
    Apply all pending migrations in order, stopping at the first failure.
    """
    state: CliState = ctx.obj
    runner = state.runner()
    try:
        if dry_run:
            pending = [m for m in runner.pending(state.engine) if target is None or m.version <= target]
            if not pending:
                typer.echo("Nothing to apply.")
            for migration in pending:
                typer.echo(f"Would apply {migration.identifier}")
            return
        result = runner.migrate(state.engine, target=target)
    except (MigrationError, SQLAlchemyError) as e:
        _fail(e)

    for sequence in result.applied:
        typer.secho(f"Applied {sequence}", fg=typer.colors.GREEN)
    if result.failure is not None:
        typer.secho(f"Migration {result.failure.sequence} failed", fg=typer.colors.RED, err=True)
        _fail(result.failure)
    if not result.applied:
        typer.echo("Database is up to date.")
    typer.echo(f"Current version: {runner.current_version(state.engine)}")


@app.command()
def status(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print the status as JSON."),
):
    """
    Show the current version and the pending migrations.
    """
    state: CliState = ctx.obj
    if not check_connection(state.engine):
        raise typer.Exit(code=1)
    try:
        report = state.runner().get_migration_status(state.engine)
    except (MigrationError, SQLAlchemyError) as e:
        _fail(e)

    if as_json:
        typer.echo(json.dumps(report.model_dump(mode="json"), indent=2))
        return

    typer.echo(f"Current version: {report.current_version}")
    typer.echo(f"Applied migrations: {len(report.applied_migrations)}")
    typer.echo(f"Pending migrations: {len(report.pending_migrations)}")
    if report.pending_migrations:
        typer.echo("\nPending migrations:")
        for migration in report.pending_migrations:
            typer.echo(f"  - {migration.sequence}: {migration.name}")
    if report.skipped_migrations:
        typer.echo("\nUnapplied migrations below the current version (will not be applied):")
        for migration in report.skipped_migrations:
            typer.echo(f"  - {migration.sequence}: {migration.name}")
    if report.lock_holder:
        typer.echo(f"\nLocked by: {report.lock_holder}")


@app.command()
def verify(ctx: typer.Context):
    """
    Check that applied migrations have not been modified since.
    """
    state: CliState = ctx.obj
    try:
        mismatches = state.runner().verify(state.engine)
    except (MigrationError, SQLAlchemyError) as e:
        _fail(e)

    if mismatches:
        for mismatch in mismatches:
            typer.secho(str(mismatch), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=mismatches[0].exit_code)
    typer.echo("All applied migrations match their sources.")


@app.command("list")
def list_migrations(ctx: typer.Context):
    """
    List the discovered migration units.
    """
    state: CliState = ctx.obj
    try:
        units = state.runner().discover()
    except MigrationError as e:
        _fail(e)

    for unit in units:
        typer.echo(f"{unit.version:>4}  {unit.name:<30} {unit.checksum.hex()[:12]}")


@app.command()
def unlock(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """
    Force release a migration lock left behind by a crashed run.
    """
    state: CliState = ctx.obj
    if not yes:
        typer.confirm("Release the migration lock even if another run holds it?", abort=True)
    try:
        holder = force_release(state.engine)
    except SQLAlchemyError as e:
        _fail(e)
    if holder is None:
        typer.echo("Migration lock is not held.")
    else:
        typer.echo(f"Released lock held by {holder}")


if __name__ == "__main__":
    app()
