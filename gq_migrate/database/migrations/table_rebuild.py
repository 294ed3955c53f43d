"""
Shadow-table rebuilds for schema changes SQLite cannot express with ALTER TABLE.

A rebuild creates ``<table>_new`` with the desired definition, copies the rows
across (optionally transforming them), drops the original table and renames
the shadow table into its place. All helpers run on the caller's connection
and therefore inside the migration unit's transaction.

``create_sql`` arguments are templates with a ``{table}`` placeholder, e.g.::

    CREATE TABLE {table} (id blob primary key not null, nickname text)
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional
from sqlalchemy import Connection, inspect, text
import logging

from .keys import KeyGenerator, RandomKeyGenerator

logger = logging.getLogger(__name__)

SHADOW_SUFFIX = "_new"

RowTransform = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]


class ReferenceMappingError(ValueError):
    """A dependent row references a key that does not exist in the converted table."""


def _quote(connection: Connection, identifier: str) -> str:
    return connection.dialect.identifier_preparer.quote(identifier)


def table_columns(connection: Connection, table: str) -> List[Dict[str, Any]]:
    """Column descriptions of ``table`` as reported by the SQLAlchemy inspector."""
    return inspect(connection).get_columns(table)


def rebuild_table(
    connection: Connection,
    table: str,
    create_sql: str,
    columns: Optional[Iterable[str]] = None,
    transform: Optional[RowTransform] = None,
) -> int:
    """
    Rebuild ``table`` from ``create_sql`` and return the number of copied rows.

    Without ``transform`` the copy is a single ``INSERT ... SELECT``. With it,
    rows are fetched, passed through ``transform`` and inserted one by one;
    a transform returning ``None`` drops the row.
    """
    shadow = f"{table}{SHADOW_SUFFIX}"
    if columns is None:
        columns = [column["name"] for column in table_columns(connection, table)]
    columns = list(columns)

    connection.exec_driver_sql(create_sql.format(table=_quote(connection, shadow)))

    quoted_table = _quote(connection, table)
    quoted_shadow = _quote(connection, shadow)
    column_list = ", ".join(_quote(connection, c) for c in columns)

    if transform is None:
        result = connection.exec_driver_sql(
            f"INSERT INTO {quoted_shadow} ({column_list}) SELECT {column_list} FROM {quoted_table}"
        )
        copied = result.rowcount
    else:
        rows = connection.execute(text(f"SELECT {column_list} FROM {quoted_table}")).mappings().all()
        placeholders = ", ".join(f":p{i}" for i in range(len(columns)))
        insert = text(f"INSERT INTO {quoted_shadow} ({column_list}) VALUES ({placeholders})")
        copied = 0
        for row in rows:
            new_row = transform(dict(row))
            if new_row is None:
                continue
            connection.execute(insert, {f"p{i}": new_row[c] for i, c in enumerate(columns)})
            copied += 1

    connection.exec_driver_sql(f"DROP TABLE {quoted_table}")
    connection.exec_driver_sql(f"ALTER TABLE {quoted_shadow} RENAME TO {quoted_table}")
    logger.info(f"Rebuilt table '{table}' ({copied} rows)")
    return copied


@dataclass
class DependentTable:
    """A table whose ``columns`` reference the key being converted."""

    table: str
    create_sql: str
    columns: List[str] = field(default_factory=list)
    # "error" fails the migration on a dangling reference, "delete" drops the row
    on_missing: str = "error"

    def __post_init__(self):
        if self.on_missing not in ("error", "delete"):
            raise ValueError(f"on_missing must be 'error' or 'delete', got '{self.on_missing}'")


def change_key_type(
    connection: Connection,
    table: str,
    key: str,
    create_sql: str,
    dependents: Iterable[DependentTable] = (),
    key_generator: Optional[KeyGenerator] = None,
) -> Dict[Any, bytes]:
    """
    Replace every value of ``table.key`` by a newly generated binary key.

    The referenced table is rebuilt first, then each dependent in the order
    given, substituting the same new key into every referencing column. NULL
    references stay NULL. Returns the ``old key -> new key`` mapping.

    Foreign key enforcement must be off for the connection (the unit sets
    ``disable_foreign_keys``); the runner checks consistency before commit.
    """
    key_generator = key_generator or RandomKeyGenerator()
    quoted_key = _quote(connection, key)
    quoted_table = _quote(connection, table)

    old_keys = connection.execute(text(f"SELECT {quoted_key} FROM {quoted_table}")).scalars().all()
    mapping: Dict[Any, bytes] = {old: key_generator.generate(table, old) for old in old_keys}
    if len(set(mapping.values())) != len(mapping):
        raise ValueError(f"Key generator produced duplicate keys for table '{table}'")

    def convert_parent(row):
        row[key] = mapping[row[key]]
        return row

    rebuild_table(connection, table, create_sql, transform=convert_parent)

    for dependent in dependents:
        rebuild_table(
            connection,
            dependent.table,
            dependent.create_sql,
            transform=_reference_converter(dependent, mapping, table),
        )

    logger.info(f"Converted {len(mapping)} keys of '{table}.{key}'")
    return mapping


def _reference_converter(dependent: DependentTable, mapping: Dict[Any, bytes], parent: str) -> RowTransform:
    def convert(row):
        for column in dependent.columns:
            value = row[column]
            if value is None:
                continue
            if value not in mapping:
                if dependent.on_missing == "delete":
                    logger.warning(
                        f"Dropping row of '{dependent.table}': {column}={value!r} has no match in '{parent}'"
                    )
                    return None
                raise ReferenceMappingError(
                    f"'{dependent.table}.{column}' references missing '{parent}' key {value!r}"
                )
            row[column] = mapping[value]
        return row

    return convert


def add_column_then_tighten(
    connection: Connection,
    table: str,
    column: str,
    column_type: str,
    backfill_sql: str,
    create_sql: str,
) -> int:
    """
    Add ``column`` as nullable, backfill NULLs with the SQL expression
    ``backfill_sql``, then rebuild ``table`` with the stricter ``create_sql``.

    Returns the number of backfilled rows.
    """
    quoted_table = _quote(connection, table)
    quoted_column = _quote(connection, column)
    connection.exec_driver_sql(f"ALTER TABLE {quoted_table} ADD COLUMN {quoted_column} {column_type}")
    result = connection.exec_driver_sql(
        f"UPDATE {quoted_table} SET {quoted_column} = {backfill_sql} WHERE {quoted_column} IS NULL"
    )
    backfilled = result.rowcount
    logger.info(f"Backfilled {backfilled} rows of '{table}.{column}'")
    rebuild_table(connection, table, create_sql)
    return backfilled
