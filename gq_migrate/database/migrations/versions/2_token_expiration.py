"""
Add the expiration timestamp to session tokens.

Tokens already in the table expire one hour after the migration runs. New
tokens must supply ``expires_at`` explicitly, so the column ends up NOT NULL.
"""

from sqlalchemy import Connection

from gq_migrate.database.migrations.base_migration import BaseMigration
from gq_migrate.database.migrations.table_rebuild import add_column_then_tighten

SESSION_TOKENS = """
CREATE TABLE {table}(
  -- Token id
  id blob primary key not null,
  -- Public key for token verification
  public_key text not null,
  -- Expiration timestamp
  expires_at timestamp not null
)
"""


class Migration(BaseMigration):
    description = "Add a mandatory expiration timestamp to session tokens"

    def up(self, connection: Connection) -> None:
        add_column_then_tighten(
            connection,
            "session_tokens",
            "expires_at",
            "TIMESTAMP",
            "datetime('now', '+1 hour')",
            SESSION_TOKENS,
        )
