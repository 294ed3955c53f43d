"""
Convert user ids to 16-byte UUID blobs.

Every table referencing ``users.id`` is rebuilt with blob columns and the new
ids substituted, so existing lobbies and tokens keep pointing at the same users.
Tokens of users that no longer exist are dropped.
"""

from sqlalchemy import Connection, text
import logging

from gq_migrate.database.migrations.base_migration import BaseMigration
from gq_migrate.database.migrations.table_rebuild import DependentTable, change_key_type

logger = logging.getLogger(__name__)

USERS = """
CREATE TABLE {table}(
  id blob primary key not null,
  nickname text
)
"""

ADHOC_TOKENS = """
CREATE TABLE {table}(
  id blob primary key not null,
  user_id blob not null,
  secret blob not null,
  signature blob unique not null
)
"""

LOBBY = """
CREATE TABLE {table} (
  id blob primary key not null,
  created_by blob references users(id) not null,
  player1 blob references users(id),
  player2 blob references users(id)
)
"""


class Migration(BaseMigration):
    description = "Convert user ids to UUID blobs"
    disable_foreign_keys = True

    def up(self, connection: Connection) -> None:
        mapping = change_key_type(
            connection,
            "users",
            "id",
            USERS,
            dependents=[
                DependentTable("adhoc_tokens", ADHOC_TOKENS, ["user_id"], on_missing="delete"),
                DependentTable("lobby", LOBBY, ["created_by", "player1", "player2"]),
            ],
            key_generator=self.key_generator,
        )
        logger.info(f"Assigned UUIDs to {len(mapping)} users")

    def validate(self, connection: Connection) -> bool:
        remaining = connection.execute(
            text("SELECT COUNT(*) FROM users WHERE typeof(id) != 'blob' OR length(id) != 16")
        ).scalar()
        return remaining == 0
