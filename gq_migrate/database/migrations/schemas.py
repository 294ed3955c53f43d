from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, field_serializer

from .errors import MigrationFailure


class AppliedMigration(BaseModel):
    """One row of the ``schema_migrations`` table."""

    sequence: int
    name: str
    applied_at: datetime
    checksum: bytes
    execution_ms: Optional[int] = None

    @field_serializer("checksum")
    def _serialize_checksum(self, value: bytes) -> str:
        return value.hex()


class PendingMigration(BaseModel):
    sequence: int
    name: str
    source: Optional[str] = None


class MigrationStatus(BaseModel):
    current_version: int = 0
    total_migrations: int = 0
    applied_migrations: List[AppliedMigration] = Field(default_factory=list)
    pending_migrations: List[PendingMigration] = Field(default_factory=list)
    # Discovered but unapplied units numbered below the current version
    skipped_migrations: List[PendingMigration] = Field(default_factory=list)
    lock_holder: Optional[str] = None


class MigrateResult(BaseModel):
    """Outcome of one ``migrate()`` run."""

    model_config = {"arbitrary_types_allowed": True}

    applied: List[int] = Field(default_factory=list)
    failure: Optional[MigrationFailure] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None
